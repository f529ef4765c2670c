"""Desktop assistant config file location."""

import os
import platform
from pathlib import Path
from typing import Optional

CONFIG_FILENAME = "claude_desktop_config.json"


def desktop_config_path(system: Optional[str] = None, home: Optional[Path] = None) -> Path:
    """
    Resolve the desktop config path for the current OS.

    Args:
        system: Override for ``platform.system()``
        home: Override for the user's home (or USERPROFILE) directory

    Returns:
        Absolute path to ``claude_desktop_config.json``
    """
    system = system or platform.system()
    if system == "Windows":
        profile = home or Path(os.environ.get("USERPROFILE", str(Path.home())))
        return profile / "AppData" / "Roaming" / "Claude" / CONFIG_FILENAME
    home = home or Path.home()
    if system == "Darwin":
        return home / "Library" / "Application Support" / "Claude" / CONFIG_FILENAME
    return home / ".config" / "claude" / CONFIG_FILENAME
