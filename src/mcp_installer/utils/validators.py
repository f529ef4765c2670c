"""
Validation utilities for MCP Installer.

Provides validation for server names and repository references.
"""

import re
from typing import Optional, Tuple

from mcp_installer.core.exceptions import PreconditionFailedError

GITHUB_URL_RE = re.compile(
    r"^(?:https?://|git@|ssh://git@)?(?:www\.)?github\.com[/:]"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?/?$"
)

RESERVED_NAMES = {"all", "none", "true", "false", "null", "undefined"}


def validate_server_name(name: str) -> bool:
    """
    Validate server name.

    Args:
        name: Server name to validate

    Returns:
        True if valid

    Raises:
        PreconditionFailedError: If name is invalid
    """
    if not name or not name.strip():
        raise PreconditionFailedError("Server name cannot be empty")

    if len(name) > 100:
        raise PreconditionFailedError("Server name too long (max 100 characters)")

    if name.lower() in RESERVED_NAMES:
        raise PreconditionFailedError(f"'{name}' is a reserved name. Please choose a different name")

    if not re.match(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$", name):
        raise PreconditionFailedError(
            "Server name can only contain letters, numbers, hyphens, underscores and dots"
        )

    return True


def slugify(name: str) -> str:
    """Lower-case a repository name into a usable server name."""
    slug = re.sub(r"[^a-z0-9_.-]+", "-", name.lower()).strip("-.")
    return slug or "server"


def parse_github_url(url: str) -> Optional[Tuple[str, str]]:
    """
    Extract ``(owner, repo)`` from a GitHub URL.

    Returns:
        The pair, or None if the URL does not point at github.com
    """
    match = GITHUB_URL_RE.match(url.strip())
    if not match:
        return None
    return match.group("owner"), match.group("repo")


def is_remote_ref(repo_ref: str) -> bool:
    """True for URLs, false for local paths."""
    return bool(re.match(r"^[a-z][a-z0-9+.-]*://", repo_ref)) or repo_ref.startswith("git@")
