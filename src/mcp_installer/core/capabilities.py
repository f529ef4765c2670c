"""
Capabilities supplied by the embedding application.

The orchestrator consults a PolicyOracle before every mutating operation,
keeps server credentials in a SecretStore, and asks an Elevator for
elevated execution when a step fails with a permission error.
"""

import json
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Set, Union

import keyring
from keyring.errors import KeyringError, NoKeyringError, PasswordDeleteError

from mcp_installer.core.exceptions import InstallerError, PermissionDeniedError
from mcp_installer.core.models import Step
from mcp_installer.tools.system import read_json, write_json_atomic
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class Action:
    """Action names passed to ``PolicyOracle.can``."""

    VIEW = "server:view"
    LOGS = "server:logs"
    INSTALL = "server:install"
    START = "server:start"
    STOP = "server:stop"
    RESTART = "server:restart"
    DELETE = "server:delete"
    BACKUP = "server:backup"
    RESTORE = "server:restore"
    UPDATE = "server:update"
    CONFIG_EDIT = "server:config:edit"


class PolicyOracle(ABC):
    """Answers whether a user may perform an action."""

    @abstractmethod
    def can(self, user: Optional[str], action: str, server_id: Optional[str] = None) -> bool:
        """Return True if ``user`` may perform ``action`` (on ``server_id``)."""


class AllowAllPolicy(PolicyOracle):
    """Grants everything. Used when no permission system is configured."""

    def can(self, user: Optional[str], action: str, server_id: Optional[str] = None) -> bool:
        return True


ROLE_PERMISSIONS: Dict[str, Set[str]] = {
    "admin": {"*"},
    "operator": {
        Action.VIEW, Action.START, Action.STOP, Action.RESTART,
        Action.LOGS, Action.BACKUP, Action.CONFIG_EDIT,
    },
    "viewer": {Action.VIEW, Action.LOGS},
}


class RolePolicy(PolicyOracle):
    """
    Role based policy.

    Users map to roles; roles map to permitted actions. Per-server overrides
    replace the user's role for a single server.
    """

    def __init__(
        self,
        user_roles: Optional[Dict[str, str]] = None,
        server_roles: Optional[Dict[str, Dict[str, str]]] = None,
        default_role: str = "viewer",
    ):
        self.user_roles = dict(user_roles or {})
        self.server_roles = {k: dict(v) for k, v in (server_roles or {}).items()}
        self.default_role = default_role

    def role_for(self, user: Optional[str], server_id: Optional[str] = None) -> str:
        if server_id and user and user in self.server_roles.get(server_id, {}):
            return self.server_roles[server_id][user]
        return self.user_roles.get(user or "default", self.default_role)

    def can(self, user: Optional[str], action: str, server_id: Optional[str] = None) -> bool:
        permissions = ROLE_PERMISSIONS.get(self.role_for(user, server_id), set())
        return "*" in permissions or action in permissions


class SecretStoreError(InstallerError):
    """The secret backend refused an operation."""


class SecretStore(ABC):
    """Per-server credential storage."""

    @abstractmethod
    def put(self, server_id: str, credentials: Dict[str, str]) -> None:
        """Store credentials, replacing any previous ones."""

    @abstractmethod
    def get(self, server_id: str) -> Dict[str, str]:
        """Return stored credentials, or an empty dict."""

    @abstractmethod
    def delete(self, server_id: str) -> None:
        """Forget credentials. Deleting unknown ids succeeds."""


class MemorySecretStore(SecretStore):
    """Process-local secret store."""

    def __init__(self):
        self._secrets: Dict[str, Dict[str, str]] = {}

    def put(self, server_id: str, credentials: Dict[str, str]) -> None:
        self._secrets[server_id] = dict(credentials)

    def get(self, server_id: str) -> Dict[str, str]:
        return dict(self._secrets.get(server_id, {}))

    def delete(self, server_id: str) -> None:
        self._secrets.pop(server_id, None)


class FileSecretStore(SecretStore):
    """
    Credentials kept in a JSON file readable only by the owner.

    Used where no keyring backend is available (headless hosts, containers).
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _load(self) -> Dict[str, Dict[str, str]]:
        try:
            return read_json(self.path, default={}) or {}
        except (OSError, ValueError) as e:
            raise SecretStoreError(f"Could not read credentials file {self.path}: {e}") from e

    def _save(self, secrets: Dict[str, Dict[str, str]]) -> None:
        try:
            write_json_atomic(self.path, secrets)
            os.chmod(self.path, 0o600)
        except OSError as e:
            raise SecretStoreError(f"Could not write credentials file {self.path}: {e}") from e

    def put(self, server_id: str, credentials: Dict[str, str]) -> None:
        secrets = self._load()
        secrets[server_id] = dict(credentials)
        self._save(secrets)
        logger.debug(f"Stored {len(credentials)} credential(s) for {server_id} in {self.path}")

    def get(self, server_id: str) -> Dict[str, str]:
        return dict(self._load().get(server_id, {}))

    def delete(self, server_id: str) -> None:
        secrets = self._load()
        if secrets.pop(server_id, None) is not None:
            self._save(secrets)


class KeyringSecretStore(SecretStore):
    """
    Credentials kept in the system keyring as one JSON blob per server.

    When the host has no keyring backend at all, every operation is handed
    to ``fallback`` instead (if one was given).
    """

    def __init__(self, service: str = "mcp-installer", fallback: Optional[SecretStore] = None):
        self.service = service
        self.fallback = fallback
        self._use_fallback = False

    def _no_backend(self, error: NoKeyringError) -> SecretStore:
        if self.fallback is None:
            raise SecretStoreError(f"No keyring backend available: {error}") from error
        logger.warning(f"No keyring backend available, keeping credentials in {self._describe_fallback()}")
        self._use_fallback = True
        return self.fallback

    def _describe_fallback(self) -> str:
        path = getattr(self.fallback, "path", None)
        return str(path) if path else type(self.fallback).__name__

    def put(self, server_id: str, credentials: Dict[str, str]) -> None:
        if self._use_fallback:
            return self.fallback.put(server_id, credentials)
        try:
            keyring.set_password(self.service, server_id, json.dumps(credentials))
        except NoKeyringError as e:
            return self._no_backend(e).put(server_id, credentials)
        except KeyringError as e:
            raise SecretStoreError(f"Could not store credentials for {server_id}: {e}") from e
        logger.debug(f"Stored {len(credentials)} credential(s) for {server_id}")

    def get(self, server_id: str) -> Dict[str, str]:
        if self._use_fallback:
            return self.fallback.get(server_id)
        try:
            raw = keyring.get_password(self.service, server_id)
        except NoKeyringError as e:
            return self._no_backend(e).get(server_id)
        except KeyringError as e:
            raise SecretStoreError(f"Could not read credentials for {server_id}: {e}") from e
        if not raw:
            return {}
        return json.loads(raw)

    def delete(self, server_id: str) -> None:
        if self._use_fallback:
            return self.fallback.delete(server_id)
        try:
            keyring.delete_password(self.service, server_id)
        except PasswordDeleteError:
            pass
        except NoKeyringError as e:
            self._no_backend(e).delete(server_id)
        except KeyringError as e:
            raise SecretStoreError(f"Could not delete credentials for {server_id}: {e}") from e


class Elevator(ABC):
    """Obtains elevated execution for a step that hit a permission error."""

    @abstractmethod
    async def elevate(self, step: Step) -> Optional[Step]:
        """Return an elevated copy of ``step``, or None if elevation is unavailable."""


class NoElevator(Elevator):
    """Elevation is never available."""

    async def elevate(self, step: Step) -> Optional[Step]:
        return None


class SudoElevator(Elevator):
    """Re-run commands through non-interactive ``sudo``."""

    def __init__(self, sudo: str = "sudo"):
        self.sudo = sudo

    async def elevate(self, step: Step) -> Optional[Step]:
        if not step.command or shutil.which(self.sudo) is None:
            return None
        if step.command[0] == self.sudo:
            raise PermissionDeniedError(f"Step already elevated: {step.description}")
        return step.model_copy(update={"command": [self.sudo, "-n"] + list(step.command)})
