"""
Data models for MCP Installer.

Defines Pydantic models for server records, installation plans, repository
analyses, config entries, backups and update reports.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class ServerKind(str, Enum):
    """How an installed server is executed."""

    NODE = "node"
    PYTHON = "python"
    CONTAINER = "container"


class InstallMethod(str, Enum):
    """Installation method chosen by the planner."""

    PACKAGE_MANAGER = "package-manager"
    PYTHON = "python"
    CONTAINER = "container"


class StepType(str, Enum):
    """Plan step types."""

    FETCH = "fetch"
    BUILD = "build"
    INSTALL_DEPS = "install-deps"
    CONFIGURE = "configure"
    CONTAINER_BUILD = "container-build"
    CONTAINER_RUN = "container-run"
    VERIFY = "verify"


class SourceKind(str, Enum):
    """Where a server's code comes from."""

    GIT = "git"
    IMAGE = "image"
    LOCAL = "local"


class ContainerState(str, Enum):
    """Runtime state of a container or process."""

    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    RESTARTING = "restarting"
    MISSING = "missing"


class RestartPolicy(str, Enum):
    """Container restart policy."""

    NO = "no"
    UNLESS_STOPPED = "unless-stopped"
    ALWAYS = "always"


class CollisionPolicy(str, Enum):
    """What to do when a directory or container name is already taken."""

    RENAME = "rename"
    OVERWRITE = "overwrite"


class BackupStatus(str, Enum):
    """Backup lifecycle state."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class BackupType(str, Enum):
    """What a backup covers."""

    FULL = "full"
    CONFIG = "config"
    DATA = "data"


class ItemType(str, Enum):
    """Category of a backed up file."""

    CONFIG = "config"
    DATA = "data"
    LOG = "log"


class ServerEntry(BaseModel):
    """One ``mcpServers`` entry in the desktop config document."""

    model_config = ConfigDict(populate_by_name=True)

    command: List[str] = Field(description="Executable followed by its arguments")
    cwd: Optional[str] = Field(default=None, description="Working directory")
    env: Dict[str, str] = Field(default_factory=dict, description="Environment variables")
    auto_restart: bool = Field(default=True, alias="autoRestart", description="Restart on exit")

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: List[str]) -> List[str]:
        """Require a non-empty argv."""
        if not v or not v[0].strip():
            raise ValueError("Server command cannot be empty")
        return v

    def to_config(self) -> Dict[str, Any]:
        """Convert to the on-disk JSON shape."""
        entry: Dict[str, Any] = {"command": list(self.command)}
        if self.cwd:
            entry["cwd"] = self.cwd
        entry["env"] = dict(self.env)
        entry["autoRestart"] = self.auto_restart
        return entry


class ServerRecord(BaseModel):
    """An installed MCP server."""

    server_id: str = Field(description="Stable identifier assigned at install")
    name: str = Field(description="Display name and config entry key")
    kind: ServerKind = Field(description="Execution kind")
    method: InstallMethod = Field(description="Installation method used")
    install_path: str = Field(description="Absolute install directory")
    command: List[str] = Field(description="Entry command argv")
    env: Dict[str, str] = Field(default_factory=dict, description="Environment variables")
    ports: Dict[int, int] = Field(default_factory=dict, description="Host to container ports")
    volumes: Dict[str, str] = Field(default_factory=dict, description="Host to container mounts")
    template_id: Optional[str] = Field(default=None, description="Server template id")
    version: str = Field(default="latest", description="Installed version or tag")
    revision: Optional[str] = Field(default=None, description="Installed commit hash")
    source: SourceKind = Field(default=SourceKind.GIT, description="Code provenance")
    repo_url: Optional[str] = Field(default=None, description="Upstream repository URL")
    image: Optional[str] = Field(default=None, description="Container image reference")
    image_digest: Optional[str] = Field(default=None, description="Recorded image digest")
    container_name: Optional[str] = Field(default=None, description="Container name")
    enabled: bool = Field(default=True, description="Listed in the desktop config")
    state: ContainerState = Field(default=ContainerState.CREATED, description="Last known state")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update time")

    @property
    def runtime_id(self) -> str:
        """Handle used by the runtime for this server."""
        return self.container_name or self.server_id

    def to_entry(self) -> ServerEntry:
        """Config entry the desktop assistant uses to launch this server."""
        return ServerEntry(
            command=self.command,
            cwd=self.install_path,
            env=self.env,
            auto_restart=True,
        )


class Dependency(BaseModel):
    """A declared package dependency."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str = "*"


class RepoAnalysis(BaseModel):
    """Result of inspecting a repository. Immutable."""

    model_config = ConfigDict(frozen=True)

    repo_url: Optional[str] = Field(default=None, description="Normalized clone URL")
    local_path: Optional[str] = Field(default=None, description="Local source directory")
    owner: Optional[str] = Field(default=None, description="Repository owner")
    repo: str = Field(description="Repository name")
    language: str = Field(default="Unknown", description="Primary language")
    framework: Optional[str] = Field(default=None, description="Framework or runtime")
    has_container_recipe: bool = Field(default=False, description="Dockerfile present")
    dependencies: List[Dependency] = Field(default_factory=list)
    install_commands: List[List[str]] = Field(default_factory=list)
    start_command: List[str] = Field(default_factory=list)
    config_files: List[str] = Field(default_factory=list)
    version: Optional[str] = Field(default=None, description="Most recent tag")
    revision: Optional[str] = Field(default=None, description="HEAD commit hash")

    @property
    def source_ref(self) -> str:
        """What the fetch step clones."""
        return self.repo_url or self.local_path or self.repo

    @property
    def build_command(self) -> Optional[List[str]]:
        """First install command that performs a build, if any."""
        for command in self.install_commands:
            if "build" in command[1:]:
                return command
        return None

    @property
    def is_python(self) -> bool:
        return self.language.lower() == "python"


class Step(BaseModel):
    """One unit of work in an installation plan."""

    type: StepType
    description: str
    command: Optional[List[str]] = Field(default=None, description="argv, never a shell string")
    cwd: str = Field(description="Absolute working directory")
    env: Dict[str, str] = Field(default_factory=dict)
    recoverable: bool = Field(default=True, description="Automated recovery may retry it")
    timeout: Optional[float] = Field(default=None, description="Override of the step timeout")
    target: Optional[str] = Field(default=None, description="Directory or container name the step creates")


class InstallOptions(BaseModel):
    """User options for install."""

    install_path: Optional[str] = None
    method: Optional[InstallMethod] = None
    include_container: bool = True
    server_name: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    credentials: Dict[str, str] = Field(default_factory=dict)
    collision_policy: Optional[CollisionPolicy] = None
    step_timeout: Optional[float] = None


class Plan(BaseModel):
    """Ordered, resumable installation plan."""

    server_id: str = Field(description="Provisional server id")
    name: str = Field(description="Server name")
    install_path: str
    method: InstallMethod
    analysis: RepoAnalysis
    steps: List[Step] = Field(default_factory=list)
    progress_index: int = 0
    image: Optional[str] = None
    container_name: Optional[str] = None
    ports: Dict[int, int] = Field(default_factory=dict)
    volumes: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    command: List[str] = Field(default_factory=list, description="Entry command for the desktop config")

    @property
    def kind(self) -> ServerKind:
        if self.method == InstallMethod.CONTAINER:
            return ServerKind.CONTAINER
        if self.method == InstallMethod.PYTHON:
            return ServerKind.PYTHON
        return ServerKind.NODE

    @property
    def finished(self) -> bool:
        return self.progress_index >= len(self.steps)

    def advance(self, index: int) -> None:
        """Mark every step before ``index + 1`` done. Never moves backwards."""
        self.progress_index = max(self.progress_index, index + 1)


class ContainerSpec(BaseModel):
    """Input to ``run`` for both container and process runtimes."""

    image: Optional[str] = None
    name: str
    env: Dict[str, str] = Field(default_factory=dict)
    ports: Dict[int, int] = Field(default_factory=dict)
    volumes: Dict[str, str] = Field(default_factory=dict)
    restart_policy: RestartPolicy = RestartPolicy.UNLESS_STOPPED
    network: Optional[str] = None
    command: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    log_file: Optional[str] = None


class ContainerInfo(BaseModel):
    """Snapshot of a container or process."""

    id: str
    name: str
    image: Optional[str] = None
    state: ContainerState = ContainerState.MISSING
    status: str = ""
    exit_code: Optional[int] = None
    pid: Optional[int] = None
    created_at: Optional[str] = None


class BackupOptions(BaseModel):
    """Options for ``BackupEngine.create``."""

    type: BackupType = BackupType.FULL
    include_logs: bool = False
    exclude_patterns: List[str] = Field(default_factory=list)
    exclude_large_files: bool = False
    name: Optional[str] = None
    description: Optional[str] = None


class RestoreOptions(BaseModel):
    """Options for ``BackupEngine.restore``."""

    stop_server: bool = True
    start_server: bool = True
    create_backup_before_restore: bool = True
    restore_config: bool = True
    restore_data: bool = True
    restore_logs: bool = False


class BackupItem(BaseModel):
    """A file captured in a backup."""

    type: ItemType
    path: str = Field(description="Relative path inside the backup, '/' separated")
    original_path: str = Field(description="Absolute path it was copied from")
    size: int


class BackupRecord(BaseModel):
    """Index entry for one backup."""

    backup_id: str
    server_id: str
    server_name: str
    server_kind: ServerKind
    name: Optional[str] = None
    description: Optional[str] = None
    type: BackupType = BackupType.FULL
    status: BackupStatus = BackupStatus.IN_PROGRESS
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    size: int = 0
    items: List[BackupItem] = Field(default_factory=list)
    error: Optional[str] = None


class BackupManifest(BaseModel):
    """Contents of ``manifest.json``."""

    id: str
    server_id: str
    created_at: datetime
    options: BackupOptions
    items: List[BackupItem]


class CommitInfo(BaseModel):
    """HEAD commit of an upstream repository."""

    hash: str
    subject: str = ""
    date: str = ""


class UpdateReport(BaseModel):
    """Result of an update check. Not persisted."""

    server_id: str
    current_version: str
    latest_version: str
    update_available: bool
    latest_commit: Optional[CommitInfo] = None
    latest_tag: Optional[str] = None
    commits_behind: Optional[int] = None
    latest_digest: Optional[str] = None
    checked_at: datetime = Field(default_factory=utcnow)


class VerifyReport(BaseModel):
    """Outcome of a config verification."""

    missing: Set[str] = Field(default_factory=set)

    @property
    def ok(self) -> bool:
        return not self.missing
