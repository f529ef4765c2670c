"""
Update checks and in-place upgrades.

Servers installed from GitHub are checked by fetching the remote into a
scratch directory and reading its HEAD commit and latest tag. Servers that
run a published image are checked by comparing the digest of the ``latest``
tag with the recorded one. An upgrade stops the server, brings in the new
code or image, recreates the runtime and rolls back to the previous
image/revision if the new one does not come up.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from mcp_installer.core.events import Emit, Event, EventType, null_emit
from mcp_installer.core.exceptions import (
    CommandFailedError,
    InstallerError,
    OperationCancelled,
    PreconditionFailedError,
    UnknownRemoteError,
    UpgradeFailedError,
)
from mcp_installer.core.models import (
    CommitInfo,
    ContainerState,
    InstallOptions,
    ServerKind,
    ServerRecord,
    SourceKind,
    StepType,
    UpdateReport,
)
from mcp_installer.installer.analyzer import RepoAnalyzer
from mcp_installer.installer.planner import Planner
from mcp_installer.runtime.lifecycle import ServerLifecycle
from mcp_installer.tools.runner import CancelToken, CommandRunner
from mcp_installer.tools.system import Clock
from mcp_installer.utils.logging import get_logger
from mcp_installer.utils.validators import parse_github_url

logger = get_logger(__name__)

FIELD_SEPARATOR = "\x1f"


def image_repository(image: str) -> str:
    """Strip the tag or digest from an image reference."""
    if "@" in image:
        return image.split("@", 1)[0]
    name, _, tag = image.rpartition(":")
    if name and "/" not in tag:
        return name
    return image


class UpdateChecker:
    """Checks upstream sources and drives upgrades."""

    def __init__(
        self,
        runner: CommandRunner,
        lifecycle: ServerLifecycle,
        clock: Optional[Clock] = None,
        scratch_root: Optional[str] = None,
        check_ttl: float = 300.0,
        fetch_timeout: float = 300.0,
        python: str = "python",
    ):
        self.runner = runner
        self.lifecycle = lifecycle
        self.clock = clock or Clock()
        self.scratch_root = scratch_root
        self.check_ttl = check_ttl
        self.fetch_timeout = fetch_timeout
        self.python = python
        self._reports: Dict[str, UpdateReport] = {}

    @property
    def containers(self):
        return self.lifecycle.containers

    def cached_report(self, server_id: str) -> Optional[UpdateReport]:
        """Most recent report if it is younger than the check TTL."""
        report = self._reports.get(server_id)
        if report is None:
            return None
        age = (self.clock.now() - report.checked_at).total_seconds()
        if age > self.check_ttl:
            return None
        return report

    async def check(
        self,
        record: ServerRecord,
        emit: Emit = null_emit,
        token: Optional[CancelToken] = None,
    ) -> UpdateReport:
        """
        Check a server for a newer upstream version.

        Args:
            record: Server to check
            emit: Sink for the ``update.status`` event
            token: Cancellation token

        Returns:
            UpdateReport (also cached for ``update``)

        Raises:
            UnknownRemoteError: If the repository is not on github.com
            PreconditionFailedError: If the server has no upstream at all
        """
        if record.source == SourceKind.IMAGE:
            report = await self._check_image(record, token)
        elif record.repo_url:
            report = await self._check_git(record, token)
        else:
            raise PreconditionFailedError(f"Server {record.name} has no upstream to check")

        self._reports[record.server_id] = report
        emit(Event(
            type=EventType.UPDATE_STATUS,
            payload={
                "server_id": record.server_id,
                "update_available": report.update_available,
                "latest_version": report.latest_version,
            },
        ))
        logger.info(
            f"{record.name}: current {report.current_version}, latest {report.latest_version}, "
            f"update available: {report.update_available}"
        )
        return report

    async def _git(self, args: List[str], cwd: str, token: Optional[CancelToken], timeout: float = 60.0):
        return await self.runner.run(["git"] + args, cwd=cwd, timeout=timeout, token=token)

    async def _check_git(self, record: ServerRecord, token: Optional[CancelToken]) -> UpdateReport:
        parsed = parse_github_url(record.repo_url)
        if parsed is None:
            raise UnknownRemoteError(
                f"Cannot check updates for {record.repo_url}: only github.com repositories are supported",
                details={"repo_url": record.repo_url},
            )
        owner, repo = parsed

        scratch = tempfile.mkdtemp(prefix="mcp-update-", dir=self.scratch_root)
        checkout = os.path.join(scratch, repo)
        try:
            # Blob-less clone: full commit graph for describe/rev-list, no file contents
            result = await self._git(
                ["clone", "--filter=blob:none", "--no-checkout", f"https://github.com/{owner}/{repo}", checkout],
                cwd=scratch,
                token=token,
                timeout=self.fetch_timeout,
            )
            if not result.ok:
                raise CommandFailedError(result.argv, result.exit_code, result.stderr)

            log = await self._git(["log", "-1", f"--format=%H{FIELD_SEPARATOR}%s{FIELD_SEPARATOR}%cI"], checkout, token)
            if not log.ok or not log.stdout.strip():
                raise CommandFailedError(log.argv, log.exit_code, log.stderr)
            fields = log.stdout.strip().split(FIELD_SEPARATOR)
            commit = CommitInfo(
                hash=fields[0],
                subject=fields[1] if len(fields) > 1 else "",
                date=fields[2] if len(fields) > 2 else "",
            )

            describe = await self._git(["describe", "--tags", "--abbrev=0"], checkout, token)
            tag = describe.stdout.strip() if describe.ok and describe.stdout.strip() else None

            commits_behind = None
            if record.revision == commit.hash:
                commits_behind = 0
            elif record.revision:
                count = await self._git(["rev-list", "--count", f"{record.revision}..HEAD"], checkout, token)
                if count.ok and count.stdout.strip().isdigit():
                    commits_behind = int(count.stdout.strip())
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
            logger.debug(f"Removed scratch directory {scratch}")

        if tag and tag != record.version:
            available = True
        elif record.revision:
            available = record.revision != commit.hash
        else:
            # Nothing recorded to compare against
            available = tag is None

        return UpdateReport(
            server_id=record.server_id,
            current_version=record.version,
            latest_version=tag or "latest",
            update_available=available,
            latest_commit=commit,
            latest_tag=tag,
            commits_behind=commits_behind,
            checked_at=self.clock.now(),
        )

    async def _check_image(self, record: ServerRecord, token: Optional[CancelToken]) -> UpdateReport:
        if not record.image:
            raise PreconditionFailedError(f"Server {record.name} has no image recorded")
        latest = f"{image_repository(record.image)}:latest"
        await self.containers.pull(latest, token=token)
        digest = await self.containers.image_digest(latest)
        available = digest is not None and digest != record.image_digest
        return UpdateReport(
            server_id=record.server_id,
            current_version=record.version,
            latest_version="latest",
            update_available=available,
            latest_digest=digest,
            checked_at=self.clock.now(),
        )

    def _progress(self, emit: Emit, record: ServerRecord, percent: int, message: str) -> None:
        emit(Event(
            type=EventType.UPDATE_PROGRESS,
            payload={"server_id": record.server_id, "percent": percent, "message": message},
        ))

    async def _checkout(self, record: ServerRecord, ref: str, token: Optional[CancelToken]) -> None:
        fetch = await self._git(["fetch", "--tags", "origin"], record.install_path, token, self.fetch_timeout)
        if not fetch.ok:
            raise CommandFailedError(fetch.argv, fetch.exit_code, fetch.stderr)
        checkout = await self._git(["checkout", "--force", ref], record.install_path, token)
        if not checkout.ok:
            raise CommandFailedError(checkout.argv, checkout.exit_code, checkout.stderr)

    async def _reinstall(self, record: ServerRecord, token: Optional[CancelToken]) -> None:
        """Re-run the dependency and build steps of a native install."""
        analysis = RepoAnalyzer(self.runner, python=self.python).inspect_directory(
            Path(record.install_path), repo=record.name, repo_url=record.repo_url
        )
        plan = Planner(install_root=os.path.dirname(record.install_path), python=self.python).plan(
            analysis,
            InstallOptions(install_path=record.install_path, method=record.method, server_name=record.name),
        )
        for step in plan.steps:
            if step.type not in (StepType.INSTALL_DEPS, StepType.BUILD) or not step.command:
                continue
            result = await self.runner.run(step.command, cwd=record.install_path, env=step.env, token=token)
            if not result.ok:
                raise CommandFailedError(result.argv, result.exit_code, result.stderr)

    async def _bring_up(
        self,
        record: ServerRecord,
        image: Optional[str],
        extra_env: Optional[Dict[str, str]],
        token: Optional[CancelToken],
    ) -> ContainerState:
        await self.lifecycle.recreate(record, image=image, extra_env=extra_env)
        return await self.lifecycle.wait_running(record, token=token)

    async def update(
        self,
        record: ServerRecord,
        emit: Emit = null_emit,
        token: Optional[CancelToken] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> ServerRecord:
        """
        Upgrade a server in place.

        Args:
            record: Server to upgrade
            emit: Sink for ``update.progress`` (10/30/50/80/90/100 %) and ``update.status``
            token: Cancellation token
            extra_env: Credentials to inject into the recreated runtime

        Returns:
            The updated ServerRecord

        Raises:
            PreconditionFailedError: Without a fresh check reporting an update
            UpgradeFailedError: If the new version did not start; ``rollback``
                tells whether the previous version is running again
        """
        report = self.cached_report(record.server_id)
        if report is None or not report.update_available:
            raise PreconditionFailedError(
                f"No update pending for {record.name}; run an update check first",
                details={"server_id": record.server_id},
            )

        previous_image = record.image
        if record.source == SourceKind.IMAGE and record.image and record.image_digest:
            previous_image = f"{image_repository(record.image)}@{record.image_digest}"
        previous_revision = record.revision

        await self.lifecycle.stop(record)
        self._progress(emit, record, 10, "Server stopped")

        target = record.model_copy(update={"version": report.latest_version, "updated_at": self.clock.now()})
        new_image = None
        try:
            if record.source == SourceKind.IMAGE:
                new_image = f"{image_repository(record.image)}:latest"
                await self.containers.pull(new_image, token=token)
                target.image_digest = await self.containers.image_digest(new_image)
            else:
                ref = report.latest_tag or report.latest_commit.hash
                await self._checkout(record, ref, token)
                target.revision = report.latest_commit.hash if report.latest_commit else record.revision
                if record.kind == ServerKind.CONTAINER:
                    tag = report.latest_tag or target.revision[:12]
                    new_image = f"{image_repository(record.image or record.runtime_id)}:{tag}"
                    await self.containers.build(new_image, record.install_path, token=token)
                else:
                    await self._reinstall(record, token)
            if new_image:
                target.image = new_image
            self._progress(emit, record, 30, f"Fetched {report.latest_version}")

            await self.lifecycle.recreate(target, image=new_image, extra_env=extra_env)
            self._progress(emit, record, 50, "Runtime recreated")

            state = await self.lifecycle.wait_running(target, token=token)
            self._progress(emit, record, 80, f"Server is {state.value}")
            if state != ContainerState.RUNNING:
                raise InstallerError(f"{record.name} did not reach running after upgrade (state: {state.value})")
        except OperationCancelled:
            raise
        except InstallerError as e:
            logger.error(f"Upgrade of {record.name} failed: {e.message}; rolling back")
            rollback = await self._rollback(record, previous_image, previous_revision, extra_env, token)
            raise UpgradeFailedError(
                f"Upgrade of {record.name} to {report.latest_version} failed: {e.message}",
                rollback=rollback,
            ) from e

        self._progress(emit, record, 90, "Server verified")
        target.state = ContainerState.RUNNING
        self._reports.pop(record.server_id, None)
        emit(Event(
            type=EventType.UPDATE_STATUS,
            payload={
                "server_id": record.server_id,
                "update_available": False,
                "latest_version": report.latest_version,
            },
        ))
        self._progress(emit, record, 100, f"Updated to {report.latest_version}")
        logger.info(f"Updated {record.name} from {record.version} to {target.version}")
        return target

    async def _rollback(
        self,
        record: ServerRecord,
        previous_image: Optional[str],
        previous_revision: Optional[str],
        extra_env: Optional[Dict[str, str]],
        token: Optional[CancelToken],
    ) -> str:
        try:
            if record.source != SourceKind.IMAGE and previous_revision:
                checkout = await self._git(["checkout", "--force", previous_revision], record.install_path, token)
                if not checkout.ok:
                    raise CommandFailedError(checkout.argv, checkout.exit_code, checkout.stderr)
                if record.kind != ServerKind.CONTAINER:
                    await self._reinstall(record, token)
            state = await self._bring_up(record, previous_image, extra_env, token)
            if state == ContainerState.RUNNING:
                logger.info(f"Rolled {record.name} back to {record.version}")
                return "succeeded"
            logger.error(f"Rollback of {record.name} left it {state.value}")
        except OperationCancelled:
            raise
        except InstallerError as e:
            logger.error(f"Rollback of {record.name} failed: {e.message}")

        try:
            await self.lifecycle.stop(record)
        except InstallerError as e:
            logger.warning(f"Could not stop {record.name} after failed rollback: {e.message}")
        return "failed"
