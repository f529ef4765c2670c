"""
Plan executor.

Runs plan steps in order as child processes, forwards their output as
``plan.progress`` events, and applies at most one automated recovery per
failed step before giving up.
"""

import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from mcp_installer.core.capabilities import Elevator, NoElevator
from mcp_installer.core.events import Emit, Event, EventType, null_emit
from mcp_installer.core.exceptions import (
    CommandFailedError,
    ErrorKind,
    ExecError,
    InstallerError,
    MissingToolError,
    OperationCancelled,
    StepTimeoutError,
    error_kind,
)
from mcp_installer.core.models import (
    CollisionPolicy,
    ContainerState,
    InstallMethod,
    Plan,
    ServerRecord,
    SourceKind,
    Step,
    StepType,
)
from mcp_installer.installer.recovery import Strategy, classify
from mcp_installer.runtime.base import RuntimeController
from mcp_installer.tools.runner import CancelToken, CommandRunner
from mcp_installer.tools.system import Clock, write_json_atomic
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)

LAYOUT_DIRS = ("config", "data", "logs")

NATIVE_ARTIFACTS: Dict[InstallMethod, List[str]] = {
    InstallMethod.PACKAGE_MANAGER: ["package.json"],
    InstallMethod.PYTHON: ["pyproject.toml", "requirements.txt", "setup.py"],
}


class VerificationError(InstallerError):
    """Installed artifacts are missing or the server did not come up."""


def _retarget(value: str, old: str, new: str) -> str:
    """Rewrite ``value`` if it is ``old`` or a path below it."""
    if value == old:
        return new
    if value.startswith(old + "/") or value.startswith(old + "\\"):
        return new + value[len(old):]
    # host:container volume arguments
    if value.startswith(old) and ":" in value[len(old):]:
        head, tail = value.rsplit(":", 1)
        if head == old or head.startswith((old + "/", old + "\\")):
            return new + head[len(old):] + ":" + tail
    return value


class Executor:
    """Executes installation plans."""

    def __init__(
        self,
        runner: CommandRunner,
        containers: RuntimeController,
        elevator: Optional[Elevator] = None,
        clock: Optional[Clock] = None,
        step_timeout: float = 600.0,
        poll_window: float = 60.0,
        collision_policy: CollisionPolicy = CollisionPolicy.RENAME,
    ):
        self.runner = runner
        self.containers = containers
        self.elevator = elevator or NoElevator()
        self.clock = clock or Clock()
        self.step_timeout = step_timeout
        self.poll_window = poll_window
        self.collision_policy = collision_policy

    async def execute(
        self,
        plan: Plan,
        emit: Emit = null_emit,
        token: Optional[CancelToken] = None,
        collision_policy: Optional[CollisionPolicy] = None,
    ) -> ServerRecord:
        """
        Run the plan from ``plan.progress_index`` to the end.

        Args:
            plan: Plan to execute; its progress index advances as steps finish
            emit: Event sink for ``plan.progress`` events
            token: Cancellation token
            collision_policy: Override for the name collision policy

        Returns:
            ServerRecord describing the installed server

        Raises:
            OperationCancelled: If the token fires; no further steps run
            ExecError: If a step fails and recovery does not help
        """
        token = token or CancelToken()
        policy = collision_policy or self.collision_policy
        total = len(plan.steps)

        for index in range(plan.progress_index, total):
            token.raise_if_cancelled()
            step = plan.steps[index]
            self._emit(emit, index, total, "start", step.description)
            try:
                await self._run_with_recovery(plan, index, emit, token, policy)
            except OperationCancelled:
                self._emit(emit, index, total, "error", "cancelled")
                raise
            except (InstallerError, OSError) as e:
                message = e.message if isinstance(e, InstallerError) else str(e)
                self._emit(emit, index, total, "error", message)
                logger.error(f"Step {index} ({step.type.value}) failed: {message}")
                raise ExecError(
                    f"Step {index + 1}/{total} ({step.type.value}) failed: {message}",
                    step_index=index,
                    step_type=step.type.value,
                    kind=error_kind(e) if isinstance(e, InstallerError) else classify(e, step).kind,
                    details=e.details if isinstance(e, InstallerError) else {},
                ) from e
            plan.advance(index)
            self._emit(emit, index, total, "done", step.description)

        return await self._finalize(plan, token)

    def _emit(self, emit: Emit, index: int, total: int, phase: str, message: str) -> None:
        emit(Event(
            type=EventType.PLAN_PROGRESS,
            payload={"step_index": index, "total": total, "phase": phase, "message": message},
        ))

    async def _run_with_recovery(
        self,
        plan: Plan,
        index: int,
        emit: Emit,
        token: CancelToken,
        policy: CollisionPolicy,
    ) -> None:
        recovered = False
        while True:
            step = plan.steps[index]
            try:
                await self._run_step(plan, index, step, emit, token)
                return
            except (OperationCancelled, StepTimeoutError, VerificationError):
                raise
            except (InstallerError, OSError) as e:
                classification = classify(e, step)
                if classification.strategy == Strategy.MISSING_TOOL:
                    if isinstance(e, MissingToolError):
                        raise
                    raise MissingToolError(classification.tool or (step.command or ["?"])[0]) from e
                if recovered or not step.recoverable or classification.strategy == Strategy.FATAL:
                    raise

                recovered = True
                logger.warning(
                    f"Step {index} ({step.type.value}) failed, trying {classification.strategy.value}: "
                    f"{classification.message}"
                )
                if classification.strategy == Strategy.PERMISSION_DENIED:
                    elevated = await self.elevator.elevate(step)
                    if elevated is None:
                        raise
                    plan.steps[index] = elevated
                elif classification.strategy == Strategy.ALREADY_EXISTS:
                    await self._resolve_collision(plan, index, step, policy)

                emit(Event(
                    type=EventType.PLAN_PROGRESS,
                    payload={
                        "step_index": index,
                        "total": len(plan.steps),
                        "phase": "stderr",
                        "message": f"retrying after {classification.strategy.value}",
                    },
                ))

    async def _run_step(self, plan: Plan, index: int, step: Step, emit: Emit, token: CancelToken) -> None:
        if step.type == StepType.VERIFY:
            await self._verify(plan, token)
            return
        if step.type == StepType.CONFIGURE or not step.command:
            self._configure(plan)
            return

        if step.type == StepType.FETCH:
            os.makedirs(step.cwd, exist_ok=True)

        total = len(plan.steps)

        def forward(phase: str):
            def callback(line: str) -> None:
                emit(Event(
                    type=EventType.PLAN_PROGRESS,
                    payload={"step_index": index, "total": total, "phase": phase, "message": line},
                ))
            return callback

        result = await self.runner.run(
            step.command,
            cwd=step.cwd,
            env=step.env,
            timeout=step.timeout or self.step_timeout,
            token=token,
            on_stdout=forward("stdout"),
            on_stderr=forward("stderr"),
        )
        if not result.ok:
            raise CommandFailedError(result.argv, result.exit_code, result.stderr)

    async def _resolve_collision(self, plan: Plan, index: int, step: Step, policy: CollisionPolicy) -> None:
        """Apply the collision policy to the directory or container the step creates."""
        if step.target is None:
            raise ExecError(
                f"Step {step.type.value} reported a name collision but creates nothing renameable",
                step_index=index,
                step_type=step.type.value,
                kind=ErrorKind.NAME_COLLISION,
            )

        if policy == CollisionPolicy.OVERWRITE:
            if step.type == StepType.CONTAINER_RUN:
                logger.warning(f"Removing existing container {step.target}")
                await self.containers.remove(step.target)
            else:
                logger.warning(f"Removing existing directory {step.target}")
                shutil.rmtree(step.target)
            return

        suffix = "-" + self.clock.now().strftime("%Y%m%d%H%M%S")
        old = step.target
        new = old.rstrip("/\\") + suffix
        logger.warning(f"Renaming {old} to {new} after collision")

        if step.type == StepType.CONTAINER_RUN:
            plan.container_name = new
            plan.command = [new if arg == old else arg for arg in plan.command]
            for i, s in enumerate(plan.steps):
                if s.type == StepType.CONTAINER_RUN:
                    plan.steps[i] = s.model_copy(update={
                        "command": [new if arg == old else arg for arg in s.command or []],
                        "target": new,
                    })
            return

        plan.install_path = _retarget(plan.install_path, old, new)
        plan.volumes = {_retarget(k, old, new): v for k, v in plan.volumes.items()}
        plan.command = [_retarget(arg, old, new) for arg in plan.command]
        for i, s in enumerate(plan.steps):
            plan.steps[i] = s.model_copy(update={
                "command": [_retarget(arg, old, new) for arg in s.command] if s.command else s.command,
                "cwd": _retarget(s.cwd, old, new),
                "target": _retarget(s.target, old, new) if s.target else s.target,
            })

    def _configure(self, plan: Plan) -> None:
        """Lay out config/data/logs and seed config files from their examples."""
        root = Path(plan.install_path)
        for name in LAYOUT_DIRS:
            (root / name).mkdir(parents=True, exist_ok=True)

        for name in plan.analysis.config_files:
            source = root / name
            if name.endswith(".example") or ".example." in name:
                target_name = name.replace(".example", "")
                target = root / target_name
                if source.exists() and not target.exists():
                    shutil.copy2(source, target)
                    logger.info(f"Created {target_name} from {name}")
                source, name = target, target_name
            if source.is_file() and name.endswith(".json"):
                shutil.copy2(source, root / "config" / name)

        write_json_atomic(root / "config" / "server.json", {
            "name": plan.name,
            "method": plan.method.value,
            "command": plan.command,
            "env": plan.env,
        })

    async def _verify(self, plan: Plan, token: CancelToken) -> None:
        root = Path(plan.install_path)
        if not root.is_dir():
            raise VerificationError(f"Install path {root} does not exist")

        if plan.method == InstallMethod.CONTAINER:
            state = await self.containers.wait_for_status(
                plan.container_name,
                {ContainerState.RUNNING},
                self.poll_window,
                fail_states={ContainerState.EXITED, ContainerState.MISSING},
                token=token,
            )
            if state != ContainerState.RUNNING:
                raise VerificationError(f"Container {plan.container_name} is {state.value}, expected running")
            return

        expected = NATIVE_ARTIFACTS.get(plan.method, [])
        if plan.analysis.language != "Unknown" and expected and not any((root / f).exists() for f in expected):
            raise VerificationError(f"None of {expected} found in {root}")

    async def _finalize(self, plan: Plan, token: CancelToken) -> ServerRecord:
        root = Path(plan.install_path)
        for name in LAYOUT_DIRS:
            (root / name).mkdir(parents=True, exist_ok=True)

        revision = plan.analysis.revision
        try:
            result = await self.runner.run(["git", "rev-parse", "HEAD"], cwd=str(root), timeout=30, token=token)
        except MissingToolError:
            logger.debug("git not available, keeping analyzed revision")
        else:
            if result.ok and result.stdout.strip():
                revision = result.stdout.strip()

        analysis = plan.analysis
        record = ServerRecord(
            server_id=plan.server_id,
            name=plan.name,
            kind=plan.kind,
            method=plan.method,
            install_path=plan.install_path,
            command=plan.command,
            env=dict(plan.env),
            ports=dict(plan.ports),
            volumes=dict(plan.volumes),
            version=analysis.version or "latest",
            revision=revision,
            source=SourceKind.GIT if analysis.repo_url else SourceKind.LOCAL,
            repo_url=analysis.repo_url,
            image=plan.image,
            container_name=plan.container_name,
            state=ContainerState.RUNNING if plan.method == InstallMethod.CONTAINER else ContainerState.CREATED,
        )
        logger.info(f"Installed {record.name} ({record.kind.value}) at {record.install_path}")
        return record
