"""
Installation planner.

Turns a RepoAnalysis plus user options into an ordered Plan. Planning is
pure: no filesystem or process access happens here.
"""

import ntpath
import posixpath
from typing import List, Optional

from mcp_installer.core.models import (
    ContainerSpec,
    InstallMethod,
    InstallOptions,
    Plan,
    RepoAnalysis,
    RestartPolicy,
    Step,
    StepType,
)
from mcp_installer.runtime.container import run_argv
from mcp_installer.utils.logging import get_logger
from mcp_installer.utils.validators import slugify, validate_server_name

logger = get_logger(__name__)

DEFAULT_CONTAINER_PORT = 3000


def select_method(analysis: RepoAnalysis, options: Optional[InstallOptions] = None) -> InstallMethod:
    """
    Pick the installation method. First matching rule wins:

    1. the method the user forced;
    2. ``container`` if the repository has a container recipe (and containers are allowed);
    3. ``python`` if the primary language is Python;
    4. ``package-manager``.
    """
    options = options or InstallOptions()
    if options.method is not None:
        return options.method
    if analysis.has_container_recipe and options.include_container:
        return InstallMethod.CONTAINER
    if analysis.is_python:
        return InstallMethod.PYTHON
    return InstallMethod.PACKAGE_MANAGER


class Planner:
    """Builds installation plans."""

    def __init__(
        self,
        install_root: str = "/opt/mcp/servers",
        engine: str = "docker",
        python: str = "python",
    ):
        self.install_root = install_root
        self.engine = engine
        self.python = python
        # Windows-style roots keep Windows path semantics even on POSIX hosts
        self._path = ntpath if (":" in install_root[:3] or "\\" in install_root) else posixpath

    def install_path_for(self, analysis: RepoAnalysis, options: InstallOptions) -> str:
        if options.install_path:
            return self._path.normpath(options.install_path)
        return self._path.join(self.install_root, analysis.repo)

    def plan(
        self,
        analysis: RepoAnalysis,
        options: Optional[InstallOptions] = None,
        server_id: Optional[str] = None,
    ) -> Plan:
        """
        Produce an installation plan.

        Args:
            analysis: Repository analysis
            options: User options (install path, forced method, container flag)
            server_id: Provisional server id (defaults to the server name)

        Returns:
            Plan whose first step fetches the source into the install path
        """
        options = options or InstallOptions()
        name = options.server_name or slugify(analysis.repo)
        validate_server_name(name)

        method = select_method(analysis, options)
        install_path = self.install_path_for(analysis, options)
        plan = Plan(
            server_id=server_id or name,
            name=name,
            install_path=install_path,
            method=method,
            analysis=analysis,
            env=dict(options.env),
        )

        steps: List[Step] = [self._fetch_step(plan, options)]
        if method == InstallMethod.CONTAINER:
            steps += self._container_steps(plan, options)
        else:
            steps += self._native_steps(plan, options)
        steps.append(Step(
            type=StepType.VERIFY,
            description="Verify installation",
            cwd=install_path,
            recoverable=False,
        ))
        plan.steps = steps

        logger.info(
            f"Planned {method.value} install of {analysis.repo} into {install_path}: "
            f"{[s.type.value for s in steps]}"
        )
        return plan

    def _fetch_step(self, plan: Plan, options: InstallOptions) -> Step:
        return Step(
            type=StepType.FETCH,
            description=f"Clone {plan.analysis.source_ref}",
            command=["git", "clone", plan.analysis.source_ref, plan.install_path],
            cwd=self._path.dirname(plan.install_path) or plan.install_path,
            timeout=options.step_timeout,
            target=plan.install_path,
        )

    def _container_steps(self, plan: Plan, options: InstallOptions) -> List[Step]:
        tag = plan.analysis.version or "latest"
        container_name = f"mcp-{slugify(plan.analysis.repo)}"
        plan.image = f"{container_name}:{tag}"
        plan.container_name = container_name
        plan.ports = {DEFAULT_CONTAINER_PORT: DEFAULT_CONTAINER_PORT}
        plan.volumes = {self._path.join(plan.install_path, "data"): "/app/data"}

        spec = ContainerSpec(
            image=plan.image,
            name=container_name,
            env=plan.env,
            ports=plan.ports,
            volumes=plan.volumes,
            restart_policy=RestartPolicy.UNLESS_STOPPED,
        )
        plan.command = [self.engine, "run", "--name", container_name, "-i", "--rm", plan.image]

        return [
            Step(
                type=StepType.CONTAINER_BUILD,
                description=f"Build image {plan.image}",
                command=[self.engine, "build", "-t", plan.image, plan.install_path],
                cwd=plan.install_path,
                timeout=options.step_timeout,
            ),
            Step(
                type=StepType.CONTAINER_RUN,
                description=f"Run container {container_name}",
                command=run_argv(self.engine, spec),
                cwd=plan.install_path,
                timeout=options.step_timeout,
                target=container_name,
            ),
        ]

    def _native_steps(self, plan: Plan, options: InstallOptions) -> List[Step]:
        analysis = plan.analysis
        build = analysis.build_command
        install_commands = [c for c in analysis.install_commands if c != build]

        if not install_commands and plan.method == InstallMethod.PYTHON:
            install_commands = [[self.python, "-m", "pip", "install", "-r", "requirements.txt"]]
        elif not install_commands:
            install_commands = [["npm", "install"]]

        if analysis.start_command:
            plan.command = list(analysis.start_command)
        elif plan.method == InstallMethod.PYTHON:
            plan.command = [self.python, "-m", analysis.repo.replace("-", "_")]
        else:
            plan.command = ["npm", "start"]

        # Analysis order: requirements.txt before the project itself
        steps = [
            Step(
                type=StepType.INSTALL_DEPS,
                description="Install dependencies" if i == 0 else f"Install dependencies ({i + 1})",
                command=list(install),
                cwd=plan.install_path,
                env=dict(plan.env),
                timeout=options.step_timeout,
            )
            for i, install in enumerate(install_commands)
        ]
        if build is not None:
            steps.append(Step(
                type=StepType.BUILD,
                description="Build server",
                command=list(build),
                cwd=plan.install_path,
                env=dict(plan.env),
                timeout=options.step_timeout,
            ))
        if analysis.config_files:
            steps.append(Step(
                type=StepType.CONFIGURE,
                description=f"Configure {', '.join(analysis.config_files)}",
                cwd=plan.install_path,
            ))
        return steps
