"""
Repository analysis.

Works out language, container recipe, dependencies, install/start commands
and config files for a repository. Well-known MCP repositories are answered
from a built-in table; anything else is shallow-cloned into a scratch
directory that is always removed afterwards.
"""

import json
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from mcp_installer.core.exceptions import AnalyzeError, ErrorKind, InstallerError, OperationCancelled
from mcp_installer.core.models import Dependency, RepoAnalysis
from mcp_installer.tools.runner import CancelToken, CommandRunner
from mcp_installer.utils.logging import get_logger
from mcp_installer.utils.validators import is_remote_ref, parse_github_url

logger = get_logger(__name__)

KNOWN_REPOSITORIES: Dict[str, Dict[str, Any]] = {
    "modelcontextprotocol/servers": {
        "language": "JavaScript",
        "framework": "Node.js",
        "has_container_recipe": True,
        "dependencies": [("express", "^4.18.2"), ("cors", "^2.8.5"), ("dotenv", "^16.0.3")],
        "install_commands": [["npm", "install"], ["npm", "run", "build"]],
        "start_command": ["npm", "start"],
        "config_files": ["config.json", ".env"],
    },
    "davidteren/claude-server": {
        "language": "JavaScript",
        "framework": "Node.js",
        "has_container_recipe": True,
        "dependencies": [("express", "^4.18.2"), ("anthropic", "^0.5.0")],
        "install_commands": [["npm", "install"]],
        "start_command": ["node", "server.js"],
        "config_files": ["config.json"],
    },
    "GongRzhe/JSON-MCP-Server": {
        "language": "JavaScript",
        "framework": "Node.js",
        "has_container_recipe": False,
        "dependencies": [("express", "^4.18.2"), ("body-parser", "^1.20.2")],
        "install_commands": [["npm", "install"]],
        "start_command": ["node", "index.js"],
        "config_files": ["config.json"],
    },
    "browserbase/mcp-server-browserbase": {
        "language": "JavaScript",
        "framework": "Node.js",
        "has_container_recipe": True,
        "dependencies": [("express", "^4.18.2"), ("puppeteer", "^19.7.2")],
        "install_commands": [["npm", "install"]],
        "start_command": ["node", "server.js"],
        "config_files": ["config.json"],
    },
}

CONFIG_CANDIDATES = [
    "config.json",
    "config.example.json",
    "settings.json",
    ".env",
    ".env.example",
]

CONTAINER_RECIPES = ["Dockerfile", "Containerfile"]

REQUIREMENT_RE = re.compile(r"^\s*([A-Za-z0-9_.\-\[\]]+)\s*(?:([=<>!~]=?.*?))?\s*(?:#.*)?$")


def repo_name_from_ref(repo_ref: str) -> str:
    """Last path component of a URL or path, without ``.git``."""
    name = repo_ref.rstrip("/\\").replace("\\", "/").rsplit("/", 1)[-1]
    name = name.rsplit(":", 1)[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name


def normalize_repo_url(repo_ref: str) -> str:
    """Canonical https clone URL for GitHub references; others unchanged."""
    parsed = parse_github_url(repo_ref)
    if parsed:
        owner, repo = parsed
        return f"https://github.com/{owner}/{repo}"
    return repo_ref.strip()


def _parse_requirements(path: Path) -> List[Dependency]:
    dependencies = []
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith(("#", "-")):
            continue
        match = REQUIREMENT_RE.match(line)
        if match:
            dependencies.append(Dependency(name=match.group(1), version=(match.group(2) or "*").strip()))
    return dependencies


class RepoAnalyzer:
    """Inspects repositories to produce a RepoAnalysis."""

    def __init__(
        self,
        runner: CommandRunner,
        scratch_root: Optional[str] = None,
        known_repositories: Optional[Dict[str, Dict[str, Any]]] = None,
        python: str = "python",
        fetch_timeout: float = 300.0,
    ):
        self.runner = runner
        self.scratch_root = scratch_root
        self.known = KNOWN_REPOSITORIES if known_repositories is None else known_repositories
        self.python = python
        self.fetch_timeout = fetch_timeout

    async def analyze(self, repo_ref: str, token: Optional[CancelToken] = None) -> RepoAnalysis:
        """
        Analyze a repository URL or local path.

        Args:
            repo_ref: Git URL or local directory
            token: Cancellation token

        Returns:
            RepoAnalysis

        Raises:
            AnalyzeError: Unreachable if it cannot be fetched, Unparseable if
                the reference or its manifests cannot be understood
        """
        repo_ref = (repo_ref or "").strip()
        if not repo_ref:
            raise AnalyzeError("Repository reference is empty", kind=ErrorKind.UNPARSEABLE)

        if not is_remote_ref(repo_ref):
            path = Path(repo_ref).expanduser().resolve()
            if not path.is_dir():
                raise AnalyzeError(f"Local repository not found: {path}", kind=ErrorKind.UNREACHABLE)
            return self.inspect_directory(path, repo=path.name, local_path=str(path))

        repo_url = normalize_repo_url(repo_ref)
        parsed = parse_github_url(repo_url)
        owner, repo = parsed if parsed else (None, repo_name_from_ref(repo_url))
        if not repo:
            raise AnalyzeError(f"Cannot derive a repository name from {repo_ref}", kind=ErrorKind.UNPARSEABLE)

        known = self.known.get(f"{owner}/{repo}") if owner else None
        if known is not None:
            logger.info(f"Using built-in analysis for {owner}/{repo}")
            return self._from_known(known, repo_url=repo_url, owner=owner, repo=repo)

        return await self._analyze_remote(repo_url, owner, repo, token)

    def _from_known(self, details: Dict[str, Any], **identity: Any) -> RepoAnalysis:
        return RepoAnalysis(
            language=details["language"],
            framework=details.get("framework"),
            has_container_recipe=details.get("has_container_recipe", False),
            dependencies=[Dependency(name=n, version=v) for n, v in details.get("dependencies", [])],
            install_commands=[list(c) for c in details.get("install_commands", [])],
            start_command=list(details.get("start_command", [])),
            config_files=list(details.get("config_files", [])),
            **identity,
        )

    async def _analyze_remote(
        self,
        repo_url: str,
        owner: Optional[str],
        repo: str,
        token: Optional[CancelToken],
    ) -> RepoAnalysis:
        scratch = tempfile.mkdtemp(prefix="mcp-analyze-", dir=self.scratch_root)
        checkout = os.path.join(scratch, repo)
        try:
            try:
                result = await self.runner.run(
                    ["git", "clone", "--depth=1", repo_url, checkout],
                    cwd=scratch,
                    timeout=self.fetch_timeout,
                    token=token,
                )
            except OperationCancelled:
                raise
            except InstallerError as e:
                raise AnalyzeError(f"Could not fetch {repo_url}: {e.message}", kind=ErrorKind.UNREACHABLE) from e
            if not result.ok:
                raise AnalyzeError(
                    f"Could not fetch {repo_url}: {result.stderr.strip()}",
                    kind=ErrorKind.UNREACHABLE,
                    details={"exit_code": result.exit_code},
                )

            revision = None
            head = await self.runner.run(["git", "rev-parse", "HEAD"], cwd=checkout, timeout=30, token=token)
            if head.ok and head.stdout.strip():
                revision = head.stdout.strip()
            tag = None
            describe = await self.runner.run(
                ["git", "describe", "--tags", "--abbrev=0"], cwd=checkout, timeout=30, token=token
            )
            if describe.ok and describe.stdout.strip():
                tag = describe.stdout.strip()

            return self.inspect_directory(
                Path(checkout),
                repo=repo,
                repo_url=repo_url,
                owner=owner,
                version=tag,
                revision=revision,
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
            logger.debug(f"Removed scratch directory {scratch}")

    def inspect_directory(self, path: Path, **identity: Any) -> RepoAnalysis:
        """Derive an analysis from the files in a checked-out repository."""
        has_recipe = any((path / name).is_file() for name in CONTAINER_RECIPES)
        config_files = [name for name in CONFIG_CANDIDATES if (path / name).exists()]

        if (path / "package.json").is_file():
            details = self._inspect_node(path)
        elif any((path / name).is_file() for name in ("pyproject.toml", "requirements.txt", "setup.py")):
            details = self._inspect_python(path, identity.get("repo", path.name))
        else:
            details = {"language": "Unknown"}

        return RepoAnalysis(
            has_container_recipe=has_recipe,
            config_files=config_files,
            **details,
            **identity,
        )

    def _inspect_node(self, path: Path) -> Dict[str, Any]:
        try:
            package = json.loads((path / "package.json").read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise AnalyzeError(f"package.json is not valid JSON: {e}", kind=ErrorKind.UNPARSEABLE) from e
        if not isinstance(package, dict):
            raise AnalyzeError("package.json must be an object", kind=ErrorKind.UNPARSEABLE)

        scripts = package.get("scripts") or {}
        dev_dependencies = package.get("devDependencies") or {}
        typescript = (path / "tsconfig.json").exists() or "typescript" in dev_dependencies

        install_commands = [["npm", "install"]]
        if "build" in scripts:
            install_commands.append(["npm", "run", "build"])

        if "start" in scripts:
            start_command = ["npm", "start"]
        else:
            start_command = ["node", package.get("main") or "index.js"]

        return {
            "language": "TypeScript" if typescript else "JavaScript",
            "framework": "Node.js",
            "dependencies": [
                Dependency(name=name, version=str(version))
                for name, version in (package.get("dependencies") or {}).items()
            ],
            "install_commands": install_commands,
            "start_command": start_command,
        }

    def _inspect_python(self, path: Path, repo: str) -> Dict[str, Any]:
        dependencies: List[Dependency] = []
        start_command: List[str] = []
        install_commands: List[List[str]] = []

        pyproject_path = path / "pyproject.toml"
        if pyproject_path.is_file():
            try:
                pyproject = toml.load(pyproject_path)
            except toml.TomlDecodeError as e:
                raise AnalyzeError(f"pyproject.toml is not valid TOML: {e}", kind=ErrorKind.UNPARSEABLE) from e
            project = pyproject.get("project") or {}
            for requirement in project.get("dependencies") or []:
                match = REQUIREMENT_RE.match(requirement)
                if match:
                    dependencies.append(Dependency(name=match.group(1), version=(match.group(2) or "*").strip()))
            scripts = project.get("scripts") or {}
            if scripts:
                start_command = [next(iter(scripts))]
            install_commands.append([self.python, "-m", "pip", "install", "."])

        requirements_path = path / "requirements.txt"
        if requirements_path.is_file():
            if not dependencies:
                dependencies = _parse_requirements(requirements_path)
            install_commands.insert(0, [self.python, "-m", "pip", "install", "-r", "requirements.txt"])

        if not install_commands:
            install_commands.append([self.python, "-m", "pip", "install", "."])

        if not start_command:
            for entry in ("server.py", "main.py", "app.py"):
                if (path / entry).is_file():
                    start_command = [self.python, entry]
                    break
            else:
                start_command = [self.python, "-m", repo.replace("-", "_")]

        return {
            "language": "Python",
            "framework": "Python",
            "dependencies": dependencies,
            "install_commands": install_commands,
            "start_command": start_command,
        }
