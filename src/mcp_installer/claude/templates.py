"""
Known-good server templates.

Used by config repair to synthesize entries for required servers that are
missing from the desktop config.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from mcp_installer.core.models import ServerEntry

NPM_SCOPE = "@modelcontextprotocol"


class ServerTemplate(BaseModel):
    """Default launch recipe for a reference MCP server."""

    name: str
    runner: str = Field(default="node", description="node, npx or python")
    module: Optional[str] = Field(default=None, description="Python module for python runners")
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    @property
    def package(self) -> str:
        return f"{NPM_SCOPE}/server-{self.name}"

    def to_entry(self, modules_path: str) -> ServerEntry:
        """Build a config entry that runs the template from ``modules_path``."""
        if self.runner == "python":
            command = ["python", "-m", self.module or f"mcp_server_{self.name.replace('-', '_')}"]
        elif self.runner == "npx":
            command = ["npx", "-y", self.package]
        else:
            command = ["node", f"{modules_path}/{self.package}/dist/index.js"]
        return ServerEntry(
            command=command + list(self.args),
            cwd=modules_path,
            env=dict(self.env),
            auto_restart=True,
        )


def _node(name: str, port: Optional[int] = None) -> ServerTemplate:
    args = ["--port", str(port)] if port else []
    return ServerTemplate(name=name, args=args)


TEMPLATES: Dict[str, ServerTemplate] = {
    t.name: t
    for t in [
        _node("github", 3001),
        _node("redis", 3002),
        _node("time", 3003),
        _node("filesystem", 3004),
        _node("brave-search", 3005),
        _node("memory"),
        _node("aws-kb-retrieval-server"),
        _node("everart"),
        _node("everything"),
        _node("gdrive"),
        _node("git"),
        _node("gitlab"),
        _node("google-maps"),
        _node("postgres"),
        _node("puppeteer"),
        _node("sentry"),
        _node("sequentialthinking"),
        _node("slack"),
        _node("sqlite"),
        ServerTemplate(name="fetch", runner="python", module="mcp_server_fetch"),
    ]
}


def get_template(name: str) -> ServerTemplate:
    """Return the template for ``name``, or one that fetches the npm package on demand."""
    return TEMPLATES.get(name) or ServerTemplate(name=name, runner="npx")
