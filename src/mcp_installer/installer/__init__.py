"""Repository analysis, planning and plan execution."""

from mcp_installer.installer.analyzer import RepoAnalyzer
from mcp_installer.installer.executor import Executor
from mcp_installer.installer.planner import Planner, select_method
from mcp_installer.installer.recovery import Strategy, classify

__all__ = ["RepoAnalyzer", "Executor", "Planner", "select_method", "Strategy", "classify"]
