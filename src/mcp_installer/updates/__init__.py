"""Upstream update checks and upgrades."""

from mcp_installer.updates.checker import UpdateChecker, image_repository

__all__ = ["UpdateChecker", "image_repository"]
