"""Command line interface for MCP Installer."""
