"""Loom MCP: parallel coding-agent orchestration over isolated git worktrees."""

__version__ = "0.1.0"

__all__ = ["__version__"]
