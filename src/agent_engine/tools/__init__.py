"""Built-in tools and registry construction."""

from __future__ import annotations

import os

from agent_engine.core.registry import ToolRegistry
from agent_engine.tools.file_read import FileReadTool
from agent_engine.tools.file_write import FileWriteTool
from agent_engine.tools.grep import GrepTool
from agent_engine.tools.shell import ShellTool

__all__ = ["FileReadTool", "FileWriteTool", "GrepTool", "ShellTool", "build_registry"]


def build_registry(workspace_root: str | None = None) -> ToolRegistry:
    """Return a registry with every built-in tool rooted at workspace_root (default: cwd)."""
    root = workspace_root or os.getcwd()
    registry = ToolRegistry()
    for tool in (FileReadTool(root), GrepTool(root), FileWriteTool(root), ShellTool(root)):
        registry.register(tool.descriptor())
    return registry
