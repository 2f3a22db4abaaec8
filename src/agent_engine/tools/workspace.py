"""Workspace boundary shared by the file and shell tools."""

from __future__ import annotations

from pathlib import Path

from agent_engine.core.errors import ErrorCode
from agent_engine.core.tool_result import ToolResult


class Workspace:
    """Resolves tool paths and rejects those escaping the workspace root."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, raw_path: str | None) -> Path:
        """Resolve a relative or absolute path.

        Raises:
            ValueError: If the path resolves outside the workspace.
        """
        if not raw_path:
            return self.root
        path = Path(raw_path)
        path = (self.root / path).resolve() if not path.is_absolute() else path.resolve()
        try:
            path.relative_to(self.root)
        except ValueError:
            raise ValueError(f"Path '{raw_path}' resolves outside the workspace.") from None
        return path

    def relative(self, path: Path) -> str:
        return str(path.relative_to(self.root)).replace("\\", "/") or "."

    @staticmethod
    def outside(error: ValueError) -> ToolResult:
        return ToolResult.failure(str(ErrorCode.VALIDATION_ERROR), str(error))
