from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from agent_engine.core.errors import ErrorCode
from agent_engine.core.registry import ConcurrencyClass, ToolDescriptor, normalize_path_target
from agent_engine.core.tool_result import ToolResult
from agent_engine.tools.workspace import Workspace

SCHEMA = {
    "properties": {
        "path": {"type": "string", "description": "Relative or absolute path to the file."},
        "offset": {"type": "integer", "description": "0-based line index to start reading from. Default: 0."},
        "limit": {"type": "integer", "description": "Maximum number of lines to return. Omit to read entire file."},
    },
    "required": ["path"],
    "additionalProperties": False,
}

DESCRIPTION = (
    "Read the contents of a file from the workspace. "
    "Optionally control the line range returned via offset and limit."
)


class FileReadTool:
    name = "file_read"

    def __init__(self, workspace_root: str) -> None:
        self._workspace = Workspace(workspace_root)

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=DESCRIPTION,
            parameters=SCHEMA,
            executor=self,
            concurrency=ConcurrencyClass.SHARED,
            target_arg="path",
            normalize_target=normalize_path_target,
        )

    async def invoke(self, name: str, arguments: Dict[str, Any], cancel: asyncio.Event) -> ToolResult:
        return await asyncio.to_thread(self.run, arguments)

    def run(self, args: Dict[str, Any]) -> ToolResult:
        try:
            path = self._workspace.resolve(args["path"])
        except ValueError as exc:
            return Workspace.outside(exc)

        offset: int = max(0, int(args.get("offset", 0)))
        limit: Optional[int] = args.get("limit")

        if not path.exists():
            return ToolResult.failure(str(ErrorCode.TOOL_EXECUTION_ERROR), f"File not found: {path}")
        if not path.is_file():
            return ToolResult.failure(str(ErrorCode.TOOL_EXECUTION_ERROR), f"Path is not a file: {path}")

        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines(keepends=True)
        except OSError as exc:
            return ToolResult.failure(str(ErrorCode.TOOL_EXECUTION_ERROR), f"Could not read file: {exc}")

        sliced = lines[offset:] if limit is None else lines[offset: offset + limit]
        return ToolResult.success(
            data={
                "path": self._workspace.relative(path),
                "content": "".join(sliced),
                "total_lines": len(lines),
                "returned_lines": len(sliced),
                "offset": offset,
            },
            message=f"Read {len(sliced)} lines from {path.name}",
        )
