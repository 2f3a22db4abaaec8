from __future__ import annotations

import asyncio
from typing import Any, Dict

from agent_engine.core.errors import ErrorCode
from agent_engine.core.registry import (
    ApprovalRequirement,
    ConcurrencyClass,
    ToolDescriptor,
    normalize_path_target,
)
from agent_engine.core.tool_result import ToolResult
from agent_engine.tools.workspace import Workspace

SCHEMA = {
    "properties": {
        "path": {"type": "string", "description": "Relative or absolute path to the destination file."},
        "content": {"type": "string", "description": "Text content to write."},
        "overwrite": {"type": "boolean", "description": "Allow overwriting an existing file. Default: true."},
    },
    "required": ["path", "content"],
    "additionalProperties": False,
}

DESCRIPTION = (
    "Create or overwrite a file in the workspace. "
    "Intermediate directories are created automatically."
)


class FileWriteTool:
    name = "file_write"

    def __init__(self, workspace_root: str) -> None:
        self._workspace = Workspace(workspace_root)

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=DESCRIPTION,
            parameters=SCHEMA,
            executor=self,
            approval=ApprovalRequirement.REQUIRED,
            concurrency=ConcurrencyClass.EXCLUSIVE,
            target_arg="path",
            normalize_target=normalize_path_target,
        )

    async def invoke(self, name: str, arguments: Dict[str, Any], cancel: asyncio.Event) -> ToolResult:
        # A single write is short; it is never interrupted half way
        return await asyncio.to_thread(self.run, arguments)

    def run(self, args: Dict[str, Any]) -> ToolResult:
        try:
            path = self._workspace.resolve(args["path"])
        except ValueError as exc:
            return Workspace.outside(exc)

        content: str = args["content"]
        overwrite: bool = bool(args.get("overwrite", True))
        existed = path.exists()

        if existed and path.is_dir():
            return ToolResult.failure(str(ErrorCode.TOOL_EXECUTION_ERROR), f"Path is a directory: {path}")
        if existed and not overwrite:
            return ToolResult.failure(
                str(ErrorCode.TOOL_EXECUTION_ERROR),
                f"File already exists and overwrite=false: {path}",
            )

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            return ToolResult.failure(str(ErrorCode.TOOL_EXECUTION_ERROR), f"Could not write file: {exc}")

        size = len(content.encode("utf-8"))
        return ToolResult.success(
            data={
                "path": self._workspace.relative(path),
                "bytes_written": size,
                "created": not existed,
                "overwritten": existed,
            },
            message=f"{'Overwrote' if existed else 'Created'} {path.name} ({size} bytes)",
        )
