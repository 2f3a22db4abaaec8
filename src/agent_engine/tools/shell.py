from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from agent_engine.core.errors import ErrorCode
from agent_engine.core.registry import (
    ApprovalRequirement,
    ConcurrencyClass,
    ToolDescriptor,
    normalize_command_target,
)
from agent_engine.core.tool_result import ToolResult, truncate_output
from agent_engine.tools.workspace import Workspace

_log = logging.getLogger(__name__)

SCHEMA = {
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute."},
        "cwd": {
            "type": "string",
            "description": "Working directory. Defaults to workspace root.",
        },
    },
    "required": ["command"],
    "additionalProperties": False,
}

DESCRIPTION = (
    "Execute a shell command in the workspace. "
    "Avoid destructive commands; every command requires user confirmation."
)


class ShellTool:
    name = "shell"

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
            target_arg="command",
            normalize_target=normalize_command_target,
        )

    async def invoke(self, name: str, arguments: Dict[str, Any], cancel: asyncio.Event) -> ToolResult:
        command: str = arguments["command"]
        try:
            cwd = self._workspace.resolve(arguments.get("cwd"))
        except ValueError as exc:
            return Workspace.outside(exc)
        if not cwd.is_dir():
            return ToolResult.failure(
                str(ErrorCode.TOOL_EXECUTION_ERROR), f"Working directory does not exist: {cwd}"
            )

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
            )
        except OSError as exc:
            return ToolResult.failure(str(ErrorCode.TOOL_EXECUTION_ERROR), f"Execution failed: {exc}")

        output = asyncio.create_task(proc.communicate())
        stop = asyncio.create_task(cancel.wait())
        try:
            await asyncio.wait({output, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._kill(proc, output)
            raise
        finally:
            stop.cancel()

        if not output.done():
            await self._kill(proc, output)
            return ToolResult.failure(str(ErrorCode.CANCELLED), f"Command cancelled: {command}")

        stdout, stderr = output.result()
        code = proc.returncode
        success = code == 0
        return ToolResult.success(
            data={
                "command": command,
                "exit_code": code,
                "stdout": truncate_output(stdout.decode("utf-8", errors="replace")),
                "stderr": truncate_output(stderr.decode("utf-8", errors="replace")),
                "success": success,
            },
            message=f"Command exited with code {code}",
            warnings=[] if success else [f"Command exited with non-zero code {code}"],
        )

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process, output: asyncio.Task) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        output.cancel()
        try:
            await output
        except asyncio.CancelledError:
            pass
        await proc.wait()
        _log.debug("Killed shell process %s", proc.pid)
