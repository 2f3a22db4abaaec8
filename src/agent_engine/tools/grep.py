from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent_engine.core.errors import ErrorCode
from agent_engine.core.registry import ConcurrencyClass, ToolDescriptor, normalize_command_target
from agent_engine.core.tool_result import ToolResult
from agent_engine.tools.workspace import Workspace

SCHEMA = {
    "properties": {
        "pattern": {"type": "string", "description": "Regular expression to search for."},
        "path": {
            "type": "string",
            "description": "File or directory to search. Defaults to workspace root.",
        },
        "glob": {
            "type": "string",
            "description": "Limit search to files matching this glob pattern, e.g. '*.py'.",
        },
        "case_sensitive": {
            "type": "boolean",
            "description": "Case-sensitive search. Default: true.",
        },
        "max_results": {
            "type": "integer",
            "description": "Maximum number of matching lines to return. Default: 200.",
        },
    },
    "required": ["pattern"],
    "additionalProperties": False,
}

DESCRIPTION = (
    "Search inside files using Python regular expressions. "
    "Returns matching file paths, line numbers, and matching lines."
)

_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv"}


class GrepTool:
    name = "grep"

    def __init__(self, workspace_root: str) -> None:
        self._workspace = Workspace(workspace_root)

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=DESCRIPTION,
            parameters=SCHEMA,
            executor=self,
            concurrency=ConcurrencyClass.SHARED,
            target_arg="pattern",
            normalize_target=normalize_command_target,
        )

    async def invoke(self, name: str, arguments: Dict[str, Any], cancel: asyncio.Event) -> ToolResult:
        return await asyncio.to_thread(self.run, arguments, cancel)

    def run(self, args: Dict[str, Any], cancel: Optional[asyncio.Event] = None) -> ToolResult:
        pattern: str = args["pattern"]
        case_sensitive: bool = bool(args.get("case_sensitive", True))
        max_results: int = int(args.get("max_results", 200))
        glob_pattern: Optional[str] = args.get("glob")

        try:
            search_path = self._workspace.resolve(args.get("path"))
        except ValueError as exc:
            return Workspace.outside(exc)

        if not search_path.exists():
            return ToolResult.failure(
                str(ErrorCode.TOOL_EXECUTION_ERROR), f"Search path does not exist: {search_path}"
            )

        try:
            regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
        except re.error as exc:
            return ToolResult.failure(str(ErrorCode.VALIDATION_ERROR), f"Invalid regex pattern: {exc}")

        matches: List[Dict[str, Any]] = []
        files_matched: set = set()
        truncated = False

        for file_path in self._files(search_path, glob_pattern):
            if truncated:
                break
            # Checked between files; a running to_thread call cannot be interrupted
            if cancel is not None and cancel.is_set():
                return ToolResult.failure(str(ErrorCode.CANCELLED), "Search cancelled")
            try:
                lines = file_path.read_text(encoding="utf-8", errors="replace").splitlines()
            except OSError:
                continue
            for i, line in enumerate(lines):
                if regex.search(line):
                    rel = self._workspace.relative(file_path)
                    matches.append({"file": rel, "line_number": i + 1, "line": line})
                    files_matched.add(rel)
                    if len(matches) >= max_results:
                        truncated = True
                        break

        warnings = []
        if truncated:
            warnings.append(f"Results truncated at {max_results}.")

        return ToolResult.success(
            data={
                "pattern": pattern,
                "matches": matches,
                "match_count": len(matches),
                "files_matched": sorted(files_matched),
                "truncated": truncated,
            },
            message=f"Found {len(matches)} match(es) across {len(files_matched)} file(s)",
            warnings=warnings,
        )

    @staticmethod
    def _files(search_path: Path, glob_pattern: Optional[str]) -> List[Path]:
        if search_path.is_file():
            return [search_path]
        candidates = search_path.rglob(glob_pattern or "*")
        return sorted(
            p for p in candidates
            if p.is_file() and not _SKIP_DIRS.intersection(p.relative_to(search_path).parts)
        )
