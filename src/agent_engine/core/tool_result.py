from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MAX_RESULT_CHARS = 30000


def truncate_output(text: str, max_length: int = MAX_RESULT_CHARS) -> str:
    """Truncate output to max_length characters.

    Args:
        text: The text to truncate
        max_length: Maximum length

    Returns:
        Truncated text with indicator appended
    """
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n\n[Output truncated - showing first {max_length} characters]"


@dataclass
class ToolResult:
    """Standard envelope for all tool responses."""

    ok: bool
    error_code: Optional[str] = None
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return not self.ok

    @property
    def output(self) -> str:
        """Returns data['content'], data['output'], or message."""
        value = self.data.get("content") or self.data.get("output")
        if value is None:
            return self.message
        return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)

    @classmethod
    def success(
        cls,
        data: Optional[Dict[str, Any]] = None,
        message: str = "",
        warnings: Optional[List[str]] = None,
    ) -> "ToolResult":
        return cls(ok=True, error_code=None, message=message, data=data or {}, warnings=warnings or [])

    @classmethod
    def failure(
        cls,
        error_code: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        warnings: Optional[List[str]] = None,
    ) -> "ToolResult":
        return cls(ok=False, error_code=error_code, message=message, data=data or {}, warnings=warnings or [])

    def to_content(self, max_length: int = MAX_RESULT_CHARS) -> str:
        """Render the text handed back to the model for this result."""
        if not self.ok:
            return json.dumps({
                "error": self.message,
                "error_code": self.error_code,
                "output": truncate_output(self.output if self.output != self.message else "", max_length),
            })
        body = self.data if self.data else {"output": self.message}
        payload: Dict[str, Any] = {"message": self.message, **body} if self.message else dict(body)
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return truncate_output(json.dumps(payload, ensure_ascii=False, default=str), max_length)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "error_code": self.error_code,
            "message": self.message,
            "data": self.data,
            "warnings": self.warnings,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolResult":
        return cls(
            ok=bool(data.get("ok")),
            error_code=data.get("error_code"),
            message=data.get("message", ""),
            data=data.get("data") or {},
            warnings=list(data.get("warnings") or []),
        )
