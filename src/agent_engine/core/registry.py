"""Tool registry: static mapping from tool name to its capability descriptor."""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from agent_engine.core.tool_result import ToolResult


class ApprovalRequirement(str, Enum):
    NONE = "none"
    REQUIRED = "required"


class ConcurrencyClass(str, Enum):
    """EXCLUSIVE tools never overlap another exclusive tool in the same batch."""

    EXCLUSIVE = "exclusive"
    SHARED = "shared"


@runtime_checkable
class ToolExecutor(Protocol):
    """Capability that runs one registered tool.

    Implementations must return promptly once ``cancel`` is set for shared
    tools; exclusive tools may finish their current write first.
    """

    async def invoke(self, name: str, arguments: Dict[str, Any], cancel: asyncio.Event) -> ToolResult:
        ...


def normalize_path_target(value: Any) -> str:
    return os.path.normpath(str(value)).replace("\\", "/")


def normalize_command_target(value: Any) -> str:
    return " ".join(str(value).split())


@dataclass(frozen=True)
class ToolDescriptor:
    """Definition of a tool available to the agent.

    Attributes:
        name: Name the model uses to call the tool
        description: Description shown to the model
        parameters: JSON-schema object with ``properties`` and ``required``
        executor: Capability that performs the call
        approval: Whether a human must approve each call
        concurrency: Exclusive (mutates shared state) or shared (read-only)
        target_arg: Argument identifying what the call acts on, used to
            remember "approve always" decisions
        normalize_target: Canonicalises the target so equivalent calls match
        timeout: Per-call timeout override in seconds
    """

    name: str
    description: str
    parameters: Dict[str, Any]
    executor: ToolExecutor
    approval: ApprovalRequirement = ApprovalRequirement.NONE
    concurrency: ConcurrencyClass = ConcurrencyClass.SHARED
    target_arg: Optional[str] = None
    normalize_target: Callable[[Any], str] = field(default=normalize_command_target)
    timeout: Optional[float] = None

    @property
    def requires_approval(self) -> bool:
        return self.approval is ApprovalRequirement.REQUIRED

    @property
    def exclusive(self) -> bool:
        return self.concurrency is ConcurrencyClass.EXCLUSIVE

    def approval_target(self, arguments: Dict[str, Any] | None) -> str:
        """Normalized description of what a call acts on, e.g. a path or command."""
        if not self.target_arg or not arguments or self.target_arg not in arguments:
            return "*"
        return self.normalize_target(arguments[self.target_arg])

    def describe(self, arguments: Dict[str, Any] | None) -> str:
        """Human-readable summary of a call for permission prompts."""
        return f"{self.name} {format_arguments(arguments or {})}"

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.parameters.get("properties", {}),
                    "required": list(self.parameters.get("required", [])),
                },
            },
        }


_MAX_PARAM_DISPLAY = 120

_TYPE_MAP: Dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def format_arguments(arguments: Dict[str, Any]) -> str:
    """Format arguments with long values truncated for display."""
    parts = []
    for key, value in arguments.items():
        text = str(value)
        if len(text) > _MAX_PARAM_DISPLAY:
            text = text[:_MAX_PARAM_DISPLAY] + f"... ({len(text)} chars)"
        parts.append(f"{key}={text!r}")
    return "{" + ", ".join(parts) + "}"


def validate_arguments(arguments: Any, schema: Dict[str, Any]) -> Optional[str]:
    """Minimal JSON-schema-style validation (object, required, type, enum, extras).

    Returns:
        An error message, or None when the arguments are valid.
    """
    if not isinstance(arguments, dict):
        return "Arguments must be a JSON object."

    for name in schema.get("required", []):
        if name not in arguments:
            return f"Missing required field: '{name}'"

    properties = schema.get("properties", {})
    if schema.get("additionalProperties") is False:
        extras = sorted(set(arguments) - set(properties))
        if extras:
            return f"Unexpected field(s): {', '.join(extras)}"

    for key, value in arguments.items():
        prop = properties.get(key)
        if prop is None:
            continue
        expected = prop.get("type")
        if expected in _TYPE_MAP:
            # bool is an int subclass; don't let True pass as an integer
            if expected in ("integer", "number") and isinstance(value, bool):
                return f"Field '{key}' expected type '{expected}', got bool."
            if not isinstance(value, _TYPE_MAP[expected]):
                return f"Field '{key}' expected type '{expected}', got {type(value).__name__}."
        if "enum" in prop and value not in prop["enum"]:
            return f"Field '{key}' must be one of {prop['enum']!r}."
        if expected == "string" and "pattern" in prop and not re.search(prop["pattern"], value):
            return f"Field '{key}' does not match pattern {prop['pattern']!r}."
    return None


class ToolRegistry:
    """Name → ToolDescriptor lookup used at dispatch time."""

    def __init__(self, descriptors: list[ToolDescriptor] | None = None) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}
        for descriptor in descriptors or []:
            self.register(descriptor)

    def register(self, descriptor: ToolDescriptor) -> None:
        """Add a tool.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if descriptor.name in self._tools:
            raise ValueError(f"Tool '{descriptor.name}' is already registered")
        self._tools[descriptor.name] = descriptor

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())

    def validate(self, name: str, arguments: Any) -> Optional[str]:
        """Check a call against its descriptor's schema; returns an error message or None."""
        descriptor = self._tools.get(name)
        if descriptor is None:
            return f"Tool '{name}' is not registered."
        return validate_arguments(arguments, descriptor.parameters)

    def to_openai_tools(self) -> list[Dict[str, Any]]:
        """Return OpenAI-format tool schemas for every registered tool."""
        return [descriptor.to_openai() for descriptor in self._tools.values()]
