"""Conversation data model: sessions, messages, tool calls and turn outcomes."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from agent_engine.core.errors import ErrorCode, InvalidTransitionError
from agent_engine.core.tool_result import ToolResult


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str = "") -> str:
    """Generate a unique identifier, optionally prefixed (e.g. "turn_")."""
    return f"{prefix}{uuid.uuid4().hex}"


class Role(str, Enum):
    """Message role in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting-approval"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ToolCallStatus.SUCCEEDED, ToolCallStatus.FAILED, ToolCallStatus.CANCELLED}
)

# Rank used to enforce forward-only transitions; all terminal states share the top rank.
_STATUS_RANK = {
    ToolCallStatus.PENDING: 0,
    ToolCallStatus.AWAITING_APPROVAL: 1,
    ToolCallStatus.RUNNING: 2,
    ToolCallStatus.SUCCEEDED: 3,
    ToolCallStatus.FAILED: 3,
    ToolCallStatus.CANCELLED: 3,
}


@dataclass
class Usage:
    """Provider-reported token usage."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Usage:
        data = data or {}
        return cls(
            prompt_tokens=int(data.get("prompt_tokens") or 0),
            completion_tokens=int(data.get("completion_tokens") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
        )


@dataclass
class ToolCall:
    """A single tool invocation requested by the model.

    Attributes:
        id: Provider-assigned id, unique within the owning message
        name: Registered tool name
        arguments: Parsed argument payload (None when the streamed JSON was malformed)
        raw_arguments: Argument JSON exactly as streamed
        status: Position in the pending → running → terminal state machine
        result: Tool output envelope once the call has finished
        error_code: Failure reason when status is failed or cancelled
        error: Human-readable failure description
    """

    id: str
    name: str
    arguments: dict[str, Any] | None = None
    raw_arguments: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: ToolResult | None = None
    error_code: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, status: ToolCallStatus) -> None:
        """Move to a later state.

        Raises:
            InvalidTransitionError: If the call is terminal or the new state is not ahead.
        """
        if self.status.is_terminal or _STATUS_RANK[status] <= _STATUS_RANK[self.status]:
            raise InvalidTransitionError(
                f"Tool call {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def succeed(self, result: ToolResult) -> None:
        self.transition_to(ToolCallStatus.SUCCEEDED)
        self.result = result

    def fail(self, code: ErrorCode | str, message: str, result: ToolResult | None = None) -> None:
        self.transition_to(ToolCallStatus.FAILED)
        self.error_code = str(code)
        self.error = message
        self.result = result or ToolResult.failure(str(code), message)

    def cancel(self, message: str = "Cancelled by user") -> None:
        self.transition_to(ToolCallStatus.CANCELLED)
        self.error_code = str(ErrorCode.CANCELLED)
        self.error = message
        self.result = ToolResult.failure(str(ErrorCode.CANCELLED), message)

    def parse_arguments(self) -> None:
        """Decode raw_arguments into arguments; leaves arguments None on bad JSON."""
        if self.arguments is not None:
            return
        text = self.raw_arguments.strip()
        if not text:
            self.arguments = {}
            return
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return
        if isinstance(parsed, dict):
            self.arguments = parsed

    def result_content(self) -> str:
        """Text returned to the model for this call."""
        if self.result is not None:
            return self.result.to_content()
        return json.dumps({"error": self.error or "no result", "error_code": self.error_code})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "raw_arguments": self.raw_arguments,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result is not None else None,
            "error_code": self.error_code,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        result = data.get("result")
        return cls(
            id=data["id"],
            name=data["name"],
            arguments=data.get("arguments"),
            raw_arguments=data.get("raw_arguments", ""),
            status=ToolCallStatus(data.get("status", ToolCallStatus.PENDING.value)),
            result=ToolResult.from_dict(result) if result else None,
            error_code=data.get("error_code"),
            error=data.get("error"),
        )


@dataclass
class Message:
    """One entry in the conversation.

    Assistant messages list the tool calls they requested; the following
    tool-result message references the same ToolCall objects, now terminal.
    """

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    created_at: str = field(default_factory=_now)
    id: str = field(default_factory=lambda: new_id("msg_"))
    synthetic: bool = False

    @classmethod
    def user(cls, content: str, *, synthetic: bool = False) -> Message:
        return cls(role=Role.USER, content=content, synthetic=synthetic)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role=Role.ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool_results(cls, tool_calls: list[ToolCall]) -> Message:
        return cls(role=Role.TOOL, tool_calls=list(tool_calls))

    def to_provider_messages(self) -> list[dict[str, Any]]:
        """Convert to OpenAI-style chat message dicts."""
        if self.role is Role.TOOL:
            return [
                {"role": "tool", "tool_call_id": call.id, "content": call.result_content()}
                for call in self.tool_calls
            ]
        if self.role is Role.ASSISTANT and self.tool_calls:
            return [{
                "role": "assistant",
                "content": self.content or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": call.raw_arguments
                            or json.dumps(call.arguments or {}),
                        },
                    }
                    for call in self.tool_calls
                ],
            }]
        return [{"role": self.role.value, "content": self.content}]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "usage": self.usage.to_dict() if self.usage is not None else None,
            "created_at": self.created_at,
            "synthetic": self.synthetic,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        usage = data.get("usage")
        return cls(
            id=data.get("id") or new_id("msg_"),
            role=Role(data["role"]),
            content=data.get("content") or "",
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("tool_calls") or []],
            usage=Usage.from_dict(usage) if usage else None,
            created_at=data.get("created_at") or _now(),
            synthetic=bool(data.get("synthetic", False)),
        )


@dataclass
class Session:
    """A conversation and its summary metadata."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: str = "Untitled Session"
    model: str = ""
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    token_estimate: int = 0
    compaction_watermark: int = 0
    usage: Usage = field(default_factory=Usage)

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = _now()
        if message.usage is not None:
            self.usage.add(message.usage)

    def tool_calls(self) -> list[ToolCall]:
        """Every distinct ToolCall reachable from the session's messages."""
        seen: dict[str, ToolCall] = {}
        for message in self.messages:
            for call in message.tool_calls:
                seen.setdefault(call.id, call)
        return list(seen.values())

    def relink_tool_calls(self) -> None:
        """Make assistant messages share ToolCall objects with their tool-result message."""
        latest: dict[str, ToolCall] = {}
        for message in self.messages:
            if message.role is Role.TOOL:
                for call in message.tool_calls:
                    latest[call.id] = call
        for message in self.messages:
            if message.role is Role.ASSISTANT:
                message.tool_calls = [latest.get(call.id, call) for call in message.tool_calls]

    def metadata(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "token_estimate": self.token_estimate,
            "compaction_watermark": self.compaction_watermark,
            "usage": self.usage.to_dict(),
            "message_count": len(self.messages),
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.metadata()
        data["messages"] = [m.to_dict() for m in self.messages]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        session = cls(
            id=data["id"],
            title=data.get("title", "Untitled Session"),
            model=data.get("model", ""),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=data.get("created_at") or _now(),
            updated_at=data.get("updated_at") or _now(),
            token_estimate=int(data.get("token_estimate") or 0),
            compaction_watermark=int(data.get("compaction_watermark") or 0),
            usage=Usage.from_dict(data.get("usage")),
        )
        session.relink_tool_calls()
        return session


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    """Terminal result of RunTurn, mirrored by the turn's final Event."""

    status: TurnStatus
    turn_id: str
    rounds: int = 0
    final_text: str = ""
    reason: str | None = None
    message: str | None = None

    @property
    def completed(self) -> bool:
        return self.status is TurnStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status is TurnStatus.CANCELLED

    @property
    def failed(self) -> bool:
        return self.status is TurnStatus.FAILED

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "rounds": self.rounds,
            "final_text": self.final_text,
            "reason": self.reason,
            "message": self.message,
        }
