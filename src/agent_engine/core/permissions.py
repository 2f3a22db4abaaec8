"""Permission gate: approval of tool calls that need human consent."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from agent_engine.core.errors import PermissionResolveError
from agent_engine.core.events import EventBus, EventKind

if TYPE_CHECKING:
    from agent_engine.core.models import ToolCall

_log = logging.getLogger(__name__)

DESTRUCTIVE_PATTERNS = [
    r"rm\s+-rf\s+",
    r"rm\s+-r\s+",
    r"rmdir\s+/s\s+/q",
    r"del\s+/s\s+/q",
    r"rd\s+/s\s+/q",
    r"format\s+",
    r"mkfs",
    r"shred",
    r">\s*/dev/",
    r"dd\s+if=",
    r"git\s+push\s+.*--force",
    r"git\s+reset\s+--hard",
]


def is_destructive(command: str) -> bool:
    """Check if a shell command is potentially destructive."""
    command_lower = command.lower()
    return any(re.search(pattern, command_lower) for pattern in DESTRUCTIVE_PATTERNS)


class PermissionDecision(str, Enum):
    PENDING = "pending"
    APPROVED_ONCE = "approved-once"
    APPROVED_ALWAYS = "approved-always"
    DENIED = "denied"

    @property
    def approved(self) -> bool:
        return self in (PermissionDecision.APPROVED_ONCE, PermissionDecision.APPROVED_ALWAYS)


@dataclass
class PermissionRequest:
    """A call waiting for a human decision."""

    tool_call_id: str
    tool_name: str
    target: str
    description: str
    session_id: str
    turn_id: Optional[str] = None
    destructive: bool = False
    decision: PermissionDecision = PermissionDecision.PENDING
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None
    future: Optional[asyncio.Future] = field(default=None, repr=False)


class PermissionGate:
    """Serializes and resolves approval requests for tool calls.

    Only the coroutine waiting on a specific call is suspended; other calls in
    the batch keep running. "Approved always" decisions are remembered per
    session for the exact (tool, normalized target) pair.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        bypass: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Initialize the gate.

        Args:
            bus: Event bus used to announce pending requests
            bypass: Approve everything without asking ("yolo" mode); no memory is kept
            timeout: Seconds to wait for a decision before denying (None = forever)
        """
        self.bus = bus
        self.bypass = bypass
        self.timeout = timeout
        self._pending: dict[str, PermissionRequest] = {}
        self._always: dict[str, set[tuple[str, str]]] = {}

    def is_always_approved(self, session_id: str, tool_name: str, target: str) -> bool:
        return (tool_name, target) in self._always.get(session_id, set())

    def remember(self, session_id: str, tool_name: str, target: str) -> None:
        """Record an approved-always decision for this session."""
        self._always.setdefault(session_id, set()).add((tool_name, target))

    def forget_session(self, session_id: str) -> None:
        """Clear session memory (call on session end)."""
        self._always.pop(session_id, None)

    def pending(self, session_id: str | None = None) -> list[PermissionRequest]:
        return [
            request for request in self._pending.values()
            if session_id is None or request.session_id == session_id
        ]

    async def request_approval(
        self,
        call: ToolCall,
        description: str,
        *,
        session_id: str,
        target: str = "*",
        turn_id: str | None = None,
        timeout: float | None = None,
    ) -> PermissionDecision:
        """Ask for consent to run a call and wait for the answer.

        Args:
            call: The tool call needing approval
            description: Human-readable description of the requested action
            session_id: Session whose approved-always memory applies
            target: Normalized target of the action (path, command, ...)
            turn_id: Turn the call belongs to, for event routing
            timeout: Overrides the gate's wait timeout for this request

        Returns:
            The decision. Timeouts and cancellation of the waiting turn count as DENIED.
        """
        if self.bypass:
            return PermissionDecision.APPROVED_ONCE

        if self.is_always_approved(session_id, call.name, target):
            _log.debug("Auto-approved %s on %s (approved always)", call.name, target)
            return PermissionDecision.APPROVED_ALWAYS

        if call.id in self._pending:
            raise PermissionResolveError(f"Tool call {call.id} already has a pending request")

        wait = timeout if timeout is not None else self.timeout
        loop = asyncio.get_running_loop()
        request = PermissionRequest(
            tool_call_id=call.id,
            tool_name=call.name,
            target=target,
            description=description,
            session_id=session_id,
            turn_id=turn_id,
            destructive=is_destructive(target),
            expires_at=time.time() + wait if wait is not None else None,
            future=loop.create_future(),
        )
        self._pending[call.id] = request

        if self.bus is not None:
            self.bus.emit(
                EventKind.PERMISSION_REQUESTED,
                session_id,
                turn_id=turn_id,
                entity_id=call.id,
                tool_name=call.name,
                target=target,
                description=description,
                destructive=request.destructive,
                expires_at=request.expires_at,
            )

        try:
            decision = await asyncio.wait_for(asyncio.shield(request.future), wait)
        except asyncio.TimeoutError:
            _log.info("Permission request for %s expired after %ss", call.id, wait)
            decision = PermissionDecision.DENIED
            request.decision = decision
        except asyncio.CancelledError:
            request.decision = PermissionDecision.DENIED
            raise
        finally:
            self._pending.pop(call.id, None)
        return decision

    def resolve(self, tool_call_id: str, decision: PermissionDecision | str) -> PermissionDecision:
        """Answer a pending request.

        Returns:
            The decision actually applied (approved-always is downgraded to
            approved-once for destructive commands).

        Raises:
            PermissionResolveError: If the id is unknown or already resolved.
            ValueError: If decision is PENDING.
        """
        decision = PermissionDecision(decision)
        if decision is PermissionDecision.PENDING:
            raise ValueError("Cannot resolve a request to 'pending'")

        request = self._pending.get(tool_call_id)
        if request is None or request.decision is not PermissionDecision.PENDING or request.future.done():
            raise PermissionResolveError(f"No pending permission request for tool call {tool_call_id}")

        if decision is PermissionDecision.APPROVED_ALWAYS:
            if request.destructive:
                _log.warning("Not remembering approval for destructive command: %s", request.target)
                decision = PermissionDecision.APPROVED_ONCE
            else:
                self.remember(request.session_id, request.tool_name, request.target)

        request.decision = decision
        request.future.set_result(decision)
        self._pending.pop(tool_call_id, None)

        if self.bus is not None:
            self.bus.emit(
                EventKind.PERMISSION_RESOLVED,
                request.session_id,
                turn_id=request.turn_id,
                entity_id=tool_call_id,
                decision=decision.value,
            )
        return decision

    def deny_pending(self, *, turn_id: str | None = None, session_id: str | None = None) -> int:
        """Auto-deny waiting requests (used when a turn is cancelled).

        Returns:
            Number of requests denied.
        """
        denied = 0
        for request in list(self._pending.values()):
            if turn_id is not None and request.turn_id != turn_id:
                continue
            if session_id is not None and request.session_id != session_id:
                continue
            if request.future is not None and not request.future.done():
                request.decision = PermissionDecision.DENIED
                request.future.set_result(PermissionDecision.DENIED)
                denied += 1
            self._pending.pop(request.tool_call_id, None)
        return denied
