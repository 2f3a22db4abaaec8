"""Event bus observers that are not part of the interactive frontend."""

from __future__ import annotations

import asyncio
import logging

from agent_engine.core.events import Event, EventBus, EventKind, Subscription

_log = logging.getLogger(__name__)

_QUIET_KINDS = {EventKind.ASSISTANT_DELTA, EventKind.TOOL_CALL_REQUESTED}


class EventLogger:
    """Writes every Event to a logger and reports sequence gaps.

    Streaming deltas are logged at DEBUG, everything else at INFO.
    """

    def __init__(self, bus: EventBus, logger: logging.Logger | None = None, session_id: str | None = None) -> None:
        self.logger = logger or _log
        self.subscription: Subscription = bus.subscribe(session_id=session_id)
        self._last_seq: dict[str, int] = {}
        self.gaps = 0
        self._task: asyncio.Task | None = None

    def handle(self, event: Event) -> None:
        last = self._last_seq.get(event.session_id)
        if last is not None and event.seq > last + 1:
            self.gaps += 1
            self.logger.warning(
                "Missed %d event(s) for session %s (seq %d -> %d)",
                event.seq - last - 1, event.session_id, last, event.seq,
            )
        self._last_seq[event.session_id] = event.seq

        level = logging.DEBUG if event.kind in _QUIET_KINDS else logging.INFO
        self.logger.log(
            level,
            "[%s #%d] %s %s %s",
            event.session_id[:8], event.seq, event.kind.value, event.entity_id or "-", event.payload,
        )

    def drain(self) -> int:
        """Handle every queued event without waiting. Returns how many were handled."""
        count = 0
        while (event := self.subscription.get_nowait()) is not None:
            self.handle(event)
            count += 1
        return count

    async def run(self) -> None:
        """Consume events until the subscription is closed."""
        async for event in self.subscription:
            self.handle(event)

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self.subscription.close()
        if self._task is not None:
            await self._task
            self._task = None
