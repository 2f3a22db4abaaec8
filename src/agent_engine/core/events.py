"""Event bus: non-blocking fan-out of engine state changes to subscribers.

Every subscriber owns a bounded queue. Publishing never waits: when a
subscriber's queue is full its oldest unread event is discarded to make
room. Delivery is best-effort, not exactly-once; subscribers that need
completeness detect gaps through the per-session ``seq`` numbers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

_log = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
_SEALED_TURN_MEMORY = 4096


class EventKind(str, Enum):
    TURN_STARTED = "turn-started"
    ASSISTANT_DELTA = "assistant-delta"
    TOOL_CALL_REQUESTED = "tool-call-requested"
    PERMISSION_REQUESTED = "permission-requested"
    TOOL_CALL_FINISHED = "tool-call-finished"
    TURN_FINISHED = "turn-finished"
    TURN_FAILED = "turn-failed"
    TURN_CANCELLED = "turn-cancelled"
    # Supplementary notifications
    TOOL_CALL_STARTED = "tool-call-started"
    PERMISSION_RESOLVED = "permission-resolved"
    PROVIDER_RETRY = "provider-retry"
    CONTEXT_COMPACTED = "context-compacted"
    PERSISTENCE_WARNING = "persistence-warning"

    @property
    def is_terminal(self) -> bool:
        return self in (EventKind.TURN_FINISHED, EventKind.TURN_FAILED, EventKind.TURN_CANCELLED)


@dataclass(frozen=True)
class Event:
    """An immutable notification.

    Attributes:
        kind: What happened
        session_id: Session the event belongs to
        turn_id: Turn the event belongs to (None for session-level events)
        entity_id: Id of the message, tool call or turn the event is about
        payload: Kind-specific data
        seq: Per-session sequence number assigned by the bus on publish
        timestamp: Emission time (epoch seconds)
    """

    kind: EventKind
    session_id: str
    turn_id: str | None = None
    entity_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    timestamp: float = field(default_factory=time.time)


_CLOSED = object()


class Subscription:
    """A subscriber's bounded view of the bus.

    Iterate with ``async for event in subscription``; iteration ends after close().
    """

    def __init__(self, bus: EventBus, maxsize: int, session_id: str | None = None) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.session_id = session_id
        self.dropped = 0
        self.closed = False

    def accepts(self, event: Event) -> bool:
        return self.session_id is None or event.session_id == self.session_id

    def _offer(self, item: Any) -> None:
        """Enqueue without blocking, discarding the oldest unread item when full."""
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1

    async def get(self) -> Event:
        """Wait for the next event.

        Raises:
            StopAsyncIteration: If the subscription has been closed and drained.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def get_nowait(self) -> Event | None:
        """Return the next queued event, or None if nothing is queued."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop receiving; queued events stay readable until the end marker."""
        if self.closed:
            return
        self.closed = True
        self._bus._unsubscribe(self)
        self._offer(_CLOSED)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        return await self.get()


class EventBus:
    """Fan-out of Events to any number of independent subscribers."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._seq: dict[str, int] = {}
        self._sealed: OrderedDict[str, None] = OrderedDict()

    def subscribe(self, session_id: str | None = None, maxsize: int | None = None) -> Subscription:
        """Register a subscriber.

        Args:
            session_id: Only deliver events for this session (None = all sessions)
            maxsize: Queue bound for this subscriber (defaults to the bus setting)
        """
        subscription = Subscription(self, maxsize or self._queue_size, session_id)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: Event) -> Event | None:
        """Stamp the event with its sequence number and deliver it to every subscriber.

        Returns:
            The stamped event, or None if it was discarded because its turn is sealed.
        """
        if event.turn_id is not None and event.turn_id in self._sealed:
            _log.debug("Discarding %s for sealed turn %s", event.kind.value, event.turn_id)
            return None

        seq = self._seq.get(event.session_id, 0) + 1
        self._seq[event.session_id] = seq
        stamped = replace(event, seq=seq)

        for subscription in list(self._subscribers):
            if not subscription.accepts(stamped):
                continue
            before = subscription.dropped
            subscription._offer(stamped)
            if subscription.dropped != before:
                _log.debug("Subscriber fell behind; dropped %d event(s)", subscription.dropped - before)

        if stamped.kind.is_terminal and stamped.turn_id is not None:
            self.seal_turn(stamped.turn_id)
        return stamped

    def emit(
        self,
        kind: EventKind,
        session_id: str,
        *,
        turn_id: str | None = None,
        entity_id: str | None = None,
        **payload: Any,
    ) -> Event | None:
        """Build and publish an Event in one call."""
        return self.publish(
            Event(kind=kind, session_id=session_id, turn_id=turn_id, entity_id=entity_id, payload=payload)
        )

    def seal_turn(self, turn_id: str) -> None:
        """Discard any later events for this turn."""
        self._sealed[turn_id] = None
        self._sealed.move_to_end(turn_id)
        while len(self._sealed) > _SEALED_TURN_MEMORY:
            self._sealed.popitem(last=False)

    def is_sealed(self, turn_id: str) -> bool:
        return turn_id in self._sealed

    def close(self) -> None:
        """Close every subscription."""
        for subscription in list(self._subscribers):
            subscription.close()
