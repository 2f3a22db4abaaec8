"""Turn coordinator - the request/stream/dispatch/repeat loop for one turn."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator

from agent_engine.core.compactor import ContextCompactor
from agent_engine.core.errors import (
    ErrorCode,
    PersistenceError,
    ProviderError,
    ProviderTransientError,
    RoundLimitExceeded,
    TurnInProgressError,
)
from agent_engine.core.events import EventBus, EventKind
from agent_engine.core.executor import ExecutionContext, ToolExecutionEngine
from agent_engine.core.interrupt import CancelSignal
from agent_engine.core.llm import (
    ErrorDelta,
    Provider,
    StreamDelta,
    TextDelta,
    ToolCallDelta,
    UsageDelta,
    classify_provider_error,
)
from agent_engine.core.models import Message, Role, Session, ToolCall, TurnOutcome, TurnStatus, Usage, new_id
from agent_engine.core.permissions import PermissionGate
from agent_engine.core.registry import ToolRegistry

if TYPE_CHECKING:
    from agent_engine.config import EngineConfig
    from agent_engine.state.store import SessionStore

_log = logging.getLogger(__name__)

_TERMINAL_EVENTS = {
    TurnStatus.COMPLETED: EventKind.TURN_FINISHED,
    TurnStatus.CANCELLED: EventKind.TURN_CANCELLED,
    TurnStatus.FAILED: EventKind.TURN_FAILED,
}


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient provider failures.

    Attributes:
        max_attempts: Total requests per round, including the first
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any single delay
        multiplier: Growth factor between consecutive delays
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def delay(self, failures: int) -> float:
        """Seconds to wait after the given number of consecutive failures (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** max(0, failures - 1))

    @classmethod
    def from_config(cls, config: EngineConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )


class _MessageAssembler:
    """Builds the in-progress assistant message from stream deltas."""

    def __init__(self) -> None:
        self.message = Message.assistant()
        self._text: list[str] = []
        self._by_index: dict[int, ToolCall] = {}
        self._ids: set[str] = set()

    def add_text(self, text: str) -> None:
        self._text.append(text)
        self.message.content = "".join(self._text)

    def add_tool_delta(self, delta: ToolCallDelta) -> ToolCall:
        call = self._by_index.get(delta.index)
        # Some providers reuse index 0 for every call and tell them apart by id
        if call is None or (delta.id and delta.id != call.id and delta.name):
            call_id = delta.id if delta.id and delta.id not in self._ids else new_id("call_")
            call = ToolCall(id=call_id, name=delta.name or "")
            self._ids.add(call_id)
            self._by_index[delta.index] = call
            self.message.tool_calls.append(call)
        elif delta.name and not call.name:
            call.name = delta.name
        call.raw_arguments += delta.arguments or ""
        return call

    def set_usage(self, delta: UsageDelta) -> None:
        self.message.usage = Usage(
            prompt_tokens=delta.prompt_tokens,
            completion_tokens=delta.completion_tokens,
            total_tokens=delta.total_tokens,
        )

    def build(self) -> Message:
        for call in self.message.tool_calls:
            call.parse_arguments()
        return self.message


@dataclass
class _RoundResult:
    message: Message
    cancelled: bool = False
    attempts: int = 1


@dataclass
class _ActiveTurn:
    turn_id: str
    cancel: CancelSignal
    calls: list[ToolCall] = field(default_factory=list)


class TurnCoordinator:
    """Drives one conversation turn end to end.

    Usage:
        coordinator = TurnCoordinator(provider, registry, config, bus=bus)
        outcome = await coordinator.run_turn(session, "fix the failing test")
    """

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        config: EngineConfig,
        *,
        bus: EventBus | None = None,
        gate: PermissionGate | None = None,
        compactor: ContextCompactor | None = None,
        store: SessionStore | None = None,
        retry: RetryPolicy | None = None,
        system_prompt: str | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            provider: Streaming model capability
            registry: Tools the model may call
            config: Engine settings (round limit, timeouts, budget, ...)
            bus: Event bus shared with the frontend (created if omitted)
            gate: Permission gate (created from config if omitted)
            compactor: Bounds the history sent per request
            store: Persistence capability; None keeps sessions in memory only
            retry: Backoff policy for transient provider failures
            system_prompt: Prepended to every provider request
        """
        self.provider = provider
        self.registry = registry
        self.config = config
        self.bus = bus or EventBus(queue_size=config.event_queue_size)
        self.gate = gate or PermissionGate(
            self.bus,
            bypass=config.bypass_permissions,
            timeout=config.permission_timeout,
        )
        self.compactor = compactor or ContextCompactor()
        self.store = store
        self.retry = retry or RetryPolicy.from_config(config)
        self.system_prompt = system_prompt
        self.engine = ToolExecutionEngine(registry, self.gate, bus=self.bus, tool_timeout=config.tool_timeout)
        self._active: dict[str, _ActiveTurn] = {}

    @property
    def budget(self) -> int:
        return self.config.context_budget

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def cancel(self, session_id: str) -> bool:
        """Raise the cancel signal of the session's active turn.

        Returns:
            False if the session has no active turn.
        """
        active = self._active.get(session_id)
        if active is None:
            return False
        active.cancel.cancel()
        return True

    async def run_turn(self, session: Session, user_input: str, *, cancel: CancelSignal | None = None) -> TurnOutcome:
        """Run one turn: request, stream, dispatch tools, repeat until a final answer.

        Args:
            session: Conversation to extend; owned by this call until it returns
            user_input: The user's message
            cancel: Signal the caller raises to stop the turn

        Returns:
            The turn's outcome, also published as its terminal Event.

        Raises:
            TurnInProgressError: If the session already has an active turn.
        """
        if session.id in self._active:
            raise TurnInProgressError(f"Session {session.id} already has an active turn")

        cancel = cancel or CancelSignal()
        active = _ActiveTurn(turn_id=new_id("turn_"), cancel=cancel)
        self._active[session.id] = active

        def _deny_pending() -> None:
            self.gate.deny_pending(turn_id=active.turn_id)

        cancel.add_callback(_deny_pending)
        try:
            return await self._run(session, user_input, active)
        finally:
            cancel.remove_callback(_deny_pending)
            self._active.pop(session.id, None)

    async def _run(self, session: Session, user_input: str, active: _ActiveTurn) -> TurnOutcome:
        turn_id = active.turn_id
        cancel = active.cancel
        rounds = 0
        self._emit(EventKind.TURN_STARTED, session, turn_id, entity_id=turn_id, input=user_input)
        _log.debug("Turn %s started on session %s", turn_id, session.id)

        try:
            await self._append(session, Message.user(user_input), turn_id)

            while True:
                if cancel.is_cancelled():
                    return await self._finish(session, TurnOutcome(TurnStatus.CANCELLED, turn_id, rounds=rounds))
                if rounds >= self.config.max_rounds:
                    raise RoundLimitExceeded(
                        f"Stopped: exceeded {self.config.max_rounds} rounds without a final answer."
                    )
                rounds += 1

                result = await self._request(session, turn_id, cancel)
                message = result.message

                if result.cancelled:
                    await self._close_cancelled_message(session, message, turn_id)
                    return await self._finish(session, TurnOutcome(TurnStatus.CANCELLED, turn_id, rounds=rounds))

                await self._append(session, message, turn_id)
                if not message.tool_calls:
                    return await self._finish(
                        session,
                        TurnOutcome(TurnStatus.COMPLETED, turn_id, rounds=rounds, final_text=message.content),
                    )

                active.calls = message.tool_calls
                await self.engine.execute_batch(
                    message.tool_calls,
                    context=ExecutionContext(session_id=session.id, turn_id=turn_id, cancel=cancel),
                )
                await self._append(session, Message.tool_results(message.tool_calls), turn_id)
                active.calls = []

        except RoundLimitExceeded as exc:
            _log.warning("Turn %s hit the round limit (%d)", turn_id, self.config.max_rounds)
            return await self._finish(session, TurnOutcome(
                TurnStatus.FAILED, turn_id, rounds=rounds, reason=str(exc.code), message=exc.message,
            ))
        except ProviderError as exc:
            _log.warning("Turn %s failed: %s", turn_id, exc.message)
            return await self._finish(session, TurnOutcome(
                TurnStatus.FAILED, turn_id, rounds=rounds, reason=str(exc.code), message=exc.message,
            ))
        except PersistenceError as exc:
            _log.error("Turn %s failed: %s", turn_id, exc.message)
            self._close_unanswered_calls(session)
            return await self._finish(session, TurnOutcome(
                TurnStatus.FAILED, turn_id, rounds=rounds, reason=str(exc.code), message=exc.message,
            ), persist=False)
        except asyncio.CancelledError:
            # The task running the turn was cancelled from outside
            for call in active.calls:
                if not call.is_terminal:
                    call.cancel()
            self._emit_terminal(session, TurnOutcome(TurnStatus.CANCELLED, turn_id, rounds=rounds))
            raise

    async def _request(self, session: Session, turn_id: str, cancel: CancelSignal) -> _RoundResult:
        """One provider round: build the view, stream, retry transient failures."""
        view = await self._build_view(session, turn_id)
        tools = self.registry.to_openai_tools()
        failures = 0
        while True:
            try:
                result = await self._consume_stream(view, tools, session, turn_id, cancel)
                result.attempts = failures + 1
                return result
            except ProviderTransientError as exc:
                failures += 1
                if failures >= self.retry.max_attempts:
                    _log.warning("Giving up after %d attempt(s): %s", failures, exc.message)
                    raise
                delay = self.retry.delay(failures)
                _log.info("Transient provider error (attempt %d/%d), retrying in %.1fs: %s",
                          failures, self.retry.max_attempts, delay, exc.message)
                self._emit(
                    EventKind.PROVIDER_RETRY,
                    session,
                    turn_id,
                    entity_id=turn_id,
                    attempt=failures,
                    max_attempts=self.retry.max_attempts,
                    delay=delay,
                    error=exc.message,
                )
                if await self._sleep_or_cancel(delay, cancel):
                    return _RoundResult(Message.assistant(), cancelled=True, attempts=failures)

    async def _build_view(self, session: Session, turn_id: str) -> list[Message]:
        result = await self.compactor.compact(session, self.budget)
        session.token_estimate = result.estimated_tokens
        session.compaction_watermark = result.dropped
        if result.compacted:
            self._emit(
                EventKind.CONTEXT_COMPACTED,
                session,
                turn_id,
                entity_id=turn_id,
                dropped=result.dropped,
                estimated_tokens=result.estimated_tokens,
                budget=self.budget,
            )
        return result.messages

    async def _consume_stream(
        self,
        view: list[Message],
        tools: list[dict[str, Any]],
        session: Session,
        turn_id: str,
        cancel: CancelSignal,
    ) -> _RoundResult:
        """Read one streamed response; stop early when the turn is cancelled."""
        assembler = _MessageAssembler()
        stream = self.provider.send(view, tools, system_prompt=self.system_prompt)
        reader = asyncio.create_task(self._pump(stream, assembler, session, turn_id))
        waiter = asyncio.create_task(cancel.wait())
        try:
            await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            reader.cancel()
            raise
        finally:
            waiter.cancel()

        if cancel.is_cancelled():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
            except ProviderError as exc:
                _log.debug("Provider error while cancelling stream: %s", exc.message)
            _log.debug("Stream for turn %s stopped by cancellation", turn_id)
            return _RoundResult(assembler.build(), cancelled=True)

        reader.result()
        return _RoundResult(assembler.build())

    async def _pump(
        self,
        stream: AsyncIterator[StreamDelta],
        assembler: _MessageAssembler,
        session: Session,
        turn_id: str,
    ) -> None:
        message_id = assembler.message.id
        deltas = self._iterate(stream)
        try:
            async for delta in deltas:
                if isinstance(delta, TextDelta):
                    if not delta.text:
                        continue
                    assembler.add_text(delta.text)
                    self._emit(EventKind.ASSISTANT_DELTA, session, turn_id, entity_id=message_id, text=delta.text)
                elif isinstance(delta, ToolCallDelta):
                    call = assembler.add_tool_delta(delta)
                    self._emit(
                        EventKind.TOOL_CALL_REQUESTED,
                        session,
                        turn_id,
                        entity_id=call.id,
                        message_id=message_id,
                        index=delta.index,
                        tool_name=call.name,
                        arguments_delta=delta.arguments,
                    )
                elif isinstance(delta, UsageDelta):
                    assembler.set_usage(delta)
                elif isinstance(delta, ErrorDelta):
                    raise delta.error
        except ProviderError:
            raise
        except Exception as exc:
            raise classify_provider_error(exc, getattr(self.provider, "api_base", None)) from exc
        finally:
            await deltas.aclose()
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _iterate(self, stream: AsyncIterator[StreamDelta]) -> AsyncIterator[StreamDelta]:
        """Yield deltas, treating a silent stream as a transient timeout."""
        timeout = self.config.request_timeout
        iterator = stream.__aiter__()
        while True:
            try:
                delta = await asyncio.wait_for(iterator.__anext__(), timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as exc:
                raise ProviderTransientError(f"Provider sent no data for {timeout}s") from exc
            yield delta

    @staticmethod
    async def _sleep_or_cancel(delay: float, cancel: CancelSignal) -> bool:
        """Sleep for the backoff delay. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _close_cancelled_message(self, session: Session, message: Message, turn_id: str) -> None:
        """Keep whatever the model streamed before cancellation, with no dangling tool calls."""
        if not message.content and not message.tool_calls:
            return
        for call in message.tool_calls:
            if not call.is_terminal:
                call.cancel("Turn cancelled before the tool ran")
        await self._append(session, message, turn_id)
        if message.tool_calls:
            await self._append(session, Message.tool_results(message.tool_calls), turn_id)

    @staticmethod
    def _close_unanswered_calls(session: Session) -> None:
        """Answer tool calls left without results, in memory only."""
        answered = {c.id for m in session.messages if m.role is Role.TOOL for c in m.tool_calls}
        unanswered = [
            call
            for m in session.messages if m.role is Role.ASSISTANT
            for call in m.tool_calls if call.id not in answered
        ]
        if not unanswered:
            return
        for call in unanswered:
            if not call.is_terminal:
                call.cancel("Turn failed before the tool ran")
        session.append(Message.tool_results(unanswered))

    async def _append(self, session: Session, message: Message, turn_id: str) -> None:
        session.append(message)
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.append_message, session, message)
        except Exception as exc:
            self._persistence_failed(session, turn_id, message.id, exc)

    async def _save(self, session: Session, turn_id: str) -> None:
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.save_session, session)
        except Exception as exc:
            self._persistence_failed(session, turn_id, session.id, exc)

    def _persistence_failed(self, session: Session, turn_id: str, entity_id: str, exc: Exception) -> None:
        if self.config.persistence_failures_fatal:
            raise PersistenceError(f"Failed to persist session {session.id}: {exc}") from exc
        _log.warning("Failed to persist session %s: %s", session.id, exc)
        self._emit(
            EventKind.PERSISTENCE_WARNING,
            session,
            turn_id,
            entity_id=entity_id,
            error=f"{type(exc).__name__}: {exc}",
            code=str(ErrorCode.PERSISTENCE_ERROR),
        )

    async def _finish(self, session: Session, outcome: TurnOutcome, *, persist: bool = True) -> TurnOutcome:
        if persist:
            try:
                await self._save(session, outcome.turn_id)
            except PersistenceError as exc:
                if outcome.status is TurnStatus.COMPLETED:
                    outcome = TurnOutcome(
                        TurnStatus.FAILED,
                        outcome.turn_id,
                        rounds=outcome.rounds,
                        final_text=outcome.final_text,
                        reason=str(ErrorCode.PERSISTENCE_ERROR),
                        message=exc.message,
                    )
        self._emit_terminal(session, outcome)
        return outcome

    def _emit_terminal(self, session: Session, outcome: TurnOutcome) -> None:
        _log.info(
            "Turn %s %s after %d round(s)%s",
            outcome.turn_id,
            outcome.status.value,
            outcome.rounds,
            f": {outcome.reason}" if outcome.reason else "",
        )
        self._emit(
            _TERMINAL_EVENTS[outcome.status],
            session,
            outcome.turn_id,
            entity_id=outcome.turn_id,
            **outcome.to_payload(),
        )

    def _emit(self, kind: EventKind, session: Session, turn_id: str, *, entity_id: str | None = None, **payload: Any) -> None:
        self.bus.emit(kind, session.id, turn_id=turn_id, entity_id=entity_id, **payload)
