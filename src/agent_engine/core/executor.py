"""Tool execution engine: dispatches one batch of tool calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Sequence

from agent_engine.core.errors import ErrorCode
from agent_engine.core.events import EventBus, EventKind
from agent_engine.core.interrupt import CancelSignal
from agent_engine.core.models import ToolCall, ToolCallStatus
from agent_engine.core.permissions import PermissionGate
from agent_engine.core.registry import ToolDescriptor, ToolRegistry, validate_arguments
from agent_engine.core.tool_result import ToolResult

_log = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Where a batch runs: owning session/turn and the turn's cancel signal."""

    session_id: str
    turn_id: str | None = None
    cancel: CancelSignal = field(default_factory=CancelSignal)


class ToolExecutionEngine:
    """Runs a batch of tool calls under concurrency-class rules.

    Shared calls start immediately and run concurrently. Exclusive calls run
    one at a time in the order requested, alongside any shared calls. Every
    call ends in a terminal state; one call failing never affects another.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        gate: PermissionGate,
        *,
        bus: EventBus | None = None,
        tool_timeout: float | None = 120.0,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Tool lookup used to resolve calls by name
            gate: Permission gate for tools that require approval
            bus: Event bus for started/finished notifications
            tool_timeout: Default per-call timeout in seconds (None = no limit)
        """
        self.registry = registry
        self.gate = gate
        self.bus = bus
        self.tool_timeout = tool_timeout

    async def execute_batch(self, calls: Sequence[ToolCall], *, context: ExecutionContext) -> list[ToolCall]:
        """Execute every call in the batch and wait until all are terminal.

        Args:
            calls: Tool calls requested in one provider round, in request order
            context: Session, turn and cancel signal for this batch

        Returns:
            The same calls, in submission order, each in a terminal state.
        """
        calls = list(calls)
        if not calls:
            return calls

        tasks = []
        previous_exclusive: asyncio.Event | None = None
        for call in calls:
            descriptor = self.registry.get(call.name)
            if descriptor is not None and descriptor.exclusive:
                done = asyncio.Event()
                tasks.append(asyncio.create_task(
                    self._run_call(call, descriptor, context, after=previous_exclusive, done=done)
                ))
                previous_exclusive = done
            else:
                tasks.append(asyncio.create_task(self._run_call(call, descriptor, context)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        _log.debug(
            "Batch finished: %s",
            ", ".join(f"{c.name}={c.status.value}" for c in calls),
        )
        return calls

    async def _run_call(
        self,
        call: ToolCall,
        descriptor: ToolDescriptor | None,
        context: ExecutionContext,
        *,
        after: asyncio.Event | None = None,
        done: asyncio.Event | None = None,
    ) -> None:
        if call.is_terminal:
            if done is not None:
                done.set()
            return
        try:
            await self._process(call, descriptor, context, after)
        except asyncio.CancelledError:
            if not call.is_terminal:
                call.cancel("Cancelled before completion")
            raise
        except Exception as exc:
            _log.exception("Unexpected error while executing %s", call.name)
            if not call.is_terminal:
                call.fail(ErrorCode.TOOL_EXECUTION_ERROR, f"{type(exc).__name__}: {exc}")
        finally:
            if done is not None:
                done.set()
            self._emit_finished(call, context)

    async def _process(
        self,
        call: ToolCall,
        descriptor: ToolDescriptor | None,
        context: ExecutionContext,
        after: asyncio.Event | None,
    ) -> None:
        cancel = context.cancel

        if descriptor is None:
            call.fail(ErrorCode.TOOL_NOT_FOUND, f"Unknown tool: {call.name}")
            return

        call.parse_arguments()
        if call.arguments is None:
            call.fail(ErrorCode.VALIDATION_ERROR, f"Invalid JSON in tool arguments: {call.raw_arguments}")
            return
        error = validate_arguments(call.arguments, descriptor.parameters)
        if error:
            call.fail(ErrorCode.VALIDATION_ERROR, error)
            return

        if cancel.is_cancelled():
            call.cancel()
            return

        if descriptor.requires_approval:
            call.transition_to(ToolCallStatus.AWAITING_APPROVAL)
            finished, decision = await self._until_cancelled(
                self.gate.request_approval(
                    call,
                    descriptor.describe(call.arguments),
                    session_id=context.session_id,
                    target=descriptor.approval_target(call.arguments),
                    turn_id=context.turn_id,
                ),
                cancel,
            )
            if not finished or cancel.is_cancelled():
                call.cancel("Cancelled while awaiting approval")
                return
            if not decision.approved:
                call.fail(ErrorCode.PERMISSION_DENIED, "User denied permission to execute this tool")
                return

        if after is not None:
            finished, _ = await self._until_cancelled(after.wait(), cancel)
            if not finished:
                call.cancel()
                return

        if cancel.is_cancelled():
            call.cancel()
            return

        call.transition_to(ToolCallStatus.RUNNING)
        if self.bus is not None:
            self.bus.emit(
                EventKind.TOOL_CALL_STARTED,
                context.session_id,
                turn_id=context.turn_id,
                entity_id=call.id,
                tool_name=call.name,
                arguments=call.arguments,
            )
        await self._invoke(call, descriptor, cancel)

    async def _invoke(self, call: ToolCall, descriptor: ToolDescriptor, cancel: CancelSignal) -> None:
        """Run the executor under the call's timeout.

        Shared tools are told to stop when the turn is cancelled; exclusive
        tools already running are left to finish. An exclusive tool that times
        out is asked to stop and keeps its slot until it has.
        """
        timeout = descriptor.timeout if descriptor.timeout is not None else self.tool_timeout
        call_cancel = asyncio.Event()
        task = asyncio.create_task(descriptor.executor.invoke(call.name, dict(call.arguments), call_cancel))
        watched: set[asyncio.Future] = {task}
        waiter = None
        if not descriptor.exclusive:
            waiter = asyncio.create_task(cancel.wait())
            watched.add(waiter)

        try:
            done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call_cancel.set()
            task.cancel()
            raise
        finally:
            if waiter is not None:
                waiter.cancel()

        if task not in done:
            call_cancel.set()
            if descriptor.exclusive:
                # Keep the exclusive slot until the executor has actually stopped
                _log.warning("Tool %s timed out after %ss, waiting for it to stop", call.name, timeout)
                call.fail(ErrorCode.TOOL_TIMEOUT, f"Tool '{call.name}' timed out after {timeout}s")
                await _settle(task)
                return
            task.cancel()
            await _reap(task)
            if waiter is not None and waiter in done:
                call.cancel("Cancelled while running")
            else:
                _log.warning("Tool %s timed out after %ss", call.name, timeout)
                call.fail(ErrorCode.TOOL_TIMEOUT, f"Tool '{call.name}' timed out after {timeout}s")
            return

        try:
            result = task.result()
        except asyncio.CancelledError:
            call.cancel("Cancelled while running")
            return
        except Exception as exc:
            _log.debug("Tool %s raised: %s", call.name, exc)
            call.fail(ErrorCode.TOOL_EXECUTION_ERROR, f"{type(exc).__name__}: {exc}")
            return

        if not isinstance(result, ToolResult):
            result = ToolResult.success(data={"output": str(result)})
        if result.ok:
            call.succeed(result)
        elif result.error_code == str(ErrorCode.CANCELLED):
            call.cancel(result.message or "Cancelled while running")
        else:
            code = result.error_code or ErrorCode.TOOL_EXECUTION_ERROR
            call.fail(code, result.message or "Tool reported failure", result)

    @staticmethod
    async def _until_cancelled(awaitable: Awaitable[Any], cancel: CancelSignal) -> tuple[bool, Any]:
        """Await something unless the turn is cancelled first.

        Returns:
            (True, value) when the awaitable finished, (False, None) when cancelled.
        """
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return True, task.result()
        task.cancel()
        await _reap(task)
        return False, None

    def _emit_finished(self, call: ToolCall, context: ExecutionContext) -> None:
        if self.bus is None:
            return
        self.bus.emit(
            EventKind.TOOL_CALL_FINISHED,
            context.session_id,
            turn_id=context.turn_id,
            entity_id=call.id,
            tool_name=call.name,
            status=call.status.value,
            error_code=call.error_code,
            error=call.error,
            result=call.result.to_dict() if call.result is not None else None,
        )


async def _settle(task: asyncio.Future) -> None:
    """Wait for a task to finish on its own, discarding its outcome."""
    try:
        await asyncio.shield(task)
    except Exception as exc:
        _log.debug("Task raised after timing out: %s", exc)


async def _reap(task: asyncio.Future) -> None:
    """Wait for a cancelled task to unwind."""
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        _log.debug("Task raised while being cancelled: %s", exc)
