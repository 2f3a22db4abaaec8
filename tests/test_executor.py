"""Tests for the tool execution engine."""

import asyncio
import time

import pytest

from agent_engine.core.events import EventKind
from agent_engine.core.executor import ExecutionContext, ToolExecutionEngine
from agent_engine.core.interrupt import CancelSignal
from agent_engine.core.models import ToolCall, ToolCallStatus
from agent_engine.core.permissions import PermissionDecision, PermissionGate
from agent_engine.core.tool_result import ToolResult

from conftest import FakeExecutor, make_call, make_descriptor, make_registry, wait_until


def _engine(*descriptors, bus=None, gate=None, tool_timeout=5.0):
    return ToolExecutionEngine(
        make_registry(*descriptors),
        gate or PermissionGate(bus),
        bus=bus,
        tool_timeout=tool_timeout,
    )


def _context(cancel=None):
    return ExecutionContext(session_id="s1", turn_id="t1", cancel=cancel or CancelSignal())


class ThreadedExecutor:
    """Does its work in a worker thread, which task cancellation cannot interrupt."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.spans: dict[str, tuple[float, float]] = {}

    def _work(self, label: str) -> None:
        start = time.monotonic()
        time.sleep(self.seconds)
        self.spans[label] = (start, time.monotonic())

    async def invoke(self, name, arguments, cancel):
        await asyncio.to_thread(self._work, arguments["label"])
        return ToolResult.success(data={"output": "written"})


class TestBatchBasics:
    async def test_results_in_submission_order(self):
        executor = FakeExecutor(delay=0.01)
        engine = _engine(make_descriptor("read", executor))
        calls = [make_call("read", {"label": str(i)}, call_id=f"c{i}") for i in range(3)]
        done = await engine.execute_batch(calls, context=_context())
        assert [c.id for c in done] == ["c0", "c1", "c2"]
        assert all(c.status is ToolCallStatus.SUCCEEDED for c in done)
        assert done[1].result.output == "1 done"

    async def test_empty_batch(self):
        assert await _engine().execute_batch([], context=_context()) == []

    async def test_shared_calls_overlap(self):
        executor = FakeExecutor(delay=0.05)
        engine = _engine(make_descriptor("read", executor))
        calls = [make_call("read", {"label": str(i)}, call_id=f"c{i}") for i in range(3)]
        await engine.execute_batch(calls, context=_context())
        assert executor.max_active == 3

    async def test_exclusive_calls_never_overlap(self):
        executor = FakeExecutor(delay=0.02)
        engine = _engine(make_descriptor("write", executor, exclusive=True))
        calls = [make_call("write", {"label": f"w{i}"}, call_id=f"w{i}") for i in range(3)]
        await engine.execute_batch(calls, context=_context())
        assert executor.max_active == 1
        assert executor.timeline == [
            ("start", "w0"), ("end", "w0"),
            ("start", "w1"), ("end", "w1"),
            ("start", "w2"), ("end", "w2"),
        ]

    async def test_shared_runs_alongside_exclusive(self):
        executor = FakeExecutor(delay=0.05)
        engine = _engine(
            make_descriptor("write", executor, exclusive=True),
            make_descriptor("read", executor),
        )
        calls = [make_call("write", {"label": "w"}), make_call("read", {"label": "r"})]
        await engine.execute_batch(calls, context=_context())
        assert executor.max_active == 2

    async def test_emits_started_and_finished(self, bus):
        events = bus.subscribe()
        engine = _engine(make_descriptor("read", FakeExecutor()), bus=bus)
        await engine.execute_batch([make_call("read", {"label": "a"})], context=_context())
        kinds = [e.kind for e in iter(events.get_nowait, None)]
        assert kinds == [EventKind.TOOL_CALL_STARTED, EventKind.TOOL_CALL_FINISHED]


class TestFailures:
    """Each failure is confined to its own call."""

    async def test_unknown_tool(self):
        executor = FakeExecutor()
        engine = _engine(make_descriptor("read", executor))
        calls = [make_call("nope"), make_call("read", {"label": "ok"})]
        missing, ok = await engine.execute_batch(calls, context=_context())
        assert missing.status is ToolCallStatus.FAILED
        assert missing.error_code == "tool-not-found"
        assert ok.status is ToolCallStatus.SUCCEEDED

    async def test_malformed_json(self):
        engine = _engine(make_descriptor("read", FakeExecutor()))
        call = ToolCall(id="c1", name="read", raw_arguments='{"label": ')
        [call] = await engine.execute_batch([call], context=_context())
        assert call.error_code == "validation-error"

    async def test_schema_violation_never_invokes(self):
        executor = FakeExecutor()
        engine = _engine(make_descriptor("read", executor))
        [call] = await engine.execute_batch([make_call("read", {"label": 3})], context=_context())
        assert call.error_code == "validation-error"
        assert executor.invocations == []

    async def test_executor_exception(self):
        failing = FakeExecutor(error=RuntimeError("disk on fire"))
        engine = _engine(
            make_descriptor("boom", failing),
            make_descriptor("read", FakeExecutor()),
        )
        boom, ok = await engine.execute_batch(
            [make_call("boom"), make_call("read")], context=_context()
        )
        assert boom.error_code == "tool-execution-error"
        assert "disk on fire" in boom.error
        assert ok.status is ToolCallStatus.SUCCEEDED

    async def test_error_result(self):
        executor = FakeExecutor(result=ToolResult.failure("tool-execution-error", "no such file"))
        engine = _engine(make_descriptor("read", executor))
        [call] = await engine.execute_batch([make_call("read")], context=_context())
        assert call.status is ToolCallStatus.FAILED
        assert call.error == "no such file"

    async def test_timeout(self):
        slow = FakeExecutor(delay=5)
        engine = _engine(make_descriptor("slow", slow, timeout=0.05), make_descriptor("read", FakeExecutor()))
        slow_call, ok = await engine.execute_batch(
            [make_call("slow"), make_call("read")], context=_context()
        )
        assert slow_call.error_code == "tool-timeout"
        assert ok.status is ToolCallStatus.SUCCEEDED

    async def test_exclusive_timeout_keeps_slot_until_thread_finishes(self):
        executor = ThreadedExecutor(seconds=0.2)
        engine = _engine(make_descriptor("write", executor, exclusive=True, timeout=0.05))
        calls = [make_call("write", {"label": "a"}, "a"), make_call("write", {"label": "b"}, "b")]
        a, b = await engine.execute_batch(calls, context=_context())
        assert a.error_code == "tool-timeout"
        assert b.error_code == "tool-timeout"
        assert executor.spans["b"][0] >= executor.spans["a"][1]

    async def test_exclusive_failure_does_not_block_next(self):
        executor = FakeExecutor(error=OSError("read-only"))
        engine = _engine(make_descriptor("write", executor, exclusive=True))
        calls = [make_call("write", {"label": "a"}, "a"), make_call("write", {"label": "b"}, "b")]
        a, b = await engine.execute_batch(calls, context=_context())
        assert a.status is ToolCallStatus.FAILED
        assert b.status is ToolCallStatus.FAILED
        assert len(executor.invocations) == 2


class TestApproval:
    async def test_approval_does_not_block_siblings(self, bus):
        gate = PermissionGate(bus)
        reader = FakeExecutor()
        writer = FakeExecutor()
        engine = _engine(
            make_descriptor("write", writer, exclusive=True, approval=True),
            make_descriptor("read", reader),
            bus=bus,
            gate=gate,
        )
        calls = [make_call("write", {"label": "w"}), make_call("read", {"label": "r"})]
        batch = asyncio.create_task(engine.execute_batch(calls, context=_context()))

        await wait_until(lambda: calls[1].is_terminal and gate.pending())
        assert calls[0].status is ToolCallStatus.AWAITING_APPROVAL
        assert writer.invocations == []

        gate.resolve(calls[0].id, PermissionDecision.APPROVED_ONCE)
        await batch
        assert calls[0].status is ToolCallStatus.SUCCEEDED

    async def test_denied(self):
        gate = PermissionGate()
        writer = FakeExecutor()
        engine = _engine(make_descriptor("write", writer, approval=True), gate=gate)
        call = make_call("write")
        batch = asyncio.create_task(engine.execute_batch([call], context=_context()))
        await wait_until(lambda: gate.pending())
        gate.resolve(call.id, PermissionDecision.DENIED)
        await batch
        assert call.error_code == "permission-denied"
        assert writer.invocations == []

    async def test_bypass(self):
        writer = FakeExecutor()
        engine = _engine(make_descriptor("write", writer, approval=True), gate=PermissionGate(bypass=True))
        [call] = await engine.execute_batch([make_call("write")], context=_context())
        assert call.status is ToolCallStatus.SUCCEEDED


class TestCancellation:
    async def test_cancel_before_start(self):
        cancel = CancelSignal()
        cancel.cancel()
        executor = FakeExecutor()
        engine = _engine(make_descriptor("read", executor))
        [call] = await engine.execute_batch([make_call("read")], context=_context(cancel))
        assert call.status is ToolCallStatus.CANCELLED
        assert executor.invocations == []

    async def test_shared_running_call_is_cancelled(self):
        cancel = CancelSignal()
        executor = FakeExecutor(gated=True)
        engine = _engine(make_descriptor("read", executor))
        call = make_call("read")
        batch = asyncio.create_task(engine.execute_batch([call], context=_context(cancel)))
        await wait_until(lambda: executor.active)
        cancel.cancel()
        await batch
        assert call.status is ToolCallStatus.CANCELLED

    async def test_exclusive_running_call_drains_queued_cancelled(self):
        cancel = CancelSignal()
        executor = FakeExecutor(gated=True)
        engine = _engine(make_descriptor("write", executor, exclusive=True))
        first, second = make_call("write", {"label": "a"}, "a"), make_call("write", {"label": "b"}, "b")
        batch = asyncio.create_task(engine.execute_batch([first, second], context=_context(cancel)))
        await wait_until(lambda: executor.active)

        cancel.cancel()
        await asyncio.sleep(0.02)
        assert not batch.done()
        executor.release.set()
        await batch

        assert first.status is ToolCallStatus.SUCCEEDED
        assert second.status is ToolCallStatus.CANCELLED
        assert [name for name, _ in executor.invocations] == ["write"]

    async def test_awaiting_approval_cancelled(self):
        cancel = CancelSignal()
        gate = PermissionGate()
        engine = _engine(make_descriptor("write", FakeExecutor(), approval=True), gate=gate)
        call = make_call("write")
        batch = asyncio.create_task(engine.execute_batch([call], context=_context(cancel)))
        await wait_until(lambda: gate.pending())
        cancel.cancel()
        await batch
        assert call.status is ToolCallStatus.CANCELLED
        assert gate.pending() == []

    async def test_outer_task_cancellation(self):
        executor = FakeExecutor(gated=True)
        engine = _engine(make_descriptor("read", executor))
        call = make_call("read")
        batch = asyncio.create_task(engine.execute_batch([call], context=_context()))
        await wait_until(lambda: executor.active)
        batch.cancel()
        with pytest.raises(asyncio.CancelledError):
            await batch
        assert call.status is ToolCallStatus.CANCELLED
