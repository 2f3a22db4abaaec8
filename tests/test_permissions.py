"""Tests for the permission gate."""

import asyncio

import pytest

from agent_engine.core.errors import PermissionResolveError
from agent_engine.core.events import EventKind
from agent_engine.core.permissions import PermissionDecision, PermissionGate, is_destructive

from conftest import make_call, wait_until


async def _request(gate, call, target="a.txt", session_id="s1", **kwargs):
    return await gate.request_approval(call, f"{call.name} {target}", session_id=session_id, target=target, **kwargs)


class TestIsDestructive:
    @pytest.mark.parametrize("command", [
        "rm -rf build/",
        "git push origin main --force",
        "git reset --hard HEAD~1",
        "dd if=/dev/zero of=disk.img",
    ])
    def test_destructive(self, command):
        assert is_destructive(command)

    @pytest.mark.parametrize("command", ["ls -la", "git status", "pytest -q"])
    def test_safe(self, command):
        assert not is_destructive(command)


class TestRequestApproval:
    """Requests suspend only their own caller until resolved."""

    async def test_approve_once(self, bus):
        gate = PermissionGate(bus)
        events = bus.subscribe()
        call = make_call("write")
        waiter = asyncio.create_task(_request(gate, call))
        await wait_until(lambda: gate.pending())

        event = events.get_nowait()
        assert event.kind is EventKind.PERMISSION_REQUESTED
        assert event.entity_id == call.id
        assert event.payload["target"] == "a.txt"

        assert gate.resolve(call.id, PermissionDecision.APPROVED_ONCE) is PermissionDecision.APPROVED_ONCE
        assert await waiter is PermissionDecision.APPROVED_ONCE
        assert gate.pending() == []
        assert events.get_nowait().kind is EventKind.PERMISSION_RESOLVED

    async def test_approve_once_is_not_remembered(self):
        gate = PermissionGate()
        call = make_call("write")
        waiter = asyncio.create_task(_request(gate, call))
        await wait_until(lambda: gate.pending())
        gate.resolve(call.id, "approved-once")
        await waiter
        assert not gate.is_always_approved("s1", "write", "a.txt")

    async def test_approve_always_skips_later_prompts(self):
        gate = PermissionGate()
        first = make_call("write", call_id="c1")
        waiter = asyncio.create_task(_request(gate, first))
        await wait_until(lambda: gate.pending())
        gate.resolve("c1", PermissionDecision.APPROVED_ALWAYS)
        await waiter

        decision = await _request(gate, make_call("write", call_id="c2"))
        assert decision is PermissionDecision.APPROVED_ALWAYS
        assert gate.pending() == []

    async def test_always_is_scoped_to_tool_target_and_session(self):
        gate = PermissionGate()
        gate.remember("s1", "write", "a.txt")
        assert gate.is_always_approved("s1", "write", "a.txt")
        assert not gate.is_always_approved("s1", "write", "b.txt")
        assert not gate.is_always_approved("s1", "shell", "a.txt")
        assert not gate.is_always_approved("s2", "write", "a.txt")
        gate.forget_session("s1")
        assert not gate.is_always_approved("s1", "write", "a.txt")

    async def test_deny(self):
        gate = PermissionGate()
        call = make_call("write")
        waiter = asyncio.create_task(_request(gate, call))
        await wait_until(lambda: gate.pending())
        gate.resolve(call.id, PermissionDecision.DENIED)
        decision = await waiter
        assert not decision.approved

    async def test_destructive_always_downgraded(self):
        gate = PermissionGate()
        call = make_call("shell")
        waiter = asyncio.create_task(_request(gate, call, target="rm -rf build/"))
        await wait_until(lambda: gate.pending())
        assert gate.pending()[0].destructive

        applied = gate.resolve(call.id, PermissionDecision.APPROVED_ALWAYS)
        assert applied is PermissionDecision.APPROVED_ONCE
        assert await waiter is PermissionDecision.APPROVED_ONCE
        assert not gate.is_always_approved("s1", "shell", "rm -rf build/")

    async def test_timeout_denies(self):
        gate = PermissionGate(timeout=0.01)
        decision = await _request(gate, make_call("write"))
        assert decision is PermissionDecision.DENIED
        assert gate.pending() == []

    async def test_bypass_approves_without_event(self, bus):
        gate = PermissionGate(bus, bypass=True)
        events = bus.subscribe()
        assert (await _request(gate, make_call("write"))).approved
        assert events.get_nowait() is None

    async def test_concurrent_requests_resolved_independently(self):
        gate = PermissionGate()
        a, b = make_call("write", call_id="a"), make_call("write", call_id="b")
        task_a = asyncio.create_task(_request(gate, a, target="a.txt"))
        task_b = asyncio.create_task(_request(gate, b, target="b.txt"))
        await wait_until(lambda: len(gate.pending()) == 2)

        gate.resolve("b", PermissionDecision.DENIED)
        assert await task_b is PermissionDecision.DENIED
        assert not task_a.done()

        gate.resolve("a", PermissionDecision.APPROVED_ONCE)
        assert await task_a is PermissionDecision.APPROVED_ONCE


class TestResolve:
    def test_unknown_id(self):
        with pytest.raises(PermissionResolveError):
            PermissionGate().resolve("missing", PermissionDecision.APPROVED_ONCE)

    async def test_second_resolve_rejected(self):
        gate = PermissionGate()
        call = make_call("write")
        waiter = asyncio.create_task(_request(gate, call))
        await wait_until(lambda: gate.pending())
        gate.resolve(call.id, PermissionDecision.DENIED)
        with pytest.raises(PermissionResolveError):
            gate.resolve(call.id, PermissionDecision.APPROVED_ONCE)
        await waiter

    async def test_pending_decision_rejected(self):
        gate = PermissionGate()
        call = make_call("write")
        waiter = asyncio.create_task(_request(gate, call))
        await wait_until(lambda: gate.pending())
        with pytest.raises(ValueError):
            gate.resolve(call.id, PermissionDecision.PENDING)
        gate.resolve(call.id, PermissionDecision.DENIED)
        await waiter


class TestDenyPending:
    async def test_only_matching_turn(self):
        gate = PermissionGate()
        a, b = make_call("write", call_id="a"), make_call("write", call_id="b")
        task_a = asyncio.create_task(_request(gate, a, turn_id="t1"))
        task_b = asyncio.create_task(_request(gate, b, turn_id="t2"))
        await wait_until(lambda: len(gate.pending()) == 2)

        assert gate.deny_pending(turn_id="t1") == 1
        assert await task_a is PermissionDecision.DENIED
        assert [r.tool_call_id for r in gate.pending()] == ["b"]

        gate.deny_pending(session_id="s1")
        assert await task_b is PermissionDecision.DENIED
