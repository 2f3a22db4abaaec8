"""Shared pytest fixtures and test doubles for agent_engine tests."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import pytest

# litellm fetches its model cost map over the network at import time; in an
# offline test run that path deadlocks inside litellm's logging filter.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from agent_engine.config import EngineConfig
from agent_engine.core.events import EventBus
from agent_engine.core.llm import TextDelta, ToolCallDelta, UsageDelta
from agent_engine.core.models import ToolCall
from agent_engine.core.registry import (
    ApprovalRequirement,
    ConcurrencyClass,
    ToolDescriptor,
    ToolRegistry,
    normalize_path_target,
)
from agent_engine.core.tool_result import ToolResult


@pytest.fixture
def workspace(tmp_path):
    """A temporary directory that acts as the workspace root."""
    return tmp_path


@pytest.fixture
def bus():
    return EventBus()


# ── Plain helper functions ─────────────────────────────────────────────────
# Test modules import these directly:
#   from conftest import FakeProvider, make_config, ...

def make_file(workspace: Path, relative_path: str, content: str = "hello\n") -> Path:
    p = workspace / relative_path
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")
    return p


def assert_ok(result: ToolResult) -> None:
    assert result.ok, f"Expected ok=True but got error: {result.error_code} - {result.message}"


def assert_fail(result: ToolResult, error_code: str | None = None) -> None:
    assert not result.ok, f"Expected ok=False but result succeeded: {result.message}"
    if error_code:
        assert result.error_code == error_code, (
            f"Expected error_code={error_code!r}, got {result.error_code!r}"
        )


def make_config(**overrides: Any) -> EngineConfig:
    """Config with no retry delay so backoff tests run instantly."""
    values: dict[str, Any] = {
        "model": "test/model",
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
    }
    values.update(overrides)
    return EngineConfig(**values)


def make_call(name: str, arguments: dict | None = None, call_id: str | None = None) -> ToolCall:
    return ToolCall(
        id=call_id or f"call_{name}",
        name=name,
        raw_arguments=json.dumps(arguments or {}),
    )


# ── Provider script helpers ────────────────────────────────────────────────

HANG = object()
"""Script item that blocks the stream until it is cancelled."""


def text(*chunks: str) -> list:
    return [TextDelta(chunk) for chunk in chunks]


def tool(index: int, call_id: str, name: str, arguments: dict | None = None) -> ToolCallDelta:
    return ToolCallDelta(index=index, id=call_id, name=name, arguments=json.dumps(arguments or {}))


def usage(prompt: int = 10, completion: int = 5) -> UsageDelta:
    return UsageDelta(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


class FakeProvider:
    """Provider double that replays one scripted response per send().

    A script is a list of deltas; an exception instance anywhere in it (or
    as the whole script) is raised at that point of the stream.
    """

    def __init__(self, *scripts: Any) -> None:
        self.scripts = list(scripts)
        self.requests: list[dict[str, Any]] = []
        self.api_base = None
        self.closed = 0

    async def send(self, history, tools, *, system_prompt=None):
        self.requests.append({"history": list(history), "tools": tools, "system_prompt": system_prompt})
        if not self.scripts:
            raise AssertionError("FakeProvider ran out of scripted responses")
        script = self.scripts.pop(0)
        try:
            if isinstance(script, BaseException):
                raise script
            for item in script:
                if item is HANG:
                    await asyncio.Event().wait()
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed += 1


# ── Tool executor doubles ─────────────────────────────────────────────────

class FakeExecutor:
    """Executor double recording when each invocation starts and ends.

    Args:
        delay: Seconds each invocation sleeps
        error: Exception raised by every invocation
        result: ToolResult returned (defaults to success)
        gated: Invocations wait for ``release`` to be set
    """

    def __init__(
        self,
        delay: float = 0.0,
        error: Exception | None = None,
        result: ToolResult | None = None,
        gated: bool = False,
    ) -> None:
        self.delay = delay
        self.error = error
        self.result = result
        self.gated = gated
        self.release = asyncio.Event()
        self.timeline: list[tuple[str, str]] = []
        self.invocations: list[tuple[str, dict]] = []
        self.active = 0
        self.max_active = 0
        self.saw_cancel = False

    async def invoke(self, name: str, arguments: dict, cancel: asyncio.Event) -> ToolResult:
        label = arguments.get("label", name)
        self.invocations.append((name, arguments))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.timeline.append(("start", label))
        try:
            if self.gated:
                await self.release.wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
            if cancel.is_set():
                self.saw_cancel = True
            if self.error is not None:
                raise self.error
            return self.result or ToolResult.success(data={"output": f"{label} done"})
        finally:
            self.active -= 1
            self.timeline.append(("end", label))


LABEL_SCHEMA = {
    "properties": {"label": {"type": "string"}, "path": {"type": "string"}},
    "required": [],
    "additionalProperties": False,
}


def make_descriptor(
    name: str,
    executor: Any,
    *,
    exclusive: bool = False,
    approval: bool = False,
    parameters: dict | None = None,
    target_arg: str | None = None,
    timeout: float | None = None,
) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description=f"{name} test tool",
        parameters=parameters or LABEL_SCHEMA,
        executor=executor,
        approval=ApprovalRequirement.REQUIRED if approval else ApprovalRequirement.NONE,
        concurrency=ConcurrencyClass.EXCLUSIVE if exclusive else ConcurrencyClass.SHARED,
        target_arg=target_arg,
        normalize_target=normalize_path_target,
        timeout=timeout,
    )


def make_registry(*descriptors: ToolDescriptor) -> ToolRegistry:
    return ToolRegistry(list(descriptors))


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)
