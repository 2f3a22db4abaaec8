"""Context compaction: bound the history sent to the provider.

The persisted session is never modified. A view keeps the newest messages
that fit the budget and collapses the older prefix into one synthetic
summary message at the head. Assistant messages that requested tools are
kept or dropped together with their tool-result message so the provider
never sees a dangling tool reference.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol, Sequence

import litellm

from agent_engine.core.models import Message, Role, Session

if TYPE_CHECKING:
    from agent_engine.core.llm import LiteLLMProvider

_log = logging.getLogger(__name__)

_TOOL_CALL_TOKEN_OVERHEAD = 50
_MESSAGE_TOKEN_OVERHEAD = 4
_MAX_TOOL_RESULT_PREVIEW = 300
_MAX_SUMMARY_CHARS = 4000
SUMMARY_PREFIX = "[Summary of earlier conversation]\n"

CostFunction = Callable[[Message], int]


class Summarizer(Protocol):
    async def summarize(self, messages: Sequence[Message]) -> str:
        ...


def heuristic_cost(message: Message) -> int:
    """Estimate tokens using character heuristic (len/4)."""
    total = _MESSAGE_TOKEN_OVERHEAD + len(message.content) // 4
    for call in message.tool_calls:
        total += _TOOL_CALL_TOKEN_OVERHEAD
        if message.role is Role.TOOL:
            total += len(call.result_content()) // 4
        else:
            total += len(call.raw_arguments or json.dumps(call.arguments or {})) // 4
    return total


def litellm_cost(model: str) -> CostFunction:
    """Cost function backed by litellm.token_counter() with heuristic fallback."""

    def _cost(message: Message) -> int:
        try:
            return int(litellm.token_counter(model=model, messages=message.to_provider_messages()))
        except Exception:
            return heuristic_cost(message)

    return _cost


class TranscriptSummarizer:
    """Deterministic summary: flattens dropped messages to short plain-text lines."""

    def __init__(self, max_chars: int = _MAX_SUMMARY_CHARS) -> None:
        self.max_chars = max_chars

    async def summarize(self, messages: Sequence[Message]) -> str:
        lines: list[str] = []
        for message in messages:
            if message.synthetic:
                lines.append(message.content.removeprefix(SUMMARY_PREFIX).strip())
                continue
            if message.role is Role.TOOL:
                for call in message.tool_calls:
                    preview = call.result_content()[:_MAX_TOOL_RESULT_PREVIEW]
                    lines.append(f"[Result {call.name}: {preview}]")
                continue
            if message.content:
                lines.append(f"{message.role.value}: {message.content[:_MAX_TOOL_RESULT_PREVIEW]}")
            for call in message.tool_calls:
                lines.append(f"[Tool: {call.name}({call.raw_arguments[:_MAX_TOOL_RESULT_PREVIEW]})]")
        text = "\n".join(line for line in lines if line)
        if len(text) > self.max_chars:
            text = "...\n" + text[-self.max_chars:]
        return text


class LLMSummarizer:
    """Asks the model itself to summarize the dropped prefix."""

    PROMPT = (
        "Summarize the following conversation between a user and a coding assistant. "
        "Keep decisions, file paths, commands run and open tasks. Be concise."
    )

    def __init__(self, provider: LiteLLMProvider, max_tokens: int = 1024) -> None:
        self.provider = provider
        self.max_tokens = max_tokens
        self._fallback = TranscriptSummarizer()

    async def summarize(self, messages: Sequence[Message]) -> str:
        transcript = await self._fallback.summarize(messages)
        try:
            return await self.provider.complete(
                [Message.user(f"{self.PROMPT}\n\n{transcript}")],
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            _log.warning("LLM summarization failed, using transcript digest: %s", exc)
            return transcript


@dataclass
class CompactionResult:
    messages: list[Message]
    dropped: int
    estimated_tokens: int

    @property
    def compacted(self) -> bool:
        return self.dropped > 0


def group_units(messages: Sequence[Message]) -> list[list[Message]]:
    """Split history into units that must be kept or dropped together.

    An assistant message with tool calls forms one unit with the tool-result
    message(s) answering those calls.
    """
    units: list[list[Message]] = []
    i = 0
    while i < len(messages):
        message = messages[i]
        unit = [message]
        if message.role is Role.ASSISTANT and message.tool_calls:
            wanted = {call.id for call in message.tool_calls}
            j = i + 1
            while j < len(messages) and messages[j].role is Role.TOOL and wanted:
                unit.append(messages[j])
                wanted -= {call.id for call in messages[j].tool_calls}
                j += 1
            i = j
        else:
            i += 1
        units.append(unit)
    return units


class ContextCompactor:
    """Builds a budget-bounded view of a session's history."""

    def __init__(
        self,
        cost_fn: CostFunction | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        """Initialize the compactor.

        Args:
            cost_fn: Token estimate for one message (defaults to the len/4 heuristic)
            summarizer: Produces the synthetic summary of dropped messages
        """
        self.cost_fn = cost_fn or heuristic_cost
        self.summarizer = summarizer or TranscriptSummarizer()

    def estimate(self, messages: Sequence[Message]) -> int:
        return sum(self.cost_fn(m) for m in messages)

    async def build_view(self, history: Session | Sequence[Message], budget: int) -> list[Message]:
        """Return the bounded history for one provider request."""
        return (await self.compact(history, budget)).messages

    async def compact(self, history: Session | Sequence[Message], budget: int) -> CompactionResult:
        """Fit history into budget, summarizing the dropped prefix.

        Args:
            history: A session or a message sequence (e.g. an earlier view)
            budget: Maximum estimated tokens for the whole view

        Returns:
            CompactionResult whose estimated_tokens never exceeds budget.
        """
        messages = list(history.messages if isinstance(history, Session) else history)
        costs = [self.cost_fn(m) for m in messages]
        total = sum(costs)
        if total <= budget:
            return CompactionResult(messages=messages, dropped=0, estimated_tokens=total)

        units = group_units(messages)
        unit_costs = []
        offset = 0
        for unit in units:
            unit_costs.append(sum(costs[offset:offset + len(unit)]))
            offset += len(unit)

        # Newest units first, until the next one would exceed the budget
        kept_from = len(units)
        running = 0
        while kept_from > 0 and running + unit_costs[kept_from - 1] <= budget:
            kept_from -= 1
            running += unit_costs[kept_from]

        while True:
            dropped = [m for unit in units[:kept_from] for m in unit]
            kept = [m for unit in units[kept_from:] for m in unit]
            kept_cost = sum(unit_costs[kept_from:])
            summary = await self._summary_message(dropped, budget - kept_cost)
            summary_cost = self.cost_fn(summary) if summary is not None else 0
            if summary is not None and kept_cost + summary_cost <= budget:
                view = [summary] + kept
                break
            if kept_from == len(units):
                view = kept
                break
            kept_from += 1

        estimated = self.estimate(view)
        if kept_from == len(units) and units:
            _log.warning("Compaction dropped the most recent message to fit %d tokens", budget)
        _log.debug(
            "Compacted %d message(s) into a summary; view is %d/%d tokens",
            len(dropped), estimated, budget,
        )
        return CompactionResult(messages=view, dropped=len(dropped), estimated_tokens=estimated)

    async def _summary_message(self, dropped: list[Message], room: int) -> Message | None:
        """Summarize dropped messages into at most `room` tokens, or None if impossible."""
        if not dropped or room <= 0:
            return None
        text = await self.summarizer.summarize(dropped)
        while text:
            message = Message.user(SUMMARY_PREFIX + text, synthetic=True)
            if self.cost_fn(message) <= room:
                return message
            text = text[len(text) // 2:] if len(text) > 1 else ""
        return None
