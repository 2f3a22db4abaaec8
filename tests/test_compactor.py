"""Tests for context compaction."""

from unittest.mock import AsyncMock, patch

from agent_engine.core.compactor import (
    SUMMARY_PREFIX,
    ContextCompactor,
    LLMSummarizer,
    TranscriptSummarizer,
    group_units,
    heuristic_cost,
    litellm_cost,
)
from agent_engine.core.errors import ProviderTransientError
from agent_engine.core.models import Message, Role, Session
from agent_engine.core.tool_result import ToolResult

from conftest import make_call


def unit_cost(message: Message) -> int:
    """Every message costs 10 tokens; summaries cost 1."""
    return 1 if message.synthetic else 10


def _tool_exchange(name: str) -> list[Message]:
    call = make_call(name, call_id=f"id_{name}")
    call.succeed(ToolResult.success(data={"output": name}))
    return [Message.assistant("", [call]), Message.tool_results([call])]


def _history(n: int) -> list[Message]:
    return [Message.user(f"message {i}") for i in range(n)]


class TestGroupUnits:
    def test_tool_exchange_is_one_unit(self):
        messages = [Message.user("hi"), *_tool_exchange("read"), Message.assistant("done")]
        units = group_units(messages)
        assert [len(u) for u in units] == [1, 2, 1]

    def test_assistant_without_results_stands_alone(self):
        call = make_call("read")
        units = group_units([Message.assistant("", [call]), Message.user("next")])
        assert [len(u) for u in units] == [1, 1]


class TestHeuristicCost:
    def test_grows_with_content(self):
        assert heuristic_cost(Message.user("x" * 400)) > heuristic_cost(Message.user("x"))

    def test_counts_tool_calls(self):
        exchange = _tool_exchange("read")
        assert heuristic_cost(exchange[0]) > heuristic_cost(Message.assistant(""))


class TestContextCompactor:
    async def test_fits_unchanged(self):
        compactor = ContextCompactor(cost_fn=unit_cost)
        messages = _history(3)
        result = await compactor.compact(messages, budget=30)
        assert not result.compacted
        assert result.messages == messages
        assert result.estimated_tokens == 30

    async def test_drops_oldest_and_summarizes(self):
        compactor = ContextCompactor(cost_fn=unit_cost)
        messages = _history(5)
        result = await compactor.compact(messages, budget=25)

        assert result.compacted
        assert result.estimated_tokens <= 25
        head, *rest = result.messages
        assert head.synthetic
        assert head.role is Role.USER
        assert head.content.startswith(SUMMARY_PREFIX)
        assert rest == messages[-2:]

    async def test_session_is_never_modified(self):
        session = Session()
        for message in _history(6):
            session.append(message)
        before = list(session.messages)
        await ContextCompactor(cost_fn=unit_cost).build_view(session, budget=15)
        assert session.messages == before

    async def test_tool_exchange_kept_or_dropped_together(self):
        compactor = ContextCompactor(cost_fn=unit_cost)
        messages = [Message.user("start"), *_tool_exchange("read"), Message.user("latest")]
        view = await compactor.build_view(messages, budget=25)

        kept_ids = {m.id for m in view}
        assistant, results = messages[1], messages[2]
        assert (assistant.id in kept_ids) == (results.id in kept_ids)
        assert view[-1] is messages[-1]

    async def test_never_exceeds_budget(self):
        compactor = ContextCompactor()
        messages = [Message.user("word " * 200) for _ in range(20)]
        for budget in (50, 300, 1000):
            result = await compactor.compact(messages, budget=budget)
            assert result.estimated_tokens <= budget

    async def test_building_a_view_of_a_view_changes_nothing(self):
        compactor = ContextCompactor(cost_fn=unit_cost)
        messages = [Message.user("start"), *_tool_exchange("read"), *_history(4)]
        first = await compactor.build_view(messages, budget=35)
        second = await compactor.build_view(first, budget=35)
        assert second == first
        assert sum(unit_cost(m) for m in second) == sum(unit_cost(m) for m in first)

        default = ContextCompactor()
        long_history = [Message.user("word " * 200) for _ in range(10)]
        first = await default.build_view(long_history, budget=600)
        second = await default.build_view(first, budget=600)
        assert default.estimate(second) == default.estimate(first)

    async def test_compacting_a_view_again(self):
        compactor = ContextCompactor(cost_fn=unit_cost)
        first = await compactor.build_view(_history(6), budget=35)
        second = await compactor.build_view(first + _history(3), budget=35)
        assert sum(unit_cost(m) for m in second) <= 35
        assert sum(1 for m in second if m.synthetic) == 1


class TestTranscriptSummarizer:
    async def test_mentions_tools_and_text(self):
        messages = [Message.user("please read"), *_tool_exchange("read")]
        summary = await TranscriptSummarizer().summarize(messages)
        assert "user: please read" in summary
        assert "[Tool: read(" in summary
        assert "[Result read:" in summary

    async def test_bounded_length(self):
        summary = await TranscriptSummarizer(max_chars=100).summarize(_history(50))
        assert len(summary) <= 104


class TestLLMSummarizer:
    async def test_uses_provider_completion(self):
        provider = AsyncMock()
        provider.complete.return_value = "they read a file"
        summary = await LLMSummarizer(provider, max_tokens=64).summarize(_history(2))
        assert summary == "they read a file"
        assert provider.complete.call_args.kwargs["max_tokens"] == 64
        [prompt] = provider.complete.call_args.args[0]
        assert "message 0" in prompt.content

    async def test_falls_back_to_transcript(self):
        provider = AsyncMock()
        provider.complete.side_effect = ProviderTransientError("503")
        summary = await LLMSummarizer(provider).summarize(_history(2))
        assert "user: message 1" in summary


class TestLitellmCost:
    @patch("agent_engine.core.compactor.litellm.token_counter", return_value=42)
    def test_uses_token_counter(self, mock_counter):
        assert litellm_cost("gpt-4o")(Message.user("hi")) == 42
        assert mock_counter.call_args.kwargs["model"] == "gpt-4o"

    @patch("agent_engine.core.compactor.litellm.token_counter", side_effect=ValueError("unknown model"))
    def test_falls_back_to_heuristic(self, mock_counter):
        message = Message.user("x" * 40)
        assert litellm_cost("mystery")(message) == heuristic_cost(message)
