"""
Tests for the bounded tool-calling loop.
"""

import json

import pytest

from fundsagent.exceptions import UpstreamUnavailable
from fundsagent.services.stream_adapter import OpenAIStreamSource, ReplyState
from fundsagent.services.tool_loop import LoopState, ToolLoop

from fakes import FakeChatClient, text_chunk, text_response, tool_call_response, usage_chunk


class TestToolLoop:
    """State progression, round budget and evidence accumulation."""

    @pytest.mark.asyncio
    async def test_single_round_for_own_only_caller(self, tool_registry, context_for):
        ctx = await context_for("1101")
        client = FakeChatClient(responses=[
            tool_call_response(("get_my_performance", {"period": "MTD"})),
            text_response("Your MTD total is 5.20 Cr."),
        ])
        loop = ToolLoop(client, tool_registry)

        outcome = await loop.run([{"role": "user", "content": "How am I doing this month?"}], ctx)

        assert outcome.state == LoopState.FINAL_TEXT
        assert outcome.text == "Your MTD total is 5.20 Cr."
        assert outcome.rounds == 1
        assert outcome.tokens_used == 32
        assert [r.name for r in outcome.evidence] == ["get_my_performance"]

        second_call = client.calls[1]["messages"]
        assert second_call[-2]["role"] == "assistant"
        assert second_call[-2]["tool_calls"][0]["function"]["name"] == "get_my_performance"
        tool_message = second_call[-1]
        assert tool_message["role"] == "tool"
        assert tool_message["tool_call_id"] == "call_0_get_my_performance"
        assert json.loads(tool_message["content"])["mtd"]["total_cr"] == 5.2

    @pytest.mark.asyncio
    async def test_tools_offered_with_auto_choice(self, tool_registry, context_for):
        ctx = await context_for("1101")
        client = FakeChatClient(responses=[text_response("Hello Neha.")])

        await ToolLoop(client, tool_registry).run([{"role": "user", "content": "hi"}], ctx)

        assert client.calls[0]["tool_choice"] == "auto"
        offered = {t["function"]["name"] for t in client.calls[0]["tools"]}
        assert "query_database" not in offered

    @pytest.mark.asyncio
    async def test_round_budget_is_never_exceeded(self, tool_registry, context_for):
        ctx = await context_for("1100")
        client = FakeChatClient(responses=[
            tool_call_response(("get_rankings", {})),
            tool_call_response(("get_rankings", {})),
            text_response("Ranked summary."),
        ])
        loop = ToolLoop(client, tool_registry, max_rounds=2)

        outcome = await loop.run([{"role": "user", "content": "rank us"}], ctx)

        assert outcome.state == LoopState.ROUNDS_EXHAUSTED
        assert outcome.rounds == 2
        assert len(client.calls) == 2

        result = await loop.finalize(outcome)

        assert result.text == "Ranked summary."
        assert result.exhausted
        assert len(client.calls) == 3
        assert client.calls[-1]["tool_choice"] == "none"

    @pytest.mark.asyncio
    async def test_failed_tool_becomes_evidence_and_loop_continues(self, tool_registry, context_for):
        ctx = await context_for("1101")
        client = FakeChatClient(responses=[
            tool_call_response(("get_salaries", {}), ("get_my_performance", {})),
            text_response("I could not read salaries, but here is your performance."),
        ])

        result = await ToolLoop(client, tool_registry).run_to_text([{"role": "user", "content": "salaries?"}], ctx)

        assert [r.is_error for r in result.evidence] == [True, False]
        assert result.text.startswith("I could not read salaries")
        tool_messages = [m for m in client.calls[1]["messages"] if m["role"] == "tool"]
        assert json.loads(tool_messages[0]["content"]) == {"error": "Unknown tool: get_salaries"}

    @pytest.mark.asyncio
    async def test_empty_answer_is_unavailable(self, tool_registry, context_for):
        ctx = await context_for("1101")
        client = FakeChatClient(responses=[text_response("")])

        with pytest.raises(UpstreamUnavailable):
            await ToolLoop(client, tool_registry).run_to_text([{"role": "user", "content": "hi"}], ctx)

    @pytest.mark.asyncio
    async def test_response_without_choices_is_unavailable(self, tool_registry, context_for):
        ctx = await context_for("1101")
        client = FakeChatClient(responses=[{"choices": []}])

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await ToolLoop(client, tool_registry).run([{"role": "user", "content": "hi"}], ctx)

        assert "empty response" in exc_info.value.message


class TestAnswerFragments:
    """How the final answer is delivered as fragments."""

    @pytest.mark.asyncio
    async def test_text_answer_is_replayed(self, tool_registry, context_for, stream_adapter):
        ctx = await context_for("1101")
        client = FakeChatClient(responses=[
            tool_call_response(("get_my_performance", {})),
            text_response("You are at 5.20 Cr MTD."),
        ])
        reply = ReplyState(engine="primary")
        loop = ToolLoop(client, tool_registry)

        fragments = [
            f async for f in loop.answer_fragments(
                [{"role": "user", "content": "mtd?"}], ctx, reply, OpenAIStreamSource(client), stream_adapter
            )
        ]

        assert "".join(fragments) == "You are at 5.20 Cr MTD."
        assert all(len(f) <= 4 for f in fragments)
        assert client.stream_calls == []
        assert reply.tokens_used == 32
        assert [r.name for r in reply.evidence] == ["get_my_performance"]

    @pytest.mark.asyncio
    async def test_exhausted_run_streams_text_only_call(self, tool_registry, context_for, stream_adapter):
        ctx = await context_for("1101")
        client = FakeChatClient(
            responses=[tool_call_response(("get_rankings", {}))],
            streams=[[text_chunk("Final "), text_chunk("answer."), usage_chunk(7)]],
        )
        reply = ReplyState(engine="primary")
        loop = ToolLoop(client, tool_registry, max_rounds=1)

        fragments = [
            f async for f in loop.answer_fragments(
                [{"role": "user", "content": "rank"}], ctx, reply, OpenAIStreamSource(client), stream_adapter
            )
        ]

        assert fragments == ["Final ", "answer."]
        assert client.stream_calls[0]["tool_choice"] == "none"
        assert reply.tokens_used == 27

    @pytest.mark.asyncio
    async def test_exhausted_run_with_empty_stream_is_unavailable(self, tool_registry, context_for, stream_adapter):
        ctx = await context_for("1101")
        client = FakeChatClient(responses=[tool_call_response(("get_rankings", {}))], streams=[[usage_chunk(3)]])
        loop = ToolLoop(client, tool_registry, max_rounds=1)

        with pytest.raises(UpstreamUnavailable):
            async for _ in loop.answer_fragments(
                [{"role": "user", "content": "rank"}], ctx, ReplyState(), OpenAIStreamSource(client), stream_adapter
            ):
                pass
