"""
Tests for the primary chat flow: preparation, JSON replies, streaming and superseding.
"""

import asyncio
from datetime import date

import pytest

from fundsagent.models.access import Persona
from fundsagent.models.stream import StreamEventType
from fundsagent.services.chat_service import (
    PROACTIVE_PROMPT,
    SUPERSEDED_MESSAGE,
    ChatService,
    InFlightRegistry,
)

from fakes import Blocked, FakeChatClient, collect, text_response, token_text, tool_call_response


@pytest.fixture
def primary():
    return FakeChatClient(engine_id="primary", display_name="FundsAgent", model="gpt-test")


@pytest.fixture
def chat_service(primary, tool_registry, access_service, conversation_service, stream_adapter, agent_settings):
    return ChatService(
        primary,
        tool_registry,
        access_service,
        conversation_service,
        stream_adapter,
        agent_settings,
        today=lambda: date(2026, 3, 14),
    )


class TestPrepare:
    @pytest.mark.asyncio
    async def test_messages_and_scope(self, chat_service, caller):
        employee, grant = await caller("1100")

        prepared = await chat_service.prepare(employee, grant, message="How is my team?")

        assert prepared.messages[0]["role"] == "system"
        assert prepared.messages[0]["content"] == prepared.system_prompt
        assert "focus_area: grow COB in Pune branch" in prepared.system_prompt
        assert prepared.messages[-1] == {"role": "user", "content": "How is my team?"}
        assert prepared.session.title == "How is my team?"
        assert len(prepared.ctx.visible) == 5

    @pytest.mark.asyncio
    async def test_proactive_without_message(self, chat_service, caller):
        employee, grant = await caller("1101")

        prepared = await chat_service.prepare(employee, grant, is_proactive=True)

        assert prepared.messages[-1] == {"role": "system", "content": PROACTIVE_PROMPT}
        assert prepared.user_message is None

    @pytest.mark.asyncio
    async def test_persona_model_parameters_become_overrides(self, chat_service, caller):
        employee, grant = await caller("1100")
        grant = grant.model_copy(update={
            "persona": Persona(id="p", model="gpt-4o-mini", temperature=0.2, tone="concise")
        })

        prepared = await chat_service.prepare(employee, grant, message="hi")

        assert prepared.overrides == {"model": "gpt-4o-mini", "temperature": 0.2}


class TestChat:
    """Non-streaming replies."""

    @pytest.mark.asyncio
    async def test_reply_is_persisted(self, chat_service, primary, conversation_repository, caller):
        employee, grant = await caller("1101")
        primary.responses = [tool_call_response(("get_my_performance", {})), text_response("5.20 Cr MTD.")]
        prepared = await chat_service.prepare(employee, grant, message="How am I doing?")

        reply = await chat_service.chat(prepared)

        assert reply.to_wire() == {
            "reply": "5.20 Cr MTD.",
            "conversationId": prepared.session.id,
            "model": "gpt-test",
            "tokensUsed": 32,
            "dataSources": ["get_my_performance"],
        }
        stored = conversation_repository.messages[prepared.session.id]
        assert [m.content for m in stored] == ["How am I doing?", "5.20 Cr MTD."]
        assert stored[1].data_sources == ["get_my_performance"]

    @pytest.mark.asyncio
    async def test_unavailable_backend_is_degraded_and_not_persisted(
        self, chat_service, primary, conversation_repository, caller
    ):
        employee, grant = await caller("1101")
        primary.configured = False
        prepared = await chat_service.prepare(employee, grant, message="hi")

        reply = await chat_service.chat(prepared)

        assert reply.degraded
        assert reply.to_wire()["reply"] == "⚠️ FundsAgent is not configured."
        assert prepared.session.id not in conversation_repository.messages

    @pytest.mark.asyncio
    async def test_history_is_sent_on_the_next_turn(self, chat_service, primary, caller):
        employee, grant = await caller("1101")
        primary.responses = [text_response("First answer."), text_response("Second answer.")]
        first = await chat_service.prepare(employee, grant, message="First question")
        await chat_service.chat(first)

        second = await chat_service.prepare(employee, grant, message="Follow up", conversation_id=first.session.id)
        await chat_service.chat(second)

        sent = primary.calls[-1]["messages"]
        assert [m["content"] for m in sent[1:]] == ["First question", "First answer.", "Follow up"]


class TestStreamChat:
    """Streaming replies and the hand-off for the secondary engines."""

    @pytest.mark.asyncio
    async def test_stream_ends_with_handoff(self, chat_service, primary, conversation_repository, caller):
        employee, grant = await caller("1100")
        primary.responses = [
            tool_call_response(("get_team_performance", {})),
            text_response("Neha leads your team this month."),
        ]
        prepared = await chat_service.prepare(employee, grant, message="Who leads my team?")

        events = await collect(chat_service.stream_chat(prepared))

        done = events[-1]
        assert done.type == StreamEventType.DONE
        assert done.reply == token_text(events) == "Neha leads your team this month."
        assert done.engine == "primary"
        assert done.conversation_id == prepared.session.id
        assert done.system_prompt == prepared.system_prompt
        assert done.tool_results_for_engines[0]["tool"] == "get_team_performance"
        assert len(conversation_repository.messages[prepared.session.id]) == 2

    @pytest.mark.asyncio
    async def test_unavailable_backend_streams_degraded_answer(
        self, chat_service, primary, conversation_repository, caller
    ):
        employee, grant = await caller("1101")
        primary.configured = False
        prepared = await chat_service.prepare(employee, grant, message="hi")

        events = await collect(chat_service.stream_chat(prepared))

        assert [e.type for e in events] == [StreamEventType.TOKEN, StreamEventType.DONE]
        assert events[-1].degraded
        assert prepared.session.id not in conversation_repository.messages

    @pytest.mark.asyncio
    async def test_newer_message_supersedes_running_stream(
        self, chat_service, primary, conversation_repository, caller
    ):
        employee, grant = await caller("1101")
        blocked = Blocked()
        primary.responses = [blocked, text_response("Second answer.")]
        first = await chat_service.prepare(employee, grant, message="First")
        second = await chat_service.prepare(employee, grant, message="Second", conversation_id=first.session.id)

        first_events = asyncio.create_task(collect(chat_service.stream_chat(first)))
        await blocked.entered.wait()
        second_events = await collect(chat_service.stream_chat(second))
        first_events = await first_events

        assert [e.type for e in first_events] == [StreamEventType.ERROR]
        assert first_events[0].message == SUPERSEDED_MESSAGE
        assert second_events[-1].reply == "Second answer."
        stored = conversation_repository.messages[first.session.id]
        assert [m.content for m in stored] == ["Second", "Second answer."]


    @pytest.mark.asyncio
    async def test_follow_up_cancels_running_stream_before_reading_history(
        self, chat_service, primary, conversation_repository, caller
    ):
        employee, grant = await caller("1101")
        blocked = Blocked()
        primary.responses = [blocked]
        first = await chat_service.prepare(employee, grant, message="First")
        first_events = asyncio.create_task(collect(chat_service.stream_chat(first)))
        await blocked.entered.wait()

        second = await chat_service.prepare(employee, grant, message="Second", conversation_id=first.session.id)

        assert first.session.id not in chat_service.in_flight
        assert [e.message for e in await first_events] == [SUPERSEDED_MESSAGE]
        assert [m["content"] for m in second.messages[1:]] == ["Second"]
        assert first.session.id not in conversation_repository.messages


class TestInFlightRegistry:
    @pytest.mark.asyncio
    async def test_start_cancels_previous_task(self):
        registry = InFlightRegistry()
        first = await registry.start("c-1", asyncio.sleep(10))

        second = await registry.start("c-1", asyncio.sleep(0))

        assert first.cancelled()
        await second
        assert "c-1" not in registry

    @pytest.mark.asyncio
    async def test_different_conversations_are_independent(self):
        registry = InFlightRegistry()
        first = await registry.start("c-1", asyncio.sleep(10))

        await registry.start("c-2", asyncio.sleep(0))

        assert not first.cancelled()
        assert "c-1" in registry
        await registry.cancel("c-1")
        assert first.cancelled()

