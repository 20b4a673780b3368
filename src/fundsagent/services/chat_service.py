"""
Chat service for the primary reasoning backend.

A chat request is prepared once (session, history, memory, system prompt,
tool context), then answered either as a single JSON reply or as an event
stream. Only one response per conversation is in flight: a new message
cancels the previous stream, which then ends with an error event and is not
persisted.
"""

import asyncio
from datetime import date
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, List, Optional
from pydantic import BaseModel, Field
import structlog

from fundsagent.clients.llm_client import ChatCompletionClient
from fundsagent.config.settings import AgentSettings
from fundsagent.exceptions import UpstreamUnavailable
from fundsagent.models.access import AccessGrant, Employee, ToolContext
from fundsagent.models.message import ConversationTurn, MessageRole, unique_sources
from fundsagent.models.session import ConversationSession
from fundsagent.models.stream import StreamEvent
from fundsagent.services.access_service import AccessService
from fundsagent.services.conversation_service import ConversationService
from fundsagent.services.prompt_builder import SystemPromptConfig, build_system_prompt
from fundsagent.services.stream_adapter import DEGRADED_PREFIX, OpenAIStreamSource, ReplyState, StreamAdapter
from fundsagent.services.tool_loop import ToolLoop
from fundsagent.services.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

SUPERSEDED_MESSAGE = "This response was superseded by a newer message."
PROACTIVE_PROMPT = (
    "Proactively review this user's targets, team and rankings and brief them on what needs attention right now."
)

PERSONA_OVERRIDES = ("model", "temperature", "top_p", "max_tokens", "presence_penalty", "frequency_penalty")


class PreparedChat(BaseModel):
    """Everything the primary backend needs for one request."""

    employee: Employee
    grant: AccessGrant
    ctx: ToolContext
    session: ConversationSession
    system_prompt: str
    messages: List[Dict[str, Any]]
    user_message: Optional[str] = None
    is_proactive: bool = False
    overrides: Dict[str, Any] = Field(default_factory=dict)


class ChatReply(BaseModel):
    reply: str
    conversation_id: str
    model: Optional[str] = None
    tokens_used: int = 0
    data_sources: List[str] = Field(default_factory=list)
    degraded: bool = False

    def to_wire(self) -> Dict[str, Any]:
        payload = {
            "reply": self.reply,
            "conversationId": self.conversation_id,
            "model": self.model,
            "tokensUsed": self.tokens_used,
            "dataSources": self.data_sources,
        }
        if self.degraded:
            payload["degraded"] = True
        return payload


class InFlightRegistry:
    """At most one running response task per conversation; the newest wins."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    async def cancel(self, conversation_id: str) -> None:
        # Re-check after every wait: another request may have registered meanwhile
        while True:
            task = self._tasks.get(conversation_id)
            if task is None or task.done():
                return
            task.cancel()
            logger.info("Cancelling in-flight response", conversation_id=conversation_id)
            await asyncio.wait({task})

    async def start(self, conversation_id: str, coro: Coroutine) -> asyncio.Task:
        await self.cancel(conversation_id)
        task = asyncio.create_task(coro)
        self._tasks[conversation_id] = task
        task.add_done_callback(lambda t: self._discard(conversation_id, t))
        return task

    def _discard(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(conversation_id) is task:
            del self._tasks[conversation_id]

    def __contains__(self, conversation_id: str) -> bool:
        task = self._tasks.get(conversation_id)
        return task is not None and not task.done()


class EventRelay:
    """Runs an event producer as a task and hands its events to the HTTP stream."""

    def __init__(self, events: AsyncIterator[StreamEvent]):
        self.events = events
        self.queue: asyncio.Queue = asyncio.Queue()
        self.terminal_sent = False

    async def run(self) -> None:
        async for event in self.events:
            if self.terminal_sent:
                break
            self.terminal_sent = event.is_terminal
            self.queue.put_nowait(event)

    def finished(self, task: asyncio.Task) -> None:
        if not self.terminal_sent:
            if task.cancelled():
                message = SUPERSEDED_MESSAGE
            elif task.exception() is not None:
                message = str(task.exception()) or "Stream error"
            else:
                message = None
            if message:
                self.queue.put_nowait(StreamEvent.error_event(message))
                self.terminal_sent = True
        self.queue.put_nowait(None)

    async def __aiter__(self):
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event


class ChatService:
    """Orchestrates the primary backend: tool loop, streaming and persistence."""

    def __init__(
        self,
        client: ChatCompletionClient,
        tool_registry: ToolRegistry,
        access_service: AccessService,
        conversation_service: ConversationService,
        stream_adapter: StreamAdapter,
        settings: AgentSettings,
        today: Callable[[], date] = date.today,
    ):
        self.client = client
        self.tool_registry = tool_registry
        self.access_service = access_service
        self.conversations = conversation_service
        self.stream_adapter = stream_adapter
        self.settings = settings
        self.today = today
        self.in_flight = InFlightRegistry()
        self.tool_loop = ToolLoop(
            client,
            tool_registry,
            max_rounds=settings.max_tool_rounds,
            parallel_tool_calls=settings.parallel_tool_calls,
        )

    async def prepare(
        self,
        employee: Employee,
        grant: AccessGrant,
        message: Optional[str] = None,
        conversation_id: Optional[str] = None,
        is_proactive: bool = False,
    ) -> PreparedChat:
        """Resolve the session, scope, history and system prompt for one request."""
        ctx = await self.access_service.build_tool_context(employee, grant)
        session = await self.conversations.get_or_create(
            employee,
            conversation_id,
            first_message=message,
            is_proactive=is_proactive,
            persona_id=grant.persona.id if grant.persona else None,
        )
        # a new message supersedes the running response before its history is read
        await self.in_flight.cancel(session.id)
        history = await self.conversations.load_recent_turns(session.id, employee.id, self.settings.history_limit)
        memory = await self.conversations.load_memory(employee.id)

        system_prompt = build_system_prompt(
            SystemPromptConfig.from_grant(
                employee,
                grant,
                today=self.today(),
                memory=memory,
                default_agent_name=self.settings.default_agent_name,
            )
        )
        messages: List[Dict[str, Any]] = [{"role": MessageRole.SYSTEM.value, "content": system_prompt}]
        messages.extend(m.to_llm_message() for m in history)
        if message:
            messages.append({"role": MessageRole.USER.value, "content": message})
        elif is_proactive:
            messages.append({"role": MessageRole.SYSTEM.value, "content": PROACTIVE_PROMPT})

        overrides = {}
        if grant.persona:
            overrides = {
                name: getattr(grant.persona, name)
                for name in PERSONA_OVERRIDES
                if getattr(grant.persona, name) is not None
            }

        logger.info(
            "Chat request prepared",
            conversation_id=session.id,
            employee_id=employee.id,
            row_scope=grant.row_scope.value,
            visible_identities="all" if ctx.visible.everyone else len(ctx.visible),
            history_messages=len(history),
            memory_items=len(memory),
            is_proactive=is_proactive,
        )
        return PreparedChat(
            employee=employee,
            grant=grant,
            ctx=ctx,
            session=session,
            system_prompt=system_prompt,
            messages=messages,
            user_message=message,
            is_proactive=is_proactive,
            overrides=overrides,
        )

    def _model_name(self, prepared: PreparedChat) -> str:
        return prepared.overrides.get("model") or self.client.settings.model

    async def _persist(self, prepared: PreparedChat, reply: ReplyState) -> None:
        await self.conversations.append_turn(
            prepared.session.id,
            prepared.employee.id,
            ConversationTurn(
                user_message=prepared.user_message,
                assistant_message=reply.text,
                tokens_used=reply.tokens_used,
                model_used=reply.model,
                data_sources=unique_sources(reply.evidence),
                is_proactive=prepared.is_proactive,
            ),
        )

    async def chat(self, prepared: PreparedChat) -> ChatReply:
        """Answer in one JSON reply. An unavailable backend yields a degraded, unpersisted reply."""
        reply = ReplyState(
            engine=self.client.engine_id,
            conversation_id=prepared.session.id,
            model=self._model_name(prepared),
        )
        try:
            result = await self.tool_loop.run_to_text(prepared.messages, prepared.ctx, **prepared.overrides)
        except UpstreamUnavailable as e:
            logger.warning("Primary backend unavailable", conversation_id=prepared.session.id, error=e.message)
            return ChatReply(
                reply=f"{DEGRADED_PREFIX}{e.message}",
                conversation_id=prepared.session.id,
                model=reply.model,
                degraded=True,
            )

        reply.parts.append(result.text)
        reply.tokens_used = result.tokens_used
        reply.evidence = result.evidence
        reply.model = result.model or reply.model
        await self._persist(prepared, reply)
        return ChatReply(
            reply=result.text,
            conversation_id=prepared.session.id,
            model=reply.model,
            tokens_used=result.tokens_used,
            data_sources=unique_sources(result.evidence),
        )

    def events(self, prepared: PreparedChat) -> AsyncIterator[StreamEvent]:
        """Primary response as events; the `done` event carries the hand-off for the secondary engines."""
        reply = ReplyState(
            engine=self.client.engine_id,
            conversation_id=prepared.session.id,
            model=self._model_name(prepared),
            handoff=True,
        )
        reply.system_prompt = prepared.system_prompt

        async def persist(state: ReplyState) -> None:
            await self._persist(prepared, state)

        fragments = self.tool_loop.answer_fragments(
            prepared.messages,
            prepared.ctx,
            reply,
            OpenAIStreamSource(self.client),
            self.stream_adapter,
            **prepared.overrides,
        )
        return self.stream_adapter.respond(reply, fragments, on_complete=persist)

    async def stream_chat(self, prepared: PreparedChat) -> AsyncIterator[StreamEvent]:
        """Stream the primary response, superseding any response in flight for the conversation."""
        relay = EventRelay(self.events(prepared))
        task = await self.in_flight.start(prepared.session.id, relay.run())
        task.add_done_callback(relay.finished)
        try:
            async for event in relay:
                yield event
        finally:
            if not task.done():
                task.cancel()
