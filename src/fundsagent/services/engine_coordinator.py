"""
Engine coordinator for the secondary reasoning backends.

The client invokes the secondary engines after it has seen the primary
`done` event, handing back the system prompt and evidence that event carried.
Engine 2 runs its own bounded tool loop under the caller's access scope;
engine 3 only analyses the evidence it is given and never calls tools. Each
engine is an independent request with its own degraded fallback and nothing
it produces is persisted.
"""

import json
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple
import structlog

from fundsagent.clients.llm_client import ChatCompletionClient
from fundsagent.config.settings import AgentSettings
from fundsagent.exceptions import UpstreamUnavailable
from fundsagent.models.access import AccessGrant, Employee, ToolContext
from fundsagent.models.message import MessageRole, ToolResult
from fundsagent.models.stream import StreamEvent
from fundsagent.services.conversation_service import ConversationService
from fundsagent.services.prompt_builder import SystemPromptConfig, build_engine_prompt, build_system_prompt
from fundsagent.services.stream_adapter import (
    DeepSeekStreamSource,
    ReplyState,
    StreamAdapter,
    XAIStreamSource,
)
from fundsagent.services.tool_loop import ToolLoop, first_message, total_tokens
from fundsagent.services.tool_registry import ToolName, ToolRegistry

logger = structlog.get_logger(__name__)

TEXT_ONLY_NUDGE = (
    "Tools are not available to you. Answer now in plain text, using only the data provided in this conversation."
)
CONVERSATION_ROLES = (MessageRole.USER.value, MessageRole.ASSISTANT.value)


def evidence_results(evidence: List[Dict[str, Any]]) -> List[ToolResult]:
    """Hand-off evidence entries (`{tool, arguments, result}`) as tool results."""
    results = []
    for index, entry in enumerate(evidence):
        if not isinstance(entry, dict) or not entry.get("tool"):
            continue
        payload = entry.get("result")
        results.append(ToolResult(
            tool_call_id=f"evidence_{index}",
            name=str(entry["tool"]),
            arguments=entry.get("arguments") if isinstance(entry.get("arguments"), dict) else {},
            payload=payload if isinstance(payload, dict) else {"result": payload},
        ))
    return results


def _tool_output(content: Any) -> Any:
    if isinstance(content, str):
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            return content
    return content


def split_handoff(messages: List[Any]) -> Tuple[List[Dict[str, str]], List[Dict[str, Any]]]:
    """
    Separate a client hand-off into conversation turns and evidence.

    The client forwards the primary's `toolResultsForEngines` as `messages`, so
    entries may be `{tool, arguments, result}` evidence, tool-role messages or
    ordinary user/assistant turns. System entries and anything unrecognised
    are dropped.
    """
    history: List[Dict[str, str]] = []
    evidence: List[Dict[str, Any]] = []
    for entry in messages:
        if not isinstance(entry, dict):
            continue
        if entry.get("tool"):
            evidence.append(entry)
        elif entry.get("role") == MessageRole.TOOL.value:
            evidence.append({
                "tool": entry.get("name") or entry.get("tool_call_id") or MessageRole.TOOL.value,
                "arguments": {},
                "result": _tool_output(entry.get("content")),
            })
        elif entry.get("role") in CONVERSATION_ROLES and isinstance(entry.get("content"), str):
            history.append({"role": entry["role"], "content": entry["content"]})
    return history, evidence


class SecondaryEngine(ABC):
    """One secondary backend: how it is prompted and how it produces its answer."""

    def __init__(self, client: ChatCompletionClient, adapter: StreamAdapter):
        self.client = client
        self.adapter = adapter

    @property
    def engine_id(self) -> str:
        return self.client.engine_id

    def system_prompt(self, base_prompt: str, evidence: List[Dict[str, Any]]) -> str:
        return build_engine_prompt(base_prompt, self.engine_id, evidence=evidence)

    @abstractmethod
    def fragments(
        self,
        messages: List[Dict[str, Any]],
        ctx: ToolContext,
        reply: ReplyState,
        evidence: List[Dict[str, Any]],
    ) -> AsyncIterator[str]:
        """Answer text in generation order."""


class ToolLoopEngine(SecondaryEngine):
    """Fetches its own evidence through an independent tool loop."""

    def __init__(
        self,
        client: ChatCompletionClient,
        adapter: StreamAdapter,
        registry: ToolRegistry,
        settings: AgentSettings,
    ):
        super().__init__(client, adapter)
        self.loop = ToolLoop(
            client,
            registry,
            max_rounds=settings.max_tool_rounds,
            parallel_tool_calls=settings.parallel_tool_calls,
            exclude=(ToolName.GET_ORG_STRUCTURE,),
        )

    def fragments(self, messages, ctx, reply, evidence):
        return self.loop.answer_fragments(messages, ctx, reply, DeepSeekStreamSource(self.client), self.adapter)


class AnalysisEngine(SecondaryEngine):
    """Analyses the primary's evidence with tool use disabled."""

    async def fragments(self, messages, ctx, reply, evidence):
        reply.evidence = evidence_results(evidence)
        source = XAIStreamSource(self.client)
        emitted = False
        async for fragment in source.stream_text(messages, reply):
            emitted = True
            yield fragment
        if emitted:
            return

        # Tool calls (or an empty answer) are discarded and a text-only completion is forced
        logger.warning(
            "Analysis engine produced no text, forcing a text-only answer",
            engine=self.engine_id,
            tool_call_attempted=source.tool_call_attempted,
        )
        response = await self.client.create_chat_completion(
            messages + [{"role": MessageRole.SYSTEM.value, "content": TEXT_ONLY_NUDGE}]
        )
        reply.tokens_used += total_tokens(response)
        text = first_message(response, self.client.display_name).get("content") or ""
        if not text:
            raise UpstreamUnavailable(f"{self.client.display_name} could not complete the analysis.")
        async for fragment in self.adapter.replay(text):
            yield fragment


class EngineCoordinator:
    """Routes secondary-engine requests and assembles their context."""

    def __init__(
        self,
        engines: Dict[str, SecondaryEngine],
        conversation_service: ConversationService,
        adapter: StreamAdapter,
        settings: AgentSettings,
        today: Callable[[], date] = date.today,
    ):
        self.engines = engines
        self.conversations = conversation_service
        self.adapter = adapter
        self.settings = settings
        self.today = today

    def __contains__(self, engine_id: str) -> bool:
        return engine_id in self.engines

    async def _history(
        self,
        employee: Employee,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str],
    ) -> List[Dict[str, Any]]:
        if messages:
            return messages
        if not conversation_id:
            return []
        recent = await self.conversations.load_recent_turns(
            conversation_id, employee.id, self.settings.engine_history_limit
        )
        return [m.to_llm_message() for m in recent]

    async def _base_prompt(self, employee: Employee, grant: AccessGrant) -> str:
        memory = await self.conversations.load_memory(employee.id)
        return build_system_prompt(
            SystemPromptConfig.from_grant(
                employee, grant, today=self.today(), memory=memory,
                default_agent_name=self.settings.default_agent_name,
            )
        )

    async def events(
        self,
        engine_id: str,
        ctx: ToolContext,
        user_message: Optional[str] = None,
        system_prompt: Optional[str] = None,
        messages: Optional[List[Dict[str, Any]]] = None,
        conversation_id: Optional[str] = None,
        evidence: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream one secondary engine's answer.

        Args:
            engine_id: "engine2" or "engine3"
            ctx: Caller's access scope
            user_message: The question the primary answered
            system_prompt: Prompt from the primary hand-off; rebuilt for the caller when absent
            messages: Client hand-off: prior turns and/or the primary's evidence entries;
                the last few stored turns are used when it carries no turns
            conversation_id: Conversation the hand-off belongs to
            evidence: Additional primary tool results as `{tool, arguments, result}`
        """
        engine = self.engines[engine_id]
        turns, handed_over = split_handoff(messages or [])
        evidence = [*(evidence or []), *handed_over]
        reply = ReplyState(engine=engine_id, conversation_id=conversation_id, model=engine.client.settings.model)

        async def fragments():
            base_prompt = system_prompt or await self._base_prompt(ctx.employee, ctx.grant)
            history = await self._history(ctx.employee, turns, conversation_id)
            llm_messages: List[Dict[str, Any]] = [
                {"role": MessageRole.SYSTEM.value, "content": engine.system_prompt(base_prompt, evidence)}
            ]
            llm_messages.extend(history)
            if user_message and not (history and history[-1] == {"role": "user", "content": user_message}):
                llm_messages.append({"role": MessageRole.USER.value, "content": user_message})

            logger.info(
                "Secondary engine request",
                engine=engine_id,
                conversation_id=conversation_id,
                employee_id=ctx.employee.id,
                history_messages=len(history),
                evidence_items=len(evidence),
            )
            async for fragment in engine.fragments(llm_messages, ctx, reply, evidence):
                yield fragment

        async for event in self.adapter.respond(reply, fragments()):
            yield event
