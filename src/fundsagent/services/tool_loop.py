"""
Bounded tool-calling loop.

One ToolLoop run drives a reasoning backend through
AwaitingModel -> (ToolCallsRequested -> Executing -> AwaitingModel)* and stops
in FINAL_TEXT when the backend answers without requesting tools, or in
ROUNDS_EXHAUSTED once the round budget is spent. Every model call in the loop
is non-streaming; the caller decides how the final answer is delivered.
"""

from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from pydantic import BaseModel, Field
import structlog

from fundsagent.clients.llm_client import ChatCompletionClient
from fundsagent.exceptions import UpstreamUnavailable
from fundsagent.models.access import ToolContext
from fundsagent.models.message import MessageRole, ToolCall, ToolResult
from fundsagent.models.stream import EngineRunResult
from fundsagent.services.stream_adapter import ReplyState, StreamAdapter, StreamSource
from fundsagent.services.tool_registry import ToolName, ToolRegistry

logger = structlog.get_logger(__name__)


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING = "executing"
    FINAL_TEXT = "final_text"
    ROUNDS_EXHAUSTED = "rounds_exhausted"


class LoopOutcome(BaseModel):
    """Where a loop run stopped and everything it accumulated on the way."""

    state: LoopState
    text: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    evidence: List[ToolResult] = Field(default_factory=list)
    tokens_used: int = 0
    rounds: int = 0
    model: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.state == LoopState.ROUNDS_EXHAUSTED

    def to_result(self, text: str, extra_tokens: int = 0) -> EngineRunResult:
        return EngineRunResult(
            text=text,
            tokens_used=self.tokens_used + extra_tokens,
            evidence=self.evidence,
            rounds=self.rounds,
            exhausted=self.exhausted,
            model=self.model,
        )


def first_message(response: Dict[str, Any], display_name: str) -> Dict[str, Any]:
    """The assistant message of a completion; a response without one counts as unavailable."""
    choices = response.get("choices") or []
    message = choices[0].get("message") if choices else None
    if not message:
        raise UpstreamUnavailable(f"{display_name} returned an empty response.")
    return message


def total_tokens(response: Dict[str, Any]) -> int:
    usage = response.get("usage") or {}
    return usage.get("total_tokens") or 0


class ToolLoop:
    """Runs one request against one backend with a fixed round budget."""

    def __init__(
        self,
        client: ChatCompletionClient,
        registry: ToolRegistry,
        max_rounds: int = 5,
        parallel_tool_calls: bool = False,
        exclude: Iterable[ToolName] = (),
    ):
        self.client = client
        self.registry = registry
        self.max_rounds = max(1, max_rounds)
        self.parallel_tool_calls = parallel_tool_calls
        self.exclude = tuple(exclude)

    async def run(self, messages: List[Dict[str, Any]], ctx: ToolContext, **overrides) -> LoopOutcome:
        """
        Drive the backend until it answers in text or the budget is spent.

        Args:
            messages: System prompt, prior turns and the new user message
            ctx: Access scope every tool call runs under
            **overrides: Per-request model parameters

        Returns:
            LoopOutcome; in ROUNDS_EXHAUSTED `messages` and `tools` are ready
            for one final call with tool use disabled
        """
        tools = self.registry.definitions(ctx.grant, self.exclude)
        outcome = LoopOutcome(state=LoopState.AWAITING_MODEL, messages=list(messages), tools=tools)

        while outcome.rounds < self.max_rounds:
            response = await self.client.create_chat_completion(
                outcome.messages,
                tools=tools or None,
                tool_choice="auto" if tools else None,
                **overrides,
            )
            outcome.tokens_used += total_tokens(response)
            outcome.model = response.get("model") or outcome.model
            message = first_message(response, self.client.display_name)

            calls = [ToolCall.from_completion(tc) for tc in message.get("tool_calls") or []]
            if not calls:
                outcome.state = LoopState.FINAL_TEXT
                outcome.text = message.get("content") or ""
                logger.info(
                    "Tool loop finished",
                    engine=self.client.engine_id,
                    rounds=outcome.rounds,
                    tool_calls=len(outcome.evidence),
                    tokens_used=outcome.tokens_used,
                )
                return outcome

            outcome.rounds += 1
            outcome.state = LoopState.EXECUTING
            logger.info(
                "Tool round requested",
                engine=self.client.engine_id,
                round=outcome.rounds,
                tools=[c.name for c in calls],
            )
            outcome.messages.append({
                "role": MessageRole.ASSISTANT.value,
                "content": message.get("content"),
                "tool_calls": [c.to_completion() for c in calls],
            })
            results = await self.registry.execute_all(
                calls, ctx, exclude=self.exclude, parallel=self.parallel_tool_calls
            )
            outcome.evidence.extend(results)
            outcome.messages.extend(r.to_llm_message() for r in results)
            outcome.state = LoopState.AWAITING_MODEL

        outcome.state = LoopState.ROUNDS_EXHAUSTED
        logger.warning(
            "Tool round budget exhausted",
            engine=self.client.engine_id,
            max_rounds=self.max_rounds,
            tool_calls=len(outcome.evidence),
        )
        return outcome

    async def finalize(self, outcome: LoopOutcome, **overrides) -> EngineRunResult:
        """Non-streaming completion of an outcome; exhausted runs get one text-only call."""
        if outcome.state == LoopState.FINAL_TEXT:
            if not outcome.text:
                raise UpstreamUnavailable(f"{self.client.display_name} returned an empty response.")
            return outcome.to_result(outcome.text)

        response = await self.client.create_chat_completion(
            outcome.messages,
            tools=outcome.tools or None,
            tool_choice="none",
            **overrides,
        )
        outcome.model = response.get("model") or outcome.model
        message = first_message(response, self.client.display_name)
        text = message.get("content") or ""
        if not text:
            raise UpstreamUnavailable(f"{self.client.display_name} could not complete the analysis.")
        return outcome.to_result(text, extra_tokens=total_tokens(response))

    async def run_to_text(self, messages: List[Dict[str, Any]], ctx: ToolContext, **overrides) -> EngineRunResult:
        outcome = await self.run(messages, ctx, **overrides)
        return await self.finalize(outcome, **overrides)

    async def answer_fragments(
        self,
        messages: List[Dict[str, Any]],
        ctx: ToolContext,
        reply: ReplyState,
        source: StreamSource,
        adapter: StreamAdapter,
        **overrides,
    ) -> AsyncIterator[str]:
        """
        Run the loop and yield the answer as text fragments.

        A text answer reached inside the loop is replayed synthetically rather
        than requested again; an exhausted run streams one final call with tool
        use disabled.
        """
        outcome = await self.run(messages, ctx, **overrides)
        reply.tokens_used += outcome.tokens_used
        reply.evidence = list(outcome.evidence)
        reply.model = outcome.model or reply.model

        if outcome.state == LoopState.FINAL_TEXT:
            if not outcome.text:
                raise UpstreamUnavailable(f"{self.client.display_name} returned an empty response.")
            async for fragment in adapter.replay(outcome.text):
                yield fragment
            return

        emitted = False
        async for fragment in source.stream_text(
            outcome.messages, reply, tools=outcome.tools or None, tool_choice="none", **overrides
        ):
            emitted = True
            yield fragment
        if not emitted:
            raise UpstreamUnavailable(f"{self.client.display_name} could not complete the analysis.")
