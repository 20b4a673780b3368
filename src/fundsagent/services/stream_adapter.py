"""
Stream protocol adapter.

Each backend has a thin StreamSource that turns its raw streamed chunks into
text fragments. StreamAdapter wraps any producer of fragments into the
client-facing event vocabulary and owns the termination contract: exactly one
`done` or `error` per response, and the `done` reply is always the
concatenation of the emitted tokens.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union
import structlog

from fundsagent.clients.llm_client import ChatCompletionClient
from fundsagent.config.settings import StreamSettings
from fundsagent.exceptions import MalformedUpstreamChunk, UpstreamUnavailable
from fundsagent.models.message import ToolResult, handoff_evidence, unique_sources
from fundsagent.models.stream import StreamEvent, StreamEventType

logger = structlog.get_logger(__name__)

DEGRADED_PREFIX = "⚠️ "

RawChunk = Union[Dict[str, Any], str, bytes]


class ReplyState:
    """Accumulates one response: emitted text, token cost and done-event metadata."""

    def __init__(
        self,
        engine: Optional[str] = None,
        conversation_id: Optional[str] = None,
        model: Optional[str] = None,
        handoff: bool = False,
    ):
        self.parts: List[str] = []
        self.tokens_used = 0
        self.evidence: List[ToolResult] = []
        self.engine = engine
        self.conversation_id = conversation_id
        self.model = model
        self.degraded = False
        self.system_prompt: Optional[str] = None
        # primary responses hand their evidence and prompt over to the secondary engines
        self.handoff = handoff

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def done_event(self) -> StreamEvent:
        return StreamEvent(
            type=StreamEventType.DONE,
            reply=self.text,
            conversation_id=self.conversation_id,
            tokens_used=self.tokens_used,
            data_sources=unique_sources(self.evidence),
            engine=self.engine,
            model=self.model,
            degraded=self.degraded,
            tool_results_for_engines=handoff_evidence(self.evidence) if self.handoff else None,
            system_prompt=self.system_prompt if self.handoff else None,
        )


class StreamSource(ABC):
    """Per-backend parsing of streamed completion chunks."""

    def __init__(self, client: ChatCompletionClient):
        self.client = client

    def decode(self, raw: RawChunk) -> Optional[Dict[str, Any]]:
        """Decode a dict, a JSON string or an SSE `data:` line; None for keep-alives and [DONE]."""
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedUpstreamChunk(str(e)) from e
        if not isinstance(raw, str):
            raise MalformedUpstreamChunk(f"Unsupported chunk type {type(raw).__name__}")

        data = raw.strip()
        if data.startswith("data:"):
            data = data[len("data:"):].strip()
        if not data or data == "[DONE]" or data.startswith(":"):
            return None
        try:
            chunk = json.loads(data)
        except ValueError as e:
            raise MalformedUpstreamChunk(f"Invalid JSON chunk: {data[:80]}") from e
        if not isinstance(chunk, dict):
            raise MalformedUpstreamChunk("Chunk is not a JSON object")
        return chunk

    def delta(self, chunk: Dict[str, Any]) -> Dict[str, Any]:
        choices = chunk.get("choices") or []
        if not choices:
            return {}
        return choices[0].get("delta") or {}

    @abstractmethod
    def extract_text(self, chunk: Dict[str, Any]) -> str:
        """Answer text carried by one decoded chunk."""

    def extract_tokens(self, chunk: Dict[str, Any]) -> int:
        usage = chunk.get("usage") or {}
        return usage.get("total_tokens") or 0

    async def stream_text(
        self,
        messages: List[Dict[str, Any]],
        reply: ReplyState,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        **overrides,
    ) -> AsyncIterator[str]:
        """Yield answer text in generation order; malformed chunks are dropped."""
        dropped = 0
        async for raw in self.client.stream_chat_completion(messages, tools=tools, tool_choice=tool_choice, **overrides):
            try:
                chunk = self.decode(raw)
                if chunk is None:
                    continue
                text = self.extract_text(chunk)
                tokens = self.extract_tokens(chunk)
            except (MalformedUpstreamChunk, AttributeError, TypeError, IndexError) as e:
                dropped += 1
                logger.debug("Dropped malformed chunk", engine=self.client.engine_id, error=str(e))
                continue
            if chunk.get("model"):
                reply.model = chunk["model"]
            if tokens:
                reply.tokens_used += tokens
            if text:
                yield text
        if dropped:
            logger.warning("Stream had malformed chunks", engine=self.client.engine_id, dropped=dropped)


class OpenAIStreamSource(StreamSource):
    def extract_text(self, chunk):
        return self.delta(chunk).get("content") or ""


class DeepSeekStreamSource(StreamSource):
    """DeepSeek deltas may carry `reasoning_content`; only the answer is forwarded."""

    def extract_text(self, chunk):
        delta = self.delta(chunk)
        if delta.get("reasoning_content") and not delta.get("content"):
            return ""
        return delta.get("content") or ""


class XAIStreamSource(StreamSource):
    """
    xAI reasoning models stream `reasoning_content` ahead of the answer.

    Tool use is disabled for this backend; tool-call deltas are discarded and
    remembered so the caller can force a text-only answer.
    """

    def __init__(self, client: ChatCompletionClient):
        super().__init__(client)
        self.tool_call_attempted = False

    def extract_text(self, chunk):
        delta = self.delta(chunk)
        if delta.get("tool_calls"):
            self.tool_call_attempted = True
        return delta.get("content") or ""


class StreamAdapter:
    """Turns fragment producers into token/done/error event streams."""

    def __init__(self, settings: StreamSettings):
        self.settings = settings

    async def replay(self, text: str) -> AsyncIterator[str]:
        """Re-emit an already known answer as small fragments at a bounded rate."""
        size = self.settings.replay_chunk_size
        delay = self.settings.replay_delay_ms / 1000
        for start in range(0, len(text), size):
            if start and delay:
                await asyncio.sleep(delay)
            yield text[start:start + size]

    async def respond(
        self,
        reply: ReplyState,
        fragments: AsyncIterator[str],
        on_complete: Optional[Callable[[ReplyState], Awaitable[None]]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Emit one token per fragment, then exactly one terminal event.

        UpstreamUnavailable degrades to a single explanatory token plus `done`;
        any other failure ends the stream with `error`. `on_complete` runs
        before the `done` of a successful response.
        """
        try:
            async for fragment in fragments:
                if fragment:
                    reply.parts.append(fragment)
                    yield StreamEvent.token_event(fragment)
            if on_complete is not None:
                await on_complete(reply)
        except UpstreamUnavailable as e:
            logger.warning(
                "Backend unavailable, degrading response",
                engine=reply.engine,
                conversation_id=reply.conversation_id,
                error=e.message,
                status_code=e.status_code,
            )
            notice = f"{DEGRADED_PREFIX}{e.message}"
            reply.parts.append(notice)
            reply.degraded = True
            yield StreamEvent.token_event(notice)
            yield reply.done_event()
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Response stream failed",
                engine=reply.engine,
                conversation_id=reply.conversation_id,
                error=str(e),
                exc_info=True,
            )
            yield StreamEvent.error_event(str(e) or "Stream error")
            return
        yield reply.done_event()
