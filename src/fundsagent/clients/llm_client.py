"""
Chat completion client for OpenAI-compatible backends.

One client class serves the primary backend (OpenAI) and both secondary
backends (DeepSeek, xAI); they differ only in settings. Every call has a
bounded wait, transient failures are retried with tenacity, and anything the
caller cannot recover from is raised as UpstreamUnavailable carrying a
user-facing message.
"""

from typing import Optional, Dict, Any, List, AsyncIterator
import openai
from openai import AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)
import structlog

from fundsagent.config.settings import LLMBackendSettings
from fundsagent.exceptions import UpstreamUnavailable

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def describe_upstream_error(exc: BaseException, display_name: str) -> str:
    """Map an upstream failure to the message shown to the user."""
    if isinstance(exc, openai.APITimeoutError):
        return f"{display_name} timed out."
    if isinstance(exc, openai.APIConnectionError):
        return f"{display_name} could not connect."
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status in (400, 401, 403):
            return f"{display_name} is not authorised. Check its API key."
        if status == 402:
            return f"{display_name} is temporarily unavailable (insufficient credits)."
        return f"{display_name} error (status {status})."
    return f"{display_name} is temporarily unavailable."


class ChatCompletionClient:
    """
    Async chat completion client with retry logic and error mapping.

    This client handles:
    - Lazy creation of the underlying AsyncOpenAI client
    - Non-streaming completions for tool-calling rounds
    - Streaming completions yielding raw chunk dicts
    - Mapping transport and status failures to UpstreamUnavailable
    """

    def __init__(self, settings: LLMBackendSettings):
        self.settings = settings
        self._client: Optional[AsyncOpenAI] = None

        logger.info(
            "Initializing chat completion client",
            engine=settings.engine_id,
            base_url=settings.base_url,
            model=settings.model,
            configured=self.is_configured,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.api_key)

    @property
    def engine_id(self) -> str:
        return self.settings.engine_id

    @property
    def display_name(self) -> str:
        return self.settings.display_name

    def _get_client(self) -> AsyncOpenAI:
        if not self.is_configured:
            raise UpstreamUnavailable(
                f"{self.settings.display_name} is not configured.",
                engine=self.settings.engine_id,
            )
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.api_key,
                base_url=self.settings.base_url,
                timeout=self.settings.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def _build_request(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        tool_choice: Optional[str],
        overrides: Dict[str, Any],
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": overrides.get("model") or self.settings.model,
            "messages": messages,
            "temperature": _pick(overrides.get("temperature"), self.settings.temperature),
            "top_p": _pick(overrides.get("top_p"), self.settings.top_p),
            "max_tokens": overrides.get("max_tokens") or self.settings.max_tokens,
        }
        # penalties are omitted when zero
        presence = _pick(overrides.get("presence_penalty"), self.settings.presence_penalty)
        frequency = _pick(overrides.get("frequency_penalty"), self.settings.frequency_penalty)
        if presence:
            request["presence_penalty"] = presence
        if frequency:
            request["frequency_penalty"] = frequency
        if tools:
            request["tools"] = tools
            request["tool_choice"] = tool_choice or "auto"
        return request

    async def _create(self, request: Dict[str, Any]):
        client = self._get_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.max_retries)),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        ):
            with attempt:
                return await client.chat.completions.create(**request)

    async def create_chat_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        **overrides,
    ) -> Dict[str, Any]:
        """
        Create a non-streaming chat completion.

        Args:
            messages: OpenAI-format messages
            tools: Optional function tool definitions
            tool_choice: "auto" or "none"; only sent together with tools
            **overrides: Per-request model parameters (persona settings)

        Returns:
            The completion as a plain dict
        """
        request = self._build_request(messages, tools, tool_choice, overrides)
        try:
            response = await self._create(request)
        except UpstreamUnavailable:
            raise
        except openai.OpenAIError as e:
            logger.error(
                "Chat completion failed",
                engine=self.settings.engine_id,
                model=request["model"],
                message_count=len(messages),
                error=str(e),
            )
            raise UpstreamUnavailable(
                describe_upstream_error(e, self.settings.display_name),
                status_code=getattr(e, "status_code", None),
                engine=self.settings.engine_id,
            ) from e

        logger.debug(
            "Chat completion created",
            engine=self.settings.engine_id,
            model=request["model"],
            message_count=len(messages),
            usage=response.usage.model_dump() if response.usage else None,
        )
        return response.model_dump()

    async def stream_chat_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        **overrides,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Stream a chat completion, yielding each raw chunk as a dict."""
        request = self._build_request(messages, tools, tool_choice, overrides)
        request["stream"] = True
        if self.settings.stream_usage:
            request["stream_options"] = {"include_usage": True}

        try:
            stream = await self._create(request)
            async for chunk in stream:
                yield chunk.model_dump()
        except UpstreamUnavailable:
            raise
        except openai.OpenAIError as e:
            logger.error(
                "Streamed completion failed",
                engine=self.settings.engine_id,
                model=request["model"],
                error=str(e),
            )
            raise UpstreamUnavailable(
                describe_upstream_error(e, self.settings.display_name),
                status_code=getattr(e, "status_code", None),
                engine=self.settings.engine_id,
            ) from e

    async def close(self):
        """Close the client and clean up resources."""
        if self._client:
            await self._client.close()
            self._client = None
        logger.info("Chat completion client closed", engine=self.settings.engine_id)


def _pick(value, default):
    return default if value is None else value
