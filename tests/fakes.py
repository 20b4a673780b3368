import asyncio
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from fundsagent.exceptions import UpstreamUnavailable


def text_response(text: str, tokens: int = 12, model: str = "gpt-test") -> Dict[str, Any]:
    return {
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"total_tokens": tokens},
    }


def tool_call_response(*calls, tokens: int = 20, model: str = "gpt-test") -> Dict[str, Any]:
    """`calls` are (name, arguments) pairs; arguments may be a dict or a raw string."""
    tool_calls = []
    for index, (name, arguments) in enumerate(calls):
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        tool_calls.append({
            "id": f"call_{index}_{name}",
            "type": "function",
            "function": {"name": name, "arguments": raw},
        })
    return {
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": None, "tool_calls": tool_calls},
            "finish_reason": "tool_calls",
        }],
        "usage": {"total_tokens": tokens},
    }


def text_chunk(text: str, model: str = "gpt-test") -> Dict[str, Any]:
    return {"model": model, "choices": [{"index": 0, "delta": {"content": text}}]}


def usage_chunk(tokens: int) -> Dict[str, Any]:
    return {"choices": [], "usage": {"total_tokens": tokens}}


def reasoning_chunk(text: str) -> Dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"reasoning_content": text}}]}


def tool_call_chunk(name: str) -> Dict[str, Any]:
    return {
        "choices": [{
            "index": 0,
            "delta": {"tool_calls": [{"index": 0, "id": "call_x", "function": {"name": name, "arguments": ""}}]},
        }]
    }


class Blocked:
    """A scripted response that waits until released (or cancelled)."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def wait(self):
        self.entered.set()
        await self.release.wait()


class FakeChatClient:
    """Stands in for ChatCompletionClient: replays scripted responses and records every call."""

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        streams: Optional[List[List[Any]]] = None,
        engine_id: str = "primary",
        display_name: str = "FundsAgent",
        model: str = "gpt-test",
        configured: bool = True,
    ):
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.settings = SimpleNamespace(model=model, engine_id=engine_id, display_name=display_name)
        self.configured = configured
        self.calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    @property
    def engine_id(self) -> str:
        return self.settings.engine_id

    @property
    def display_name(self) -> str:
        return self.settings.display_name

    def _check_configured(self):
        if not self.configured:
            raise UpstreamUnavailable(f"{self.display_name} is not configured.", engine=self.engine_id)

    async def create_chat_completion(self, messages, tools=None, tool_choice=None, **overrides):
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "tool_choice": tool_choice,
            "overrides": overrides,
        })
        self._check_configured()
        if not self.responses:
            raise AssertionError("FakeChatClient has no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Blocked):
            await response.wait()
            response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def stream_chat_completion(self, messages, tools=None, tool_choice=None, **overrides):
        self.stream_calls.append({
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "tool_choice": tool_choice,
            "overrides": overrides,
        })
        self._check_configured()
        chunks = self.streams.pop(0) if self.streams else []
        for chunk in chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    async def close(self):
        pass


async def collect(events) -> List[Any]:
    return [event async for event in events]


def token_text(events) -> str:
    return "".join(e.token for e in events if e.type.value == "token")
