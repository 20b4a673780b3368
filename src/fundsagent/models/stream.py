"""
Client-facing stream events and per-backend run results.
"""

import json
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from fundsagent.models.message import ToolResult


class StreamEventType(str, Enum):
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"


class StreamEvent(BaseModel):
    """One event of the downstream vocabulary: token, done or error."""

    type: StreamEventType
    token: Optional[str] = None
    message: Optional[str] = None

    # done payload
    reply: Optional[str] = None
    conversation_id: Optional[str] = None
    tokens_used: int = 0
    data_sources: List[str] = Field(default_factory=list)
    engine: Optional[str] = None
    model: Optional[str] = None
    degraded: bool = False
    tool_results_for_engines: Optional[List[Dict[str, Any]]] = None
    system_prompt: Optional[str] = None

    @classmethod
    def token_event(cls, text: str) -> "StreamEvent":
        return cls(type=StreamEventType.TOKEN, token=text)

    @classmethod
    def error_event(cls, message: str) -> "StreamEvent":
        return cls(type=StreamEventType.ERROR, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.DONE, StreamEventType.ERROR)

    def to_wire(self) -> Dict[str, Any]:
        """Camel-cased payload sent to the browser."""
        if self.type == StreamEventType.TOKEN:
            return {"type": "token", "token": self.token or ""}
        if self.type == StreamEventType.ERROR:
            return {"type": "error", "message": self.message or ""}

        payload: Dict[str, Any] = {
            "type": "done",
            "reply": self.reply or "",
            "tokensUsed": self.tokens_used,
            "dataSources": self.data_sources,
        }
        if self.conversation_id is not None:
            payload["conversationId"] = self.conversation_id
        if self.engine is not None:
            payload["engine"] = self.engine
        if self.model is not None:
            payload["model"] = self.model
        if self.degraded:
            payload["degraded"] = True
        if self.tool_results_for_engines is not None:
            payload["toolResultsForEngines"] = self.tool_results_for_engines
        if self.system_prompt is not None:
            payload["systemPrompt"] = self.system_prompt
        return payload


def sse_format(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_wire(), default=str)}\n\n"


class EngineRunResult(BaseModel):
    """Output of one backend for one request. Transient, never persisted on its own."""

    text: str = ""
    tokens_used: int = 0
    evidence: List[ToolResult] = Field(default_factory=list)
    rounds: int = 0
    exhausted: bool = False
    model: Optional[str] = None
