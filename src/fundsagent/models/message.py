"""
Message and tool-evidence models for chat interactions.

This module defines persisted conversation messages, the tool invocation
envelope exchanged with the reasoning backends, and the evidence trail
accumulated by a tool-calling loop.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from uuid import uuid4
from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    """Message role enumeration."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A requested tool invocation: `{name, arguments}` plus the backend's call id."""

    id: str = Field(default_factory=lambda: f"call_{uuid4().hex[:12]}", description="Tool call ID")
    name: str = Field(..., description="Tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Decoded JSON arguments")
    argument_error: Optional[str] = Field(default=None, description="Set when arguments were not a JSON object")

    @classmethod
    def from_completion(cls, tool_call: Dict[str, Any]) -> "ToolCall":
        """Build from an OpenAI-style `tool_calls[]` entry (function name + JSON string arguments)."""
        function = tool_call.get("function") or {}
        raw = function.get("arguments")
        arguments: Dict[str, Any] = {}
        error = None
        if isinstance(raw, dict):
            arguments = raw
        elif raw:
            try:
                decoded = json.loads(raw)
            except (TypeError, ValueError):
                decoded = None
            if isinstance(decoded, dict):
                arguments = decoded
            else:
                error = "Tool arguments must be a JSON object"
        kwargs = {"name": function.get("name") or "", "arguments": arguments, "argument_error": error}
        if tool_call.get("id"):
            kwargs["id"] = tool_call["id"]
        return cls(**kwargs)

    def to_completion(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


class ToolResult(BaseModel):
    """Outcome of one tool invocation, fed back to the backend verbatim as evidence."""

    tool_call_id: str = Field(..., description="ID of the originating call")
    name: str = Field(..., description="Tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict, description="Typed result or {'error': ...}")

    @property
    def is_error(self) -> bool:
        return "error" in self.payload

    @property
    def content(self) -> str:
        return json.dumps(self.payload, default=str)

    def to_llm_message(self) -> Dict[str, Any]:
        return {"role": MessageRole.TOOL.value, "tool_call_id": self.tool_call_id, "content": self.content}


class Message(BaseModel):
    """Persisted conversation message."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Message ID")
    conversation_id: str = Field(..., description="Owning conversation")
    employee_id: str = Field(..., description="Owning employee record id")
    role: MessageRole = Field(..., description="Message role")
    content: str = Field(..., description="Message content")

    created_at: datetime = Field(default_factory=datetime.utcnow, description="Message timestamp")
    tokens_used: Optional[int] = Field(default=None, description="Tokens used for this message")
    model_used: Optional[str] = Field(default=None, description="Model used for generation")
    data_sources: List[str] = Field(default_factory=list, description="Tool names consulted")
    is_proactive: bool = Field(default=False, description="Agent-initiated message")

    class Config:
        """Pydantic configuration."""
        frozen = True
        json_encoders = {
            datetime: lambda v: v.isoformat(),
        }

    def to_llm_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ConversationTurn(BaseModel):
    """One exchange to append: an optional user message and the assistant reply."""

    user_message: Optional[str] = Field(default=None, description="User message text")
    assistant_message: str = Field(..., description="Assistant reply text")
    tokens_used: int = Field(default=0)
    model_used: Optional[str] = None
    data_sources: List[str] = Field(default_factory=list)
    is_proactive: bool = False


def unique_sources(results: List[ToolResult]) -> List[str]:
    """Tool names consulted, first occurrence order, failures excluded."""
    seen: List[str] = []
    for result in results:
        if not result.is_error and result.name not in seen:
            seen.append(result.name)
    return seen


def handoff_evidence(results: List[ToolResult]) -> List[Dict[str, Any]]:
    """Evidence trail in the `{tool, arguments, result}` form the secondary engines accept."""
    return [{"tool": r.name, "arguments": r.arguments, "result": r.payload} for r in results]
