"""
Error taxonomy for the agent orchestration layer.

Only AuthorizationError aborts a request before any backend work begins.
The other errors are recovered where they occur: tool failures become
evidence, upstream failures become a degraded answer, malformed stream
chunks are dropped.
"""

from typing import Optional


class FundsAgentError(Exception):
    """Base class for all application errors."""


class AuthorizationError(FundsAgentError):
    """Caller could not be resolved or has no active access grant."""

    def __init__(self, message: str, *, identified: bool = True):
        super().__init__(message)
        self.message = message
        # False when no employee record could be resolved at all (401 rather than 403)
        self.identified = identified


class ToolExecutionError(FundsAgentError):
    """A single tool invocation failed; folded into evidence as {"error": ...}."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name
        self.message = message


class UpstreamUnavailable(FundsAgentError):
    """A reasoning backend is missing, unreachable, timed out or answered non-2xx."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, engine: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.engine = engine


class MalformedUpstreamChunk(FundsAgentError):
    """A streamed fragment could not be parsed."""


class ConversationNotFound(FundsAgentError):
    """Conversation does not exist or belongs to another employee."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id
