"""Agent chat routes: primary chat, secondary engines, history and archiving.

The caller is resolved from bearer-token claims to an employee record and
an access grant before any backend work starts. Streaming responses use
server-sent events, one `data: <json>` frame per event.
"""

from typing import Any, AsyncIterator, Dict, List, NamedTuple, Optional
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt
from pydantic import BaseModel, Field

from fundsagent.config.settings import settings
from fundsagent.exceptions import AuthorizationError
from fundsagent.models.access import AccessGrant, Employee
from fundsagent.models.stream import StreamEvent, sse_format
from fundsagent.repositories.sample_data import DEMO_EMPLOYEE_NUMBER
from fundsagent.services.access_service import AccessService
from fundsagent.services.chat_service import ChatService
from fundsagent.services.conversation_service import ConversationService
from fundsagent.services.engine_coordinator import EngineCoordinator

logger = structlog.get_logger(__name__)

router = APIRouter()
security = HTTPBearer(auto_error=False)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


class ChatRequest(BaseModel):
    message: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    is_proactive: bool = Field(default=False, alias="isProactive")
    stream: bool = False

    class Config:
        populate_by_name = True


class EngineRequest(BaseModel):
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    user_message: Optional[str] = Field(default=None, alias="userMessage")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")

    class Config:
        populate_by_name = True


class Caller(NamedTuple):
    employee: Employee
    grant: AccessGrant


def get_access_service() -> AccessService:
    from fundsagent.app import app_state

    service = getattr(app_state, "access_service", None)
    if not service:
        raise HTTPException(status_code=503, detail="Access service not available")
    return service


def get_chat_service() -> ChatService:
    from fundsagent.app import app_state

    service = getattr(app_state, "chat_service", None)
    if not service:
        raise HTTPException(status_code=503, detail="Chat service not available")
    return service


def get_conversation_service() -> ConversationService:
    from fundsagent.app import app_state

    service = getattr(app_state, "conversation_service", None)
    if not service:
        raise HTTPException(status_code=503, detail="Conversation service not available")
    return service


def get_engine_coordinator() -> EngineCoordinator:
    from fundsagent.app import app_state

    coordinator = getattr(app_state, "engine_coordinator", None)
    if not coordinator:
        raise HTTPException(status_code=503, detail="Engine coordinator not available")
    return coordinator


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    access_service: AccessService = Depends(get_access_service),
) -> Caller:
    """Resolve the bearer token to an employee and an active access grant."""
    if credentials and credentials.credentials:
        try:
            claims = jose_jwt.get_unverified_claims(credentials.credentials)
        except JWTError:
            raise AuthorizationError("Invalid bearer token", identified=False)
    elif settings.dev_mode:
        claims = {"employee_number": DEMO_EMPLOYEE_NUMBER}
    else:
        raise AuthorizationError("Authentication required", identified=False)

    employee = await access_service.resolve_caller(claims)
    grant = await access_service.resolve_scope(employee)
    return Caller(employee=employee, grant=grant)


async def _sse(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield sse_format(event)


def _wants_stream(request: Request, body: ChatRequest) -> bool:
    return body.stream or "text/event-stream" in request.headers.get("accept", "")


@router.post("/agent/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Answer a message with the primary backend, as JSON or as an event stream."""
    message = (body.message or "").strip() or None
    if not message and not body.is_proactive:
        raise HTTPException(status_code=400, detail="message is required")

    prepared = await chat_service.prepare(
        caller.employee,
        caller.grant,
        message=message,
        conversation_id=body.conversation_id,
        is_proactive=body.is_proactive,
    )
    if _wants_stream(request, body):
        return StreamingResponse(
            _sse(chat_service.stream_chat(prepared)),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    reply = await chat_service.chat(prepared)
    return reply.to_wire()


@router.get("/agent/chat")
async def chat_history(
    conversation_id: Optional[str] = Query(default=None, alias="conversationId"),
    caller: Caller = Depends(get_caller),
    conversation_service: ConversationService = Depends(get_conversation_service),
) -> Dict[str, Any]:
    """One conversation with its messages, or the caller's recent conversations."""
    return await conversation_service.history(caller.employee.id, conversation_id)


@router.post("/agent/chat/{engine_id}")
async def engine_chat(
    engine_id: str,
    body: EngineRequest,
    caller: Caller = Depends(get_caller),
    access_service: AccessService = Depends(get_access_service),
    coordinator: EngineCoordinator = Depends(get_engine_coordinator),
):
    """Stream a secondary engine's independent analysis of the primary's hand-off."""
    if engine_id not in coordinator:
        raise HTTPException(status_code=404, detail=f"Unknown engine: {engine_id}")
    if not (body.user_message or "").strip():
        raise HTTPException(status_code=400, detail="userMessage is required")

    ctx = await access_service.build_tool_context(caller.employee, caller.grant)
    events = coordinator.events(
        engine_id,
        ctx,
        user_message=body.user_message,
        system_prompt=body.system_prompt,
        messages=body.messages,
        conversation_id=body.conversation_id,
    )
    return StreamingResponse(_sse(events), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/agent/conversations/{conversation_id}/archive")
async def archive_conversation(
    conversation_id: str,
    caller: Caller = Depends(get_caller),
    conversation_service: ConversationService = Depends(get_conversation_service),
) -> Dict[str, Any]:
    session = await conversation_service.archive(conversation_id, caller.employee.id)
    return {"conversation": session.summary()}
