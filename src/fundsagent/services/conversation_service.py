"""
Conversation service for session lifecycle, turn persistence and memory reads.

Appends to the same session are serialized by a per-session lock; appends to
different sessions proceed concurrently. A lock lives only while a writer holds
or awaits it. The running message count is updated incrementally on every
append.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import structlog

from fundsagent.config.settings import AgentSettings
from fundsagent.exceptions import ConversationNotFound
from fundsagent.models.access import Employee
from fundsagent.models.message import ConversationTurn, Message, MessageRole
from fundsagent.models.session import ConversationSession, MemoryItem
from fundsagent.repositories.conversation_repository import ConversationRepository

logger = structlog.get_logger(__name__)

TITLE_LENGTH = 80
PROACTIVE_TITLE = "Proactive insight session"


def session_title(message: Optional[str], is_proactive: bool = False) -> str:
    if message and message.strip():
        return message.replace("\r", " ").replace("\n", " ").strip()[:TITLE_LENGTH]
    return PROACTIVE_TITLE if is_proactive else "New conversation"


class _SessionLock:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.writers = 0


class ConversationService:
    """Service for managing conversations owned by one employee at a time."""

    def __init__(self, repository: ConversationRepository, settings: AgentSettings):
        """
        Initialize the conversation service.

        Args:
            repository: Session, message and memory persistence
            settings: History and memory limits
        """
        self.repository = repository
        self.settings = settings
        self._locks: Dict[str, _SessionLock] = {}

    @asynccontextmanager
    async def _writer(self, session_id: str):
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = _SessionLock()
        entry.writers += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.writers -= 1
            if not entry.writers:
                del self._locks[session_id]

    async def get_or_create(
        self,
        employee: Employee,
        conversation_id: Optional[str] = None,
        first_message: Optional[str] = None,
        is_proactive: bool = False,
        persona_id: Optional[str] = None,
    ) -> ConversationSession:
        """
        Return the caller's session, creating one when no usable id is given.

        An id that does not exist or belongs to someone else is treated as
        absent, so a new session is started instead of failing the request.
        """
        if conversation_id:
            session = await self.repository.get_session(conversation_id, employee.id)
            if session is not None:
                return session
            logger.info(
                "Conversation not found for caller, starting a new one",
                conversation_id=conversation_id,
                employee_id=employee.id,
            )

        session = ConversationSession(
            employee_id=employee.id,
            persona_id=persona_id,
            title=session_title(first_message, is_proactive),
        )
        await self.repository.save_session(session)
        logger.info("Conversation created", conversation_id=session.id, employee_id=employee.id)
        return session

    async def append_turn(self, session_id: str, employee_id: str, turn: ConversationTurn) -> ConversationSession:
        """Persist the user and assistant messages of one turn and bump the session counters."""
        async with self._writer(session_id):
            session = await self.repository.get_session(session_id, employee_id)
            if session is None:
                raise ConversationNotFound(session_id)

            now = datetime.utcnow()
            messages: List[Message] = []
            if turn.user_message:
                messages.append(Message(
                    conversation_id=session_id,
                    employee_id=employee_id,
                    role=MessageRole.USER,
                    content=turn.user_message,
                    created_at=now,
                ))
            messages.append(Message(
                conversation_id=session_id,
                employee_id=employee_id,
                role=MessageRole.ASSISTANT,
                content=turn.assistant_message,
                # keeps the pair ordered when the store sorts by timestamp
                created_at=now + timedelta(microseconds=1),
                tokens_used=turn.tokens_used,
                model_used=turn.model_used,
                data_sources=turn.data_sources,
                is_proactive=turn.is_proactive,
            ))

            await self.repository.add_messages(messages)
            session.message_count += len(messages)
            session.last_active_at = now
            await self.repository.save_session(session)

        logger.info(
            "Conversation turn appended",
            conversation_id=session_id,
            employee_id=employee_id,
            message_count=session.message_count,
            tokens_used=turn.tokens_used,
            data_sources=turn.data_sources,
        )
        return session

    async def load_recent_turns(self, session_id: str, employee_id: str, limit: int) -> List[Message]:
        """Newest `limit` messages of a session the caller owns, oldest first."""
        session = await self.repository.get_session(session_id, employee_id)
        if session is None:
            return []
        return await self.repository.list_messages(session_id, limit=limit)

    async def load_memory(self, employee_id: str) -> List[MemoryItem]:
        return await self.repository.list_memory(employee_id, self.settings.memory_limit)

    async def history(self, employee_id: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        """One conversation with its messages, or the caller's recent conversations."""
        if not conversation_id:
            sessions = await self.repository.list_sessions(employee_id, limit=self.settings.history_limit)
            return {"conversations": [s.summary() for s in sessions]}

        session = await self.repository.get_session(conversation_id, employee_id)
        if session is None:
            raise ConversationNotFound(conversation_id)
        messages = await self.repository.list_messages(conversation_id)
        return {
            "conversation": session.summary(),
            "messages": [
                {
                    "id": m.id,
                    "role": m.role.value,
                    "content": m.content,
                    "createdAt": m.created_at.isoformat(),
                    "tokensUsed": m.tokens_used,
                    "dataSources": m.data_sources,
                    "isProactive": m.is_proactive,
                }
                for m in messages
            ],
        }

    async def archive(self, session_id: str, employee_id: str) -> ConversationSession:
        async with self._writer(session_id):
            session = await self.repository.get_session(session_id, employee_id)
            if session is None:
                raise ConversationNotFound(session_id)
            session.is_archived = True
            await self.repository.save_session(session)
        logger.info("Conversation archived", conversation_id=session_id, employee_id=employee_id)
        return session
