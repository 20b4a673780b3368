"""
Conversation repository for sessions, messages and personalization memory.

Sessions are partitioned by employee id and messages by conversation id, so
an append touches one message partition and one session document. Nothing is
ever deleted here; archiving is a flag on the session.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Iterable
import structlog

from fundsagent.clients.cosmos_client import CosmosDBClient
from fundsagent.config.settings import CosmosDBSettings
from fundsagent.models.message import Message
from fundsagent.models.session import ConversationSession, MemoryItem
from fundsagent.repositories.sales_repository import strip_system_fields

logger = structlog.get_logger(__name__)


class ConversationRepository(ABC):
    @abstractmethod
    async def save_session(self, session: ConversationSession) -> ConversationSession:
        """Create or replace a session document."""

    @abstractmethod
    async def get_session(self, session_id: str, employee_id: str) -> Optional[ConversationSession]:
        """Session owned by `employee_id`, or None."""

    @abstractmethod
    async def list_sessions(
        self, employee_id: str, limit: int = 20, include_archived: bool = False
    ) -> List[ConversationSession]:
        """Most recently active first."""

    @abstractmethod
    async def add_messages(self, messages: List[Message]) -> None:
        ...

    @abstractmethod
    async def list_messages(self, session_id: str, limit: Optional[int] = None) -> List[Message]:
        """Chronological; with `limit`, only the newest `limit` messages."""

    @abstractmethod
    async def list_memory(self, employee_id: str, limit: int, now: Optional[datetime] = None) -> List[MemoryItem]:
        """Unexpired memory items, newest first."""


class CosmosConversationRepository(ConversationRepository):
    def __init__(self, cosmos_client: CosmosDBClient, settings: CosmosDBSettings):
        self.client = cosmos_client
        self.sessions_container = settings.conversations_container
        self.messages_container = settings.messages_container
        self.memory_container = settings.memory_container
        logger.info(
            "Initialized conversation repository",
            sessions=self.sessions_container,
            messages=self.messages_container,
        )

    async def save_session(self, session: ConversationSession) -> ConversationSession:
        await self.client.upsert_item(self.sessions_container, session.model_dump(mode="json"))
        return session

    async def get_session(self, session_id: str, employee_id: str) -> Optional[ConversationSession]:
        # Reading inside the caller's partition doubles as the ownership check
        doc = await self.client.read_item(self.sessions_container, session_id, employee_id)
        return ConversationSession(**strip_system_fields(doc)) if doc else None

    async def list_sessions(self, employee_id, limit=20, include_archived=False) -> List[ConversationSession]:
        query = "SELECT TOP @limit * FROM c WHERE c.employee_id = @employee_id"
        if not include_archived:
            query += " AND c.is_archived = false"
        query += " ORDER BY c.last_active_at DESC"
        docs = await self.client.query_items(
            self.sessions_container,
            query,
            [{"name": "@employee_id", "value": employee_id}, {"name": "@limit", "value": limit}],
            partition_key_value=employee_id,
        )
        return [ConversationSession(**strip_system_fields(d)) for d in docs]

    async def add_messages(self, messages: List[Message]) -> None:
        for message in messages:
            await self.client.upsert_item(self.messages_container, message.model_dump(mode="json"))

    async def list_messages(self, session_id, limit=None) -> List[Message]:
        parameters = [{"name": "@conversation_id", "value": session_id}]
        if limit:
            query = (
                "SELECT TOP @limit * FROM c WHERE c.conversation_id = @conversation_id "
                "ORDER BY c.created_at DESC"
            )
            parameters.append({"name": "@limit", "value": limit})
        else:
            query = "SELECT * FROM c WHERE c.conversation_id = @conversation_id ORDER BY c.created_at ASC"
        docs = await self.client.query_items(
            self.messages_container, query, parameters, partition_key_value=session_id
        )
        messages = [Message(**strip_system_fields(d)) for d in docs]
        if limit:
            messages.reverse()
        return messages

    async def list_memory(self, employee_id, limit, now=None) -> List[MemoryItem]:
        now = now or datetime.utcnow()
        docs = await self.client.query_items(
            self.memory_container,
            "SELECT TOP @limit * FROM c WHERE c.employee_id = @employee_id "
            "AND (NOT IS_DEFINED(c.expires_at) OR IS_NULL(c.expires_at) OR c.expires_at > @now) "
            "ORDER BY c.created_at DESC",
            [
                {"name": "@employee_id", "value": employee_id},
                {"name": "@now", "value": now.isoformat()},
                {"name": "@limit", "value": limit},
            ],
            partition_key_value=employee_id,
        )
        return [MemoryItem(**strip_system_fields(d)) for d in docs]


class InMemoryConversationRepository(ConversationRepository):
    def __init__(self, memory: Iterable[MemoryItem] = ()):
        self.sessions: Dict[str, ConversationSession] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.memory: List[MemoryItem] = list(memory)

    async def save_session(self, session: ConversationSession) -> ConversationSession:
        self.sessions[session.id] = session.model_copy()
        return session

    async def get_session(self, session_id, employee_id) -> Optional[ConversationSession]:
        session = self.sessions.get(session_id)
        if session is None or session.employee_id != employee_id:
            return None
        return session.model_copy()

    async def list_sessions(self, employee_id, limit=20, include_archived=False) -> List[ConversationSession]:
        sessions = [
            s.model_copy() for s in self.sessions.values()
            if s.employee_id == employee_id and (include_archived or not s.is_archived)
        ]
        sessions.sort(key=lambda s: s.last_active_at, reverse=True)
        return sessions[:limit]

    async def add_messages(self, messages: List[Message]) -> None:
        for message in messages:
            self.messages.setdefault(message.conversation_id, []).append(message)

    async def list_messages(self, session_id, limit=None) -> List[Message]:
        messages = sorted(self.messages.get(session_id, []), key=lambda m: m.created_at)
        return messages[-limit:] if limit else messages

    async def list_memory(self, employee_id, limit, now=None) -> List[MemoryItem]:
        items = [m for m in self.memory if m.employee_id == employee_id and not m.is_expired(now)]
        items.sort(key=lambda m: m.created_at, reverse=True)
        return items[:limit]
