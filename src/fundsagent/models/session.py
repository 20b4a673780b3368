"""
Conversation session and personalization memory models.

Sessions are never hard-deleted; archiving hides them from the recent list.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from uuid import uuid4
from pydantic import BaseModel, Field


class ConversationSession(BaseModel):
    """Conversation owned by one employee."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Conversation ID")
    employee_id: str = Field(..., description="Owning employee record id")
    persona_id: Optional[str] = Field(default=None, description="Persona active when created")
    title: str = Field(default="", description="Conversation title")

    message_count: int = Field(default=0, description="Running message count, maintained incrementally")
    is_archived: bool = Field(default=False)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_active_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_encoders = {datetime: lambda v: v.isoformat()}

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at.isoformat(),
            "lastActiveAt": self.last_active_at.isoformat(),
            "messageCount": self.message_count,
            "isArchived": self.is_archived,
        }


class MemoryItem(BaseModel):
    """Personalization memory entry, written by the external feedback workflow."""

    employee_id: str
    key: str
    value: str
    memory_type: str = Field(default="context", description="preference, goal, context or note")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.utcnow())
