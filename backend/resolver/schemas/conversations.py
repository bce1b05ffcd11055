"""Pydantic models for conversations and their messages."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Channel(StrEnum):
    WEB = "web"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    SMS = "sms"
    VOICE = "voice"


class ConversationStatus(StrEnum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class Conversation(BaseModel):
    """Conversation record owned by a tenant."""

    id: str
    tenant_id: str
    channel: Channel = Channel.WEB
    status: ConversationStatus = ConversationStatus.ACTIVE
    user_id: str | None = None
    created_at: datetime | None = None
    first_response_at: datetime | None = None
    resolved_at: datetime | None = None
    assigned_to: str | None = None
    csat_score: int | None = None


class Message(BaseModel):
    """A single message in a conversation."""

    id: str
    conversation_id: str
    role: MessageRole
    content: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    citations: list[str] = Field(default_factory=list, description="Cited source ids")
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
