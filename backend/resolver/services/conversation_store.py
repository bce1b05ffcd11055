"""Conversation and message persistence backed by Supabase.

Supabase calls are synchronous, so each operation runs its query in a worker
thread via ``asyncio.to_thread``.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime

from ..core.supabase_client import get_supabase_client
from ..schemas.conversations import (
    Channel,
    Conversation,
    ConversationStatus,
    Message,
    MessageRole,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ── Conversations ────────────────────────────────────────────────────


def _insert_conversation(row: dict) -> None:
    get_supabase_client().table("conversations").insert(row).execute()


async def create_conversation(
    tenant_id: str,
    channel: Channel = Channel.WEB,
    user_id: str | None = None,
) -> Conversation:
    """Create an active conversation for the tenant."""
    conversation = Conversation(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        channel=channel,
        status=ConversationStatus.ACTIVE,
        user_id=user_id,
        created_at=datetime.now(UTC),
    )
    await asyncio.to_thread(_insert_conversation, conversation.model_dump(mode="json", exclude_none=True))
    return conversation


def _update_status(conversation_id: str, status: ConversationStatus) -> None:
    update: dict = {"status": str(status)}
    if status == ConversationStatus.RESOLVED:
        update["resolved_at"] = _now()

    query = get_supabase_client().table("conversations").update(update).eq("id", conversation_id)
    if status != ConversationStatus.ESCALATED:
        # A handed-off conversation stays with the human agent
        query = query.neq("status", str(ConversationStatus.ESCALATED))
    query.execute()


async def update_conversation_status(conversation_id: str, status: ConversationStatus) -> None:
    """Set the conversation status; stamps ``resolved_at`` when resolved.

    Failures are logged and swallowed: the reply has already been produced.
    """
    try:
        await asyncio.to_thread(_update_status, conversation_id, status)
    except Exception:
        logger.exception("Failed to set conversation %s to %s", conversation_id, status)


def _mark_first_response(conversation_id: str) -> None:
    client = get_supabase_client()
    result = (
        client.table("conversations")
        .select("first_response_at")
        .eq("id", conversation_id)
        .execute()
    )
    if not result.data or result.data[0].get("first_response_at"):
        return
    client.table("conversations").update({"first_response_at": _now()}).eq("id", conversation_id).execute()


# ── Messages ─────────────────────────────────────────────────────────


def _insert_message(row: dict) -> None:
    get_supabase_client().table("messages").insert(row).execute()


async def append_message(
    conversation_id: str,
    role: MessageRole,
    content: str,
    confidence: float | None = None,
    citations: list[str] | None = None,
    metadata: dict | None = None,
) -> Message:
    """Persist a message; the first assistant reply also records ``first_response_at``."""
    message = Message(
        id=str(uuid.uuid4()),
        conversation_id=conversation_id,
        role=role,
        content=content,
        confidence=confidence,
        citations=citations or [],
        metadata=metadata or {},
        created_at=datetime.now(UTC),
    )
    await asyncio.to_thread(_insert_message, message.model_dump(mode="json", exclude_none=True))

    if role == MessageRole.ASSISTANT:
        try:
            await asyncio.to_thread(_mark_first_response, conversation_id)
        except Exception:
            logger.warning("Could not record first response for conversation %s", conversation_id)

    return message


def _fetch_recent_messages(conversation_id: str, limit: int) -> list[dict]:
    result = (
        get_supabase_client()
        .table("messages")
        .select("*")
        .eq("conversation_id", conversation_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return result.data or []


async def load_recent_history(conversation_id: str, limit: int) -> list[Message]:
    """Return up to ``limit`` most recent messages in chronological order."""
    if limit <= 0:
        return []
    rows = await asyncio.to_thread(_fetch_recent_messages, conversation_id, limit)
    return [Message.model_validate(row) for row in reversed(rows)]
