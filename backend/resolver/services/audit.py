"""Fire-and-forget audit trail written to the Supabase ``audit_events`` table."""

import asyncio
import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from ..core.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)


class AuditEvent(StrEnum):
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_RESOLVED = "conversation.resolved"
    CONVERSATION_ESCALATED = "conversation.escalated"
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_SENT = "message.sent"
    POLICY_VIOLATED = "policy.violated"
    PROCEDURE_TRIGGERED = "procedure.triggered"
    PROCEDURE_COMPLETED = "procedure.completed"
    PROCEDURE_FAILED = "procedure.failed"
    CACHE_HIT = "cache.hit"
    CACHE_MISS = "cache.miss"


# Strong references so pending writes are not garbage-collected
_pending: set[asyncio.Task] = set()


def _insert_event(row: dict) -> None:
    get_supabase_client().table("audit_events").insert(row).execute()


async def _write(row: dict) -> None:
    try:
        await asyncio.to_thread(_insert_event, row)
    except Exception:
        logger.warning("Failed to write audit event %s for tenant %s", row["event_type"], row["tenant_id"])


def emit(tenant_id: str, event_type: AuditEvent | str, payload: dict[str, Any] | None = None) -> None:
    """Schedule an audit event write without waiting for it.

    Never raises. Outside a running event loop the event is dropped.
    """
    row = {
        "tenant_id": tenant_id,
        "event_type": str(event_type),
        "payload": payload or {},
        "created_at": datetime.now(UTC).isoformat(),
    }
    try:
        task = asyncio.get_running_loop().create_task(_write(row))
    except RuntimeError:
        logger.debug("No running loop, dropping audit event %s", row["event_type"])
        return
    _pending.add(task)
    task.add_done_callback(_pending.discard)
