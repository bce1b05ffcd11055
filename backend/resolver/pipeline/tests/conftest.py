"""In-memory collaborators for pipeline tests."""

from itertools import count
from unittest.mock import AsyncMock, MagicMock

import pytest

from resolver.pipeline.deps import PipelineDeps
from resolver.schemas.conversations import Conversation, Message
from resolver.schemas.resolution import Completion, RetrievedChunk, TenantConfig

ANSWER = 'To reset your password, go to Settings > Security and click "Reset Password".'


@pytest.fixture
def password_chunks():
    return [
        RetrievedChunk(
            id="chunk-1",
            score=0.92,
            text="To reset your password, go to Settings > Security.",
            source_id="source-1",
        ),
        RetrievedChunk(
            id="chunk-2",
            score=0.88,
            text='Click "Forgot Password" on the login page.',
            source_id="source-1",
        ),
    ]


def stream_of(parts: list[str]):
    """Return a generate_completion_stream fake yielding ``parts``."""

    async def _stream(context):
        for part in parts:
            yield part

    return MagicMock(side_effect=_stream)


@pytest.fixture
def deps(password_chunks):
    """Collaborators for a tenant with no policies, procedures or cache entries."""
    ids = count(1)

    def _append(conversation_id, role, content, **kwargs):
        return Message(
            id=f"msg-{next(ids)}",
            conversation_id=conversation_id,
            role=role,
            content=content,
            confidence=kwargs.get("confidence"),
            citations=kwargs.get("citations") or [],
            metadata=kwargs.get("metadata") or {},
        )

    return PipelineDeps(
        load_tenant_config=AsyncMock(return_value=TenantConfig()),
        load_policies=AsyncMock(return_value=[]),
        find_matching_procedure=AsyncMock(return_value=None),
        execute_procedure=AsyncMock(),
        vector_search=AsyncMock(return_value=password_chunks),
        generate_completion=AsyncMock(return_value=Completion(content=ANSWER, tokens_used=150, finish_reason="stop")),
        generate_completion_stream=stream_of(["To reset your password, ", 'go to Settings > Security and click "Reset Password".']),
        get_cached_answer=AsyncMock(return_value=None),
        set_cached_answer=AsyncMock(),
        create_conversation=AsyncMock(return_value=Conversation(id="conv-new", tenant_id="tenant-1")),
        append_message=AsyncMock(side_effect=_append),
        update_conversation_status=AsyncMock(),
        load_recent_history=AsyncMock(return_value=[]),
        emit_audit=MagicMock(),
    )
