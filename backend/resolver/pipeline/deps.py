"""Collaborators of the resolution pipeline, injected as one container.

Nodes receive the container through the LangGraph run config, so tests
swap any collaborator for a fake without patching modules.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from ..schemas.conversations import Channel, Conversation, ConversationStatus, Message, MessageRole
from ..schemas.policies import Policy
from ..schemas.procedures import Procedure, ProcedureContext, ProcedureResult
from ..schemas.resolution import (
    CachedAnswer,
    Completion,
    GenerationContext,
    RetrievedChunk,
    TenantConfig,
)


@dataclass
class PipelineDeps:
    load_tenant_config: Callable[[str], Awaitable[TenantConfig]]
    load_policies: Callable[[str], Awaitable[list[Policy]]]
    find_matching_procedure: Callable[[str, str], Awaitable[Procedure | None]]
    execute_procedure: Callable[[Procedure, ProcedureContext], Awaitable[ProcedureResult]]
    vector_search: Callable[[str, str, int], Awaitable[list[RetrievedChunk]]]
    generate_completion: Callable[[GenerationContext], Awaitable[Completion]]
    generate_completion_stream: Callable[[GenerationContext], AsyncIterator[str | Completion]]
    get_cached_answer: Callable[[str, str], Awaitable[CachedAnswer | None]]
    set_cached_answer: Callable[..., Awaitable[None]]
    create_conversation: Callable[[str, Channel, str | None], Awaitable[Conversation]]
    append_message: Callable[..., Awaitable[Message]]
    update_conversation_status: Callable[[str, ConversationStatus], Awaitable[None]]
    load_recent_history: Callable[[str, int], Awaitable[list[Message]]]
    emit_audit: Callable[[str, str, dict[str, Any]], None]


@lru_cache
def build_default_deps() -> PipelineDeps:
    """Wire the Supabase, Redis and OpenAI implementations."""
    from ..policies.store import load_tenant_policies
    from ..services import audit, conversation_store, generation, procedure_engine, retrieval, tenant_store
    from ..services.response_cache import get_response_cache

    cache = get_response_cache()
    return PipelineDeps(
        load_tenant_config=tenant_store.load_tenant_config,
        load_policies=load_tenant_policies,
        find_matching_procedure=procedure_engine.find_matching_procedure,
        execute_procedure=procedure_engine.execute_procedure,
        vector_search=retrieval.vector_search,
        generate_completion=generation.generate_completion,
        generate_completion_stream=generation.generate_completion_stream,
        get_cached_answer=cache.get,
        set_cached_answer=cache.set,
        create_conversation=conversation_store.create_conversation,
        append_message=conversation_store.append_message,
        update_conversation_status=conversation_store.update_conversation_status,
        load_recent_history=conversation_store.load_recent_history,
        emit_audit=audit.emit,
    )
