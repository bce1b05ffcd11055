"""Node functions for the resolution graph.

Each node reads the collaborators from ``config["configurable"]["deps"]``
and returns a partial state update. Terminal nodes set ``result``; routing
functions in ``graph.py`` end the run as soon as it is present.
"""

import asyncio
import logging
import math
import time
import uuid
from contextlib import aclosing
from statistics import fmean

from langchain_core.runnables import RunnableConfig

from ..core.config import get_settings
from ..policies import evaluate_policies, redact_pii
from ..schemas.conversations import ConversationStatus, MessageRole
from ..schemas.policies import PolicyMode, PolicyViolation
from ..schemas.procedures import ProcedureContext
from ..schemas.resolution import (
    CachedAnswer,
    Citation,
    Completion,
    GenerationContext,
    ResolutionDebug,
    ResolutionOutcome,
    ResolutionResult,
    ResolutionState,
    RetrievedChunk,
    TenantConfig,
)
from ..services.audit import AuditEvent
from .deps import PipelineDeps
from .prompts import (
    GENERATION_ERROR_MESSAGE,
    LOW_CONFIDENCE_MESSAGE,
    POLICY_BLOCKED_MESSAGE,
    POST_POLICY_FALLBACK_MESSAGE,
)

logger = logging.getLogger(__name__)

# Strong references to in-flight cache writes
_background_tasks: set[asyncio.Task] = set()

# Means of scores equal to the threshold can land one ulp below it
_SCORE_TOLERANCE = 1e-9


# ── Helpers ──────────────────────────────────────────────────────────


def _deps(config: RunnableConfig) -> PipelineDeps:
    return config["configurable"]["deps"]


def _record_progress(config: RunnableConfig, **values) -> None:
    """Note facts the runner needs if a later node fails, e.g. a new conversation id."""
    progress = config["configurable"].get("progress")
    if progress is not None:
        progress.update(values)


async def _bounded(awaitable, timeout: float | None = None):
    return await asyncio.wait_for(awaitable, timeout=timeout or get_settings().collaborator_timeout)


def dedupe_citations(chunks: list[RetrievedChunk]) -> list[Citation]:
    """One citation per source id, in first-seen order."""
    seen: dict[str, Citation] = {}
    for chunk in chunks:
        if chunk.source_id not in seen:
            seen[chunk.source_id] = Citation(source_id=chunk.source_id)
    return list(seen.values())


def average_score(chunks: list[RetrievedChunk]) -> float:
    if not chunks:
        return 0.0
    return fmean(c.score for c in chunks)


def meets_threshold(score: float, threshold: float) -> bool:
    """Confidence gate; a score equal to the threshold passes, within float rounding."""
    return score >= threshold or math.isclose(score, threshold, abs_tol=_SCORE_TOLERANCE)


def _join_violations(violations: list[PolicyViolation]) -> str:
    return "; ".join(v.message for v in violations)


def _debug(state: ResolutionState) -> ResolutionDebug:
    return ResolutionDebug(
        retrieval_results=len(state.chunks),
        avg_retrieval_score=state.avg_score,
        pre_policy_passed=state.pre_check_passed,
        post_policy_passed=state.post_check_passed,
        pre_policy_violations=state.pre_violations,
        post_policy_violations=state.post_violations,
        tokens_used=state.tokens_used,
        duration_ms=int((time.perf_counter() - state.started_at) * 1000) if state.started_at else 0,
    )


def _spawn(coro) -> None:
    """Run ``coro`` in the background; failures are logged and dropped."""
    task = asyncio.get_running_loop().create_task(coro)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.warning("Background task failed: %s", t.exception())

    task.add_done_callback(_done)


async def _ensure_conversation(state: ResolutionState, config: RunnableConfig) -> dict:
    """Create the conversation when needed and persist the original user message.

    Dry runs persist nothing; without a supplied id they get an ephemeral one.
    """
    deps = _deps(config)
    request = state.request
    if state.conversation_id:
        return {}

    if request.dry_run:
        return {"conversation_id": request.conversation_id or f"dryrun-{uuid.uuid4().hex[:12]}"}

    conversation_id = request.conversation_id
    if conversation_id is None:
        conversation = await _bounded(
            deps.create_conversation(request.tenant_id, request.channel, request.user_id)
        )
        conversation_id = conversation.id
        _record_progress(config, conversation_id=conversation_id)
        deps.emit_audit(
            request.tenant_id,
            AuditEvent.CONVERSATION_CREATED,
            {"conversation_id": conversation_id, "channel": str(request.channel)},
        )

    message = await _bounded(deps.append_message(conversation_id, MessageRole.USER, request.message))
    deps.emit_audit(
        request.tenant_id,
        AuditEvent.MESSAGE_RECEIVED,
        {"conversation_id": conversation_id, "message_id": message.id},
    )
    return {"conversation_id": conversation_id, "user_message_id": message.id}


async def _persist_reply(
    state: ResolutionState,
    deps: PipelineDeps,
    content: str,
    confidence: float,
    citations: list[Citation] | None = None,
    metadata: dict | None = None,
) -> str | None:
    """Persist the assistant reply; returns its id, or None in dry-run."""
    if state.request.dry_run:
        return None
    message = await _bounded(
        deps.append_message(
            state.conversation_id,
            MessageRole.ASSISTANT,
            content,
            confidence=confidence,
            citations=[c.source_id for c in citations or []],
            metadata=metadata or {},
        )
    )
    return message.id


async def _set_status(state: ResolutionState, deps: PipelineDeps, status: ConversationStatus) -> None:
    """Best-effort status change; the reply is already stored."""
    if state.request.dry_run:
        return
    try:
        await _bounded(deps.update_conversation_status(state.conversation_id, status))
    except TimeoutError:
        logger.warning("Timed out setting conversation %s to %s", state.conversation_id, status)


async def _resolve_reply(
    state: ResolutionState,
    deps: PipelineDeps,
    content: str,
    confidence: float,
    citations: list[Citation],
    source: str,
) -> ResolutionResult:
    """Persist a successful reply and mark the conversation resolved when confident."""
    message_id = await _persist_reply(state, deps, content, confidence, citations)
    tenant_id = state.request.tenant_id

    deps.emit_audit(
        tenant_id,
        AuditEvent.MESSAGE_SENT,
        {"conversation_id": state.conversation_id, "message_id": message_id, "source": source},
    )
    if meets_threshold(confidence, state.confidence_threshold):
        await _set_status(state, deps, ConversationStatus.RESOLVED)
        deps.emit_audit(
            tenant_id,
            AuditEvent.CONVERSATION_RESOLVED,
            {"conversation_id": state.conversation_id, "confidence": confidence, "source": source},
        )

    return ResolutionResult(
        resolved=True,
        content=content,
        conversation_id=state.conversation_id,
        confidence=confidence,
        citations=citations,
        escalated=False,
        message_id=message_id,
        outcome=ResolutionOutcome.RESOLVED,
        debug=_debug(state),
    )


# ── Tenant setup ─────────────────────────────────────────────────────


async def load_tenant_config(state: ResolutionState, config: RunnableConfig) -> dict:
    """Load tenant overrides and derive the confidence threshold."""
    deps = _deps(config)
    settings = get_settings()
    try:
        tenant_config = await asyncio.wait_for(
            deps.load_tenant_config(state.request.tenant_id),
            timeout=settings.collaborator_timeout,
        )
    except Exception:
        logger.warning("Could not load config for tenant %s, using defaults", state.request.tenant_id)
        tenant_config = TenantConfig()

    threshold = tenant_config.confidence_threshold
    if threshold is None:
        threshold = settings.default_confidence_threshold
    return {"tenant_config": tenant_config, "confidence_threshold": threshold}


async def load_policies(state: ResolutionState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    try:
        policies = await _bounded(
            deps.load_policies(state.request.tenant_id)
        )
    except Exception:
        logger.exception("Failed to load policies for tenant %s, continuing without", state.request.tenant_id)
        policies = []
    return {"policies": policies}


# ── Pre-policy gate ──────────────────────────────────────────────────


async def pre_gate(state: ResolutionState, config: RunnableConfig) -> dict:
    """Check the raw user message against pre-phase policies."""
    check = evaluate_policies(state.request.message, state.policies, PolicyMode.PRE)
    return {"pre_check_passed": check.passed, "pre_violations": check.violations}


async def block_request(state: ResolutionState, config: RunnableConfig) -> dict:
    """Terminal: the user message violated a pre-phase policy."""
    deps = _deps(config)
    update = await _ensure_conversation(state, config)
    state = state.model_copy(update=update)
    reason = _join_violations(state.pre_violations)

    deps.emit_audit(
        state.request.tenant_id,
        AuditEvent.POLICY_VIOLATED,
        {
            "conversation_id": state.conversation_id,
            "phase": str(PolicyMode.PRE),
            "violations": [v.model_dump(mode="json") for v in state.pre_violations],
        },
    )
    logger.info("Blocked message for tenant %s: %s", state.request.tenant_id, reason)

    result = ResolutionResult(
        resolved=False,
        content=POLICY_BLOCKED_MESSAGE,
        conversation_id=state.conversation_id,
        confidence=0.0,
        escalated=False,
        blocked_reason=reason,
        message_id=None,
        outcome=ResolutionOutcome.BLOCKED,
        debug=_debug(state),
    )
    return {**update, "result": result}


# ── Redaction and conversation ───────────────────────────────────────


async def redact_input(state: ResolutionState, config: RunnableConfig) -> dict:
    return {"redacted_message": redact_pii(state.request.message, state.policies)}


async def ensure_conversation(state: ResolutionState, config: RunnableConfig) -> dict:
    return await _ensure_conversation(state, config)


# ── Short-circuits ───────────────────────────────────────────────────


async def match_procedure(state: ResolutionState, config: RunnableConfig) -> dict:
    """Run a matching scripted procedure; falls through on no match or failure."""
    deps = _deps(config)
    request = state.request
    try:
        procedure = await _bounded(deps.find_matching_procedure(request.tenant_id, state.redacted_message))
        if procedure is None:
            return {}
        outcome = await _bounded(
            deps.execute_procedure(
                procedure,
                ProcedureContext(
                    tenant_id=request.tenant_id,
                    conversation_id=state.conversation_id,
                    user_id=request.user_id,
                    variables={
                        "user": {"id": request.user_id, "message": state.redacted_message},
                        "conversation": {"id": state.conversation_id},
                    },
                    dry_run=request.dry_run,
                ),
            ),
            timeout=get_settings().procedure_timeout,
        )
    except Exception:
        logger.exception("Procedure handling failed for tenant %s, falling through", request.tenant_id)
        return {}

    if not outcome.success or not outcome.final_message:
        logger.info("Procedure %s did not produce a reply: %s", procedure.id, outcome.error)
        return {}

    result = await _resolve_reply(state, deps, outcome.final_message, 1.0, [], source="procedure")
    return {"result": result}


async def check_cache(state: ResolutionState, config: RunnableConfig) -> dict:
    """Serve a cached answer for the redacted query when one exists."""
    deps = _deps(config)
    tenant_id = state.request.tenant_id
    try:
        cached = await _bounded(
            deps.get_cached_answer(tenant_id, state.redacted_message)
        )
    except Exception:
        logger.warning("Cache lookup failed for tenant %s, treating as miss", tenant_id)
        cached = None

    if cached is None:
        deps.emit_audit(tenant_id, AuditEvent.CACHE_MISS, {"conversation_id": state.conversation_id})
        return {}

    deps.emit_audit(tenant_id, AuditEvent.CACHE_HIT, {"conversation_id": state.conversation_id})
    result = await _resolve_reply(
        state, deps, cached.content, cached.confidence, cached.citations, source="cache"
    )
    return {"result": result}


# ── Retrieval and confidence gate ────────────────────────────────────


async def retrieve(state: ResolutionState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    settings = get_settings()
    try:
        chunks = await asyncio.wait_for(
            deps.vector_search(state.request.tenant_id, state.redacted_message, settings.retrieval_top_k),
            timeout=settings.retrieval_timeout,
        )
    except Exception:
        logger.exception("Retrieval failed for tenant %s, continuing with no context", state.request.tenant_id)
        chunks = []
    return {"chunks": chunks, "avg_score": average_score(chunks)}


async def escalate_low_confidence(state: ResolutionState, config: RunnableConfig) -> dict:
    """Terminal: not enough relevant knowledge to answer."""
    deps = _deps(config)
    message_id = await _persist_reply(state, deps, LOW_CONFIDENCE_MESSAGE, state.avg_score)
    await _set_status(state, deps, ConversationStatus.ESCALATED)
    deps.emit_audit(
        state.request.tenant_id,
        AuditEvent.CONVERSATION_ESCALATED,
        {
            "conversation_id": state.conversation_id,
            "reason": "low_confidence",
            "confidence": state.avg_score,
            "threshold": state.confidence_threshold,
        },
    )

    result = ResolutionResult(
        resolved=False,
        content=LOW_CONFIDENCE_MESSAGE,
        conversation_id=state.conversation_id,
        confidence=state.avg_score,
        escalated=True,
        message_id=message_id,
        outcome=ResolutionOutcome.ESCALATED,
        debug=_debug(state),
    )
    return {"result": result}


# ── Generation ───────────────────────────────────────────────────────


async def _load_history(state: ResolutionState, deps: PipelineDeps, limit: int) -> list:
    """Recent messages before the in-flight one, oldest first."""
    request = state.request
    if limit <= 0 or (request.dry_run and not request.conversation_id):
        return []
    try:
        history = await _bounded(
            deps.load_recent_history(state.conversation_id, limit + 1)
        )
    except Exception:
        logger.warning("Could not load history for conversation %s", state.conversation_id)
        return []
    history = [m for m in history if m.id != state.user_message_id]
    return history[-limit:]


async def generate(state: ResolutionState, config: RunnableConfig) -> dict:
    """Generate the answer, forwarding deltas when a stream sink is configured."""
    deps = _deps(config)
    on_delta = config["configurable"].get("on_delta")
    settings = get_settings()
    tenant_config = state.tenant_config

    max_history = tenant_config.max_history_messages
    if max_history is None:
        max_history = settings.max_history_messages

    context = GenerationContext(
        query=state.redacted_message,
        chunks=state.chunks,
        history=await _load_history(state, deps, max_history),
        system_prompt_prefix=tenant_config.custom_system_prompt,
        model=tenant_config.model,
    )

    try:
        if on_delta is None:
            completion = await asyncio.wait_for(
                deps.generate_completion(context), timeout=settings.generation_timeout
            )
            return {"answer": completion.content, "tokens_used": completion.tokens_used}

        parts: list[str] = []
        tokens_used = 0
        async with asyncio.timeout(settings.generation_timeout):
            async with aclosing(deps.generate_completion_stream(context)) as stream:
                async for item in stream:
                    # The stream closes with a usage summary
                    if isinstance(item, Completion):
                        tokens_used = item.tokens_used
                        continue
                    parts.append(item)
                    await on_delta(item)
        return {"answer": "".join(parts), "tokens_used": tokens_used}
    except Exception:
        logger.exception("Generation failed for conversation %s", state.conversation_id)
        return {"generation_failed": True}


async def generation_failed(state: ResolutionState, config: RunnableConfig) -> dict:
    """Terminal: the generation client failed or timed out."""
    deps = _deps(config)
    message_id = await _persist_reply(
        state, deps, GENERATION_ERROR_MESSAGE, 0.0, metadata={"generation_error": True}
    )
    result = ResolutionResult(
        resolved=False,
        content=GENERATION_ERROR_MESSAGE,
        conversation_id=state.conversation_id,
        confidence=0.0,
        escalated=False,
        message_id=message_id,
        outcome=ResolutionOutcome.ERRORED,
        debug=_debug(state),
    )
    return {"result": result}


# ── Post-policy gate ─────────────────────────────────────────────────


async def post_gate(state: ResolutionState, config: RunnableConfig) -> dict:
    check = evaluate_policies(state.answer or "", state.policies, PolicyMode.POST)
    return {"post_check_passed": check.passed, "post_violations": check.violations}


async def escalate_policy_violation(state: ResolutionState, config: RunnableConfig) -> dict:
    """Terminal: the generated answer broke a post-phase policy.

    The failing answer is kept on the stored message for review; the
    customer sees the fallback text.
    """
    deps = _deps(config)
    reason = _join_violations(state.post_violations)
    citations = dedupe_citations(state.chunks)

    message_id = await _persist_reply(
        state,
        deps,
        state.answer or "",
        state.avg_score,
        citations,
        metadata={
            "post_policy_violation": True,
            "violations": [v.message for v in state.post_violations],
            "fallback_shown": POST_POLICY_FALLBACK_MESSAGE,
        },
    )
    await _set_status(state, deps, ConversationStatus.ESCALATED)

    tenant_id = state.request.tenant_id
    deps.emit_audit(
        tenant_id,
        AuditEvent.POLICY_VIOLATED,
        {
            "conversation_id": state.conversation_id,
            "phase": str(PolicyMode.POST),
            "violations": [v.model_dump(mode="json") for v in state.post_violations],
        },
    )
    deps.emit_audit(
        tenant_id,
        AuditEvent.CONVERSATION_ESCALATED,
        {"conversation_id": state.conversation_id, "reason": "post_policy_violation"},
    )

    result = ResolutionResult(
        resolved=False,
        content=POST_POLICY_FALLBACK_MESSAGE,
        conversation_id=state.conversation_id,
        confidence=state.avg_score,
        citations=citations,
        escalated=True,
        blocked_reason=reason,
        message_id=message_id,
        outcome=ResolutionOutcome.ESCALATED,
        debug=_debug(state),
    )
    return {"result": result}


# ── Success ──────────────────────────────────────────────────────────


async def finalize(state: ResolutionState, config: RunnableConfig) -> dict:
    """Terminal: persist the answer, resolve the conversation and cache the reply."""
    deps = _deps(config)
    citations = dedupe_citations(state.chunks)
    answer = state.answer or ""

    result = await _resolve_reply(state, deps, answer, state.avg_score, citations, source="generation")

    if not state.request.dry_run:
        _spawn(
            deps.set_cached_answer(
                state.request.tenant_id,
                state.redacted_message,
                CachedAnswer(content=answer, confidence=state.avg_score, citations=citations),
                state.tenant_config.cache_ttl_seconds,
            )
        )
    return {"result": result}
