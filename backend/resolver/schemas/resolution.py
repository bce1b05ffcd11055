"""Pydantic models for the resolution pipeline: request, result, state and stream events."""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .conversations import Channel, Message
from .policies import Policy, PolicyViolation


class ResolutionOutcome(StrEnum):
    """Terminal state of one resolution."""

    RESOLVED = "resolved"
    BLOCKED = "blocked"
    ESCALATED = "escalated"
    ERRORED = "errored"


class ResolutionRequest(BaseModel):
    """One inbound customer message."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1, description="Tenant the message belongs to")
    conversation_id: str | None = Field(
        default=None, description="Existing conversation; a new one is created when absent"
    )
    message: str = Field(..., min_length=1, description="Raw user text")
    channel: Channel = Field(default=Channel.WEB)
    user_id: str | None = None
    dry_run: bool = Field(default=False, description="Compute the result without persisting anything")


class RetrievedChunk(BaseModel):
    """A knowledge fragment returned by similarity search."""

    id: str
    score: float = Field(..., ge=0.0, le=1.0, description="Similarity score")
    text: str
    source_id: str


class Citation(BaseModel):
    source_id: str


class ResolutionDebug(BaseModel):
    retrieval_results: int = 0
    avg_retrieval_score: float = 0.0
    pre_policy_passed: bool = True
    post_policy_passed: bool = True
    pre_policy_violations: list[PolicyViolation] = Field(default_factory=list)
    post_policy_violations: list[PolicyViolation] = Field(default_factory=list)
    tokens_used: int = 0
    duration_ms: int = 0


class ResolutionResult(BaseModel):
    """Outcome returned to the caller of the single-shot pipeline."""

    resolved: bool
    content: str
    conversation_id: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    citations: list[Citation] = Field(default_factory=list)
    escalated: bool = False
    blocked_reason: str | None = None
    message_id: str | None = None
    outcome: ResolutionOutcome
    debug: ResolutionDebug = Field(default_factory=ResolutionDebug)


class CachedAnswer(BaseModel):
    content: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    citations: list[Citation] = Field(default_factory=list)
    cached_at: datetime | None = None


class TenantConfig(BaseModel):
    """Per-tenant overrides; unset fields fall back to service settings."""

    # Stored configs use camelCase keys
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    max_history_messages: int | None = Field(default=None, ge=0)
    custom_system_prompt: str | None = None
    model: str | None = None
    cache_ttl_seconds: int | None = Field(default=None, gt=0)


class GenerationContext(BaseModel):
    """Everything the generation client needs to answer one query."""

    query: str
    chunks: list[RetrievedChunk] = Field(default_factory=list)
    history: list[Message] = Field(default_factory=list)
    system_prompt_prefix: str | None = None
    model: str | None = None


class Completion(BaseModel):
    content: str
    tokens_used: int = 0
    finish_reason: str | None = None
    model: str | None = None


# ── Stream events ────────────────────────────────────────────────────


class DeltaEvent(BaseModel):
    type: Literal["delta"] = "delta"
    content: str


class BlockedEvent(BaseModel):
    type: Literal["blocked"] = "blocked"
    message: str
    reason: str


class EscalatedEvent(BaseModel):
    type: Literal["escalated"] = "escalated"
    message: str
    conversation_id: str
    confidence: float
    reason: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    conversation_id: str | None = None


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    conversation_id: str
    message_id: str | None = None
    confidence: float
    citations: list[Citation] = Field(default_factory=list)


StreamEvent = Annotated[
    Union[DeltaEvent, BlockedEvent, EscalatedEvent, ErrorEvent, DoneEvent],
    Field(discriminator="type"),
]


# ── Graph state ──────────────────────────────────────────────────────


class ResolutionState(BaseModel):
    """State for the resolution LangGraph workflow."""

    # Input
    request: ResolutionRequest
    started_at: float = 0.0

    # Tenant setup
    tenant_config: TenantConfig = Field(default_factory=TenantConfig)
    confidence_threshold: float = 0.7
    policies: list[Policy] = Field(default_factory=list)

    # Policy gates
    pre_check_passed: bool = True
    pre_violations: list[PolicyViolation] = Field(default_factory=list)
    redacted_message: str = ""
    post_check_passed: bool = True
    post_violations: list[PolicyViolation] = Field(default_factory=list)

    # Conversation
    conversation_id: str | None = None
    user_message_id: str | None = None

    # Retrieval
    chunks: list[RetrievedChunk] = Field(default_factory=list)
    avg_score: float = 0.0

    # Generation
    answer: str | None = None
    tokens_used: int = 0
    generation_failed: bool = False

    # Result
    result: ResolutionResult | None = None

    model_config = ConfigDict(use_enum_values=True)
