"""Schemas module - Pydantic models for policies, conversations, procedures and resolution."""

from .conversations import Channel, Conversation, ConversationStatus, Message, MessageRole
from .policies import (
    LengthConfig,
    PiiAction,
    PiiFilterConfig,
    PiiKind,
    Policy,
    PolicyMode,
    PolicyResult,
    PolicyType,
    PolicyViolation,
    ToneConfig,
    TopicFilterConfig,
)
from .procedures import (
    Procedure,
    ProcedureContext,
    ProcedureResult,
    ProcedureStep,
    ProcedureTrigger,
    StepType,
    TriggerType,
)
from .resolution import (
    CachedAnswer,
    Citation,
    Completion,
    GenerationContext,
    ResolutionDebug,
    ResolutionOutcome,
    ResolutionRequest,
    ResolutionResult,
    ResolutionState,
    RetrievedChunk,
    StreamEvent,
    TenantConfig,
)

__all__ = [
    # Conversations
    "Channel",
    "Conversation",
    "ConversationStatus",
    "Message",
    "MessageRole",
    # Policies
    "LengthConfig",
    "PiiAction",
    "PiiFilterConfig",
    "PiiKind",
    "Policy",
    "PolicyMode",
    "PolicyResult",
    "PolicyType",
    "PolicyViolation",
    "ToneConfig",
    "TopicFilterConfig",
    # Procedures
    "Procedure",
    "ProcedureContext",
    "ProcedureResult",
    "ProcedureStep",
    "ProcedureTrigger",
    "StepType",
    "TriggerType",
    # Resolution
    "CachedAnswer",
    "Citation",
    "Completion",
    "GenerationContext",
    "ResolutionDebug",
    "ResolutionOutcome",
    "ResolutionRequest",
    "ResolutionResult",
    "ResolutionState",
    "RetrievedChunk",
    "StreamEvent",
    "TenantConfig",
]
