"""LangGraph workflow for conversational resolution.

Flow: load_tenant_config -> load_policies -> pre_gate
      -> [block_request -> END
         | redact_input -> ensure_conversation -> match_procedure
           -> [END | check_cache -> [END | retrieve
              -> [escalate_low_confidence -> END
                 | generate -> [generation_failed -> END
                    | post_gate -> [escalate_policy_violation -> END
                                   | finalize -> END]]]]]]

Both delivery modes run this graph. Streaming passes an ``on_delta`` sink
in the run config; single-shot does not.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from functools import lru_cache

from langgraph.graph import END, StateGraph

from ..core.config import get_settings
from ..schemas.resolution import (
    ResolutionOutcome,
    ResolutionRequest,
    ResolutionResult,
    ResolutionState,
)
from . import nodes
from .deps import PipelineDeps, build_default_deps
from .prompts import GENERATION_ERROR_MESSAGE

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def route_after_pre_gate(state: ResolutionState) -> str:
    return "continue" if state.pre_check_passed else "blocked"


def route_short_circuit(state: ResolutionState) -> str:
    """End the run when the previous node produced a result."""
    return "done" if state.result is not None else "continue"


def route_after_retrieve(state: ResolutionState) -> str:
    """Confidence gate: a mean score equal to the threshold passes."""
    if not state.chunks or not nodes.meets_threshold(state.avg_score, state.confidence_threshold):
        return "escalate"
    return "generate"


def route_after_generate(state: ResolutionState) -> str:
    return "failed" if state.generation_failed else "check"


def route_after_post_gate(state: ResolutionState) -> str:
    return "finalize" if state.post_check_passed else "escalate"


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


def create_resolution_graph() -> StateGraph:
    """Build the resolution workflow graph."""
    workflow = StateGraph(ResolutionState)

    workflow.add_node("load_tenant_config", nodes.load_tenant_config)
    workflow.add_node("load_policies", nodes.load_policies)
    workflow.add_node("pre_gate", nodes.pre_gate)
    workflow.add_node("block_request", nodes.block_request)
    workflow.add_node("redact_input", nodes.redact_input)
    workflow.add_node("ensure_conversation", nodes.ensure_conversation)
    workflow.add_node("match_procedure", nodes.match_procedure)
    workflow.add_node("check_cache", nodes.check_cache)
    workflow.add_node("retrieve", nodes.retrieve)
    workflow.add_node("escalate_low_confidence", nodes.escalate_low_confidence)
    workflow.add_node("generate", nodes.generate)
    workflow.add_node("generation_failed", nodes.generation_failed)
    workflow.add_node("post_gate", nodes.post_gate)
    workflow.add_node("escalate_policy_violation", nodes.escalate_policy_violation)
    workflow.add_node("finalize", nodes.finalize)

    workflow.set_entry_point("load_tenant_config")

    workflow.add_edge("load_tenant_config", "load_policies")
    workflow.add_edge("load_policies", "pre_gate")
    workflow.add_conditional_edges(
        "pre_gate",
        route_after_pre_gate,
        {"blocked": "block_request", "continue": "redact_input"},
    )
    workflow.add_edge("block_request", END)
    workflow.add_edge("redact_input", "ensure_conversation")
    workflow.add_edge("ensure_conversation", "match_procedure")
    workflow.add_conditional_edges(
        "match_procedure",
        route_short_circuit,
        {"done": END, "continue": "check_cache"},
    )
    workflow.add_conditional_edges(
        "check_cache",
        route_short_circuit,
        {"done": END, "continue": "retrieve"},
    )
    workflow.add_conditional_edges(
        "retrieve",
        route_after_retrieve,
        {"escalate": "escalate_low_confidence", "generate": "generate"},
    )
    workflow.add_edge("escalate_low_confidence", END)
    workflow.add_conditional_edges(
        "generate",
        route_after_generate,
        {"failed": "generation_failed", "check": "post_gate"},
    )
    workflow.add_edge("generation_failed", END)
    workflow.add_conditional_edges(
        "post_gate",
        route_after_post_gate,
        {"escalate": "escalate_policy_violation", "finalize": "finalize"},
    )
    workflow.add_edge("escalate_policy_violation", END)
    workflow.add_edge("finalize", END)

    return workflow


@lru_cache
def get_resolution_app():
    """Compiled resolution graph, built once per process."""
    return create_resolution_graph().compile()


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


async def run_resolution(
    request: ResolutionRequest,
    deps: PipelineDeps,
    on_delta: Callable[[str], Awaitable[None]] | None = None,
) -> ResolutionResult:
    """Run the graph once. Never raises except on cancellation."""
    started = time.perf_counter()
    progress: dict = {}
    initial_state = ResolutionState(
        request=request,
        started_at=started,
        confidence_threshold=get_settings().default_confidence_threshold,
    )

    try:
        final_state = await get_resolution_app().ainvoke(
            initial_state,
            config={"configurable": {"deps": deps, "on_delta": on_delta, "progress": progress}},
        )
        result = final_state.get("result")
        if result is None:
            raise RuntimeError("Resolution graph finished without a result")
        return result

    except Exception:
        logger.exception("Resolution failed for tenant %s", request.tenant_id)
        return ResolutionResult(
            resolved=False,
            content=GENERATION_ERROR_MESSAGE,
            conversation_id=progress.get("conversation_id") or request.conversation_id or "",
            confidence=0.0,
            escalated=False,
            outcome=ResolutionOutcome.ERRORED,
        )


async def resolve(request: ResolutionRequest, deps: PipelineDeps | None = None) -> ResolutionResult:
    """Resolve one inbound message and return the complete result.

    Args:
        request: The inbound message
        deps: Collaborators; defaults to the Supabase/Redis/OpenAI wiring

    Returns:
        ResolutionResult describing the outcome (resolved, blocked,
        escalated or errored)
    """
    return await run_resolution(request, deps or build_default_deps())
