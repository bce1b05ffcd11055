"""Streamed delivery of a resolution as typed events."""

import asyncio
import logging
from collections.abc import AsyncIterator

from ..schemas.resolution import (
    BlockedEvent,
    DeltaEvent,
    DoneEvent,
    EscalatedEvent,
    ErrorEvent,
    ResolutionOutcome,
    ResolutionRequest,
    ResolutionResult,
    StreamEvent,
)
from .deps import PipelineDeps, build_default_deps
from .graph import run_resolution

logger = logging.getLogger(__name__)

_END = object()


def terminal_event(result: ResolutionResult) -> StreamEvent:
    """Map a finished resolution to its single terminal stream event."""
    if result.outcome == ResolutionOutcome.BLOCKED:
        return BlockedEvent(message=result.content, reason=result.blocked_reason or "")
    if result.outcome == ResolutionOutcome.ESCALATED:
        return EscalatedEvent(
            message=result.content,
            conversation_id=result.conversation_id,
            confidence=result.confidence,
            reason=result.blocked_reason or "low_confidence",
        )
    if result.outcome == ResolutionOutcome.ERRORED:
        return ErrorEvent(message=result.content, conversation_id=result.conversation_id or None)
    return DoneEvent(
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        confidence=result.confidence,
        citations=result.citations,
    )


async def resolve_stream(
    request: ResolutionRequest,
    deps: PipelineDeps | None = None,
) -> AsyncIterator[StreamEvent]:
    """Resolve one inbound message as a stream of events.

    Yields ``delta`` events while the answer is generated, then exactly one
    terminal event (``done``, ``blocked``, ``escalated`` or ``error``).
    Closing the iterator early cancels the underlying run.
    """
    deps = deps or build_default_deps()
    queue: asyncio.Queue = asyncio.Queue()

    async def on_delta(content: str) -> None:
        await queue.put(DeltaEvent(content=content))

    task = asyncio.create_task(run_resolution(request, deps, on_delta=on_delta))
    task.add_done_callback(lambda _: queue.put_nowait(_END))

    try:
        streamed = False
        while (event := await queue.get()) is not _END:
            streamed = True
            yield event

        result = task.result()
        # Procedure and cache answers arrive whole
        if result.outcome == ResolutionOutcome.RESOLVED and not streamed and result.content:
            yield DeltaEvent(content=result.content)
        yield terminal_event(result)
    finally:
        if not task.done():
            logger.info("Stream consumer went away, cancelling resolution for tenant %s", request.tenant_id)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
