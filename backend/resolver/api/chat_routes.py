"""Chat API endpoints.

Single-shot and Server-Sent Events delivery of the resolution pipeline, a
dry-run simulation endpoint and the tenant cache invalidation hook.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..pipeline import build_default_deps, resolve, resolve_stream
from ..schemas.resolution import ResolutionRequest, ResolutionResult
from ..services.response_cache import get_response_cache

logger = logging.getLogger(__name__)

router = APIRouter()


class CacheInvalidationResponse(BaseModel):
    tenant_id: str
    deleted: int


def sse_event(event: BaseModel) -> str:
    """Format one stream event as an SSE ``data:`` frame."""
    return f"data: {event.model_dump_json()}\n\n"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/chat/message", response_model=ResolutionResult)
async def post_message(payload: ResolutionRequest) -> ResolutionResult:
    """Resolve one message and return the complete result."""
    return await resolve(payload, build_default_deps())


@router.post("/chat/stream")
async def stream_message(payload: ResolutionRequest, request: Request) -> StreamingResponse:
    """Resolve one message as a stream of SSE events.

    Emits ``delta`` frames followed by exactly one terminal frame. Stops
    pulling from the pipeline as soon as the client disconnects.
    """
    events = resolve_stream(payload, build_default_deps())

    async def event_stream():
        try:
            async for event in events:
                if await request.is_disconnected():
                    logger.info("Client disconnected from stream for tenant %s", payload.tenant_id)
                    break
                yield sse_event(event)
        finally:
            await events.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/simulate", response_model=ResolutionResult)
async def simulate(payload: ResolutionRequest) -> ResolutionResult:
    """Dry-run a message: same result as /chat/message, nothing persisted."""
    return await resolve(payload.model_copy(update={"dry_run": True}), build_default_deps())


@router.post("/tenants/{tenant_id}/cache/invalidate", response_model=CacheInvalidationResponse)
async def invalidate_cache(tenant_id: str) -> CacheInvalidationResponse:
    """Drop every cached answer of the tenant, e.g. after its knowledge changed."""
    deleted = await get_response_cache().invalidate_tenant(tenant_id)
    return CacheInvalidationResponse(tenant_id=tenant_id, deleted=deleted)
