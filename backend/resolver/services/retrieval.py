"""Knowledge retrieval via the Supabase ``match_knowledge_chunks`` RPC."""

import asyncio
import logging

from ..core.embedder import Embedder
from ..core.supabase_client import get_supabase_client
from ..schemas.resolution import RetrievedChunk

logger = logging.getLogger(__name__)


def _match_chunks(tenant_id: str, embedding: list[float], top_k: int) -> list[dict]:
    client = get_supabase_client()
    result = client.rpc(
        "match_knowledge_chunks",
        {
            "query_embedding": embedding,
            "p_tenant_id": tenant_id,
            "p_top_k": top_k,
        },
    ).execute()
    return result.data or []


async def vector_search(tenant_id: str, query: str, top_k: int) -> list[RetrievedChunk]:
    """Return the ``top_k`` knowledge chunks most similar to ``query``.

    Args:
        tenant_id: Only this tenant's knowledge is searched
        query: Redacted user text
        top_k: Maximum number of chunks

    Returns:
        Chunks ordered by descending score
    """
    embedding = await Embedder().embed(query)
    rows = await asyncio.to_thread(_match_chunks, tenant_id, embedding, top_k)

    chunks = [
        RetrievedChunk(
            id=str(row["id"]),
            score=min(1.0, max(0.0, float(row.get("similarity", 0.0)))),
            text=row.get("content", ""),
            source_id=str(row.get("source_id") or row["id"]),
        )
        for row in rows
    ]
    chunks.sort(key=lambda c: c.score, reverse=True)
    logger.debug("Retrieved %d chunks for tenant %s", len(chunks), tenant_id)
    return chunks[:top_k]
