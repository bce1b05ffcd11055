"""Policy store accessor backed by the Supabase ``policies`` table."""

import asyncio
import logging

from pydantic import ValidationError

from ..core.supabase_client import get_supabase_client
from ..schemas.policies import Policy

logger = logging.getLogger(__name__)


def _fetch_policy_rows(tenant_id: str) -> list[dict]:
    client = get_supabase_client()
    result = (
        client.table("policies")
        .select("*")
        .eq("tenant_id", tenant_id)
        .eq("enabled", True)
        .order("priority", desc=True)
        .execute()
    )
    return result.data or []


async def load_tenant_policies(tenant_id: str) -> list[Policy]:
    """Load the tenant's enabled policies, highest priority first.

    Rows whose configuration does not match their type are skipped.
    Supabase errors propagate; the pipeline treats them as "no policies".
    """
    rows = await asyncio.to_thread(_fetch_policy_rows, tenant_id)

    policies: list[Policy] = []
    for row in rows:
        try:
            policies.append(Policy.model_validate(row))
        except (ValidationError, ValueError):
            logger.warning("Skipping malformed policy %s for tenant %s", row.get("id"), tenant_id)
    policies.sort(key=lambda p: p.priority, reverse=True)
    return policies
