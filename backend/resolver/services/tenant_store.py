"""Per-tenant configuration stored in ``tenants.config``."""

import asyncio
import json

from ..core.supabase_client import get_supabase_client
from ..schemas.resolution import TenantConfig


def _fetch_tenant_config(tenant_id: str) -> dict | str | None:
    client = get_supabase_client()
    result = client.table("tenants").select("config").eq("id", tenant_id).execute()
    if not result.data:
        return None
    return result.data[0].get("config")


async def load_tenant_config(tenant_id: str) -> TenantConfig:
    """Load the tenant's resolution overrides.

    Config keys may be camelCase (``confidenceThreshold``) or snake_case.
    A missing tenant yields an empty config.
    """
    raw = await asyncio.to_thread(_fetch_tenant_config, tenant_id)
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not raw:
        return TenantConfig()
    return TenantConfig.model_validate(raw)
