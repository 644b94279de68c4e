import asyncio
from datetime import UTC, datetime

import httpx
from fastapi import APIRouter

from app.api.v1.schemas.system import SystemHealthOut
from app.core.settings import get_settings

router = APIRouter()
SYSTEM_HEALTH_TIMEOUT_SECONDS = 1.5


@router.get("/system/health")
async def system_health() -> SystemHealthOut:
    settings = get_settings()
    supabase_ok: bool | None = None
    if settings.BILLING_STORE == "supabase":
        supabase_ok = await _probe_supabase_health(
            supabase_url=settings.SUPABASE_URL,
            supabase_anon_key=settings.SUPABASE_ANON_KEY,
        )
    return SystemHealthOut(
        ok=True,
        version=settings.APP_VERSION.strip() or "dev",
        time_utc=datetime.now(UTC),
        billing_store=settings.BILLING_STORE,
        supabase_ok=supabase_ok,
    )


async def _probe_supabase_health(*, supabase_url: str, supabase_anon_key: str) -> bool:
    url = f"{supabase_url.rstrip('/')}/auth/v1/health"
    headers = {
        "apikey": supabase_anon_key,
        "Authorization": f"Bearer {supabase_anon_key}",
        "Accept": "application/json",
    }
    timeout = httpx.Timeout(SYSTEM_HEALTH_TIMEOUT_SECONDS, connect=0.5)

    async def _request() -> bool:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url, headers=headers)
            # Any non-5xx response indicates Supabase is reachable.
            return response.status_code < 500

    try:
        return await asyncio.wait_for(_request(), timeout=SYSTEM_HEALTH_TIMEOUT_SECONDS)
    except (TimeoutError, httpx.HTTPError):
        return False
