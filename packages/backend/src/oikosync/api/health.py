"""Health check endpoint.

Learn: Reports whether the live-update runtime is up and whether its
dependencies (Postgres for reads, Redis when it is the transport) are
reachable. Always 200 — "status" says healthy or degraded.
"""

import asyncio

from fastapi import APIRouter
from sqlalchemy import text

from oikosync import __version__
from oikosync.db.engine import engine
from oikosync.realtime.runtime import get_runtime

router = APIRouter()


@router.get("/health")
async def health_check():
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        runtime = get_runtime()
        checks["realtime"] = "ok"
    except RuntimeError as e:
        runtime = None
        checks["realtime"] = f"error: {e}"

    # Check Postgres
    try:
        async def _ping_db():
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        await asyncio.wait_for(_ping_db(), timeout=2.0)
        checks["postgres"] = "ok"
    except Exception as e:
        checks["postgres"] = f"error: {e!r}"

    # Check Redis (only when it carries the events)
    if runtime is not None and runtime.relay is not None:
        try:
            await runtime.relay.redis.ping()
            checks["redis"] = "ok" if runtime.relay.running else "error: relay stopped"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
