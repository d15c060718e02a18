"""Shared route dependencies.

Learn: Routes never reach for globals directly — they Depends() on these
getters, and tests swap them via app.dependency_overrides (e.g. an in-memory
EntityReader instead of Postgres).
"""

from fastapi import Depends, HTTPException

from oikosync.config import settings
from oikosync.realtime.runtime import LiveRuntime, get_runtime
from oikosync.services.dashboard_service import DashboardService
from oikosync.services.readers import EntityReader, SqlEntityReader


def get_live_runtime() -> LiveRuntime:
    try:
        return get_runtime()
    except RuntimeError:
        raise HTTPException(status_code=503, detail="Live updates unavailable")


def get_entity_reader() -> EntityReader:
    return SqlEntityReader()


def get_dashboard_service(
    runtime: LiveRuntime = Depends(get_live_runtime),
    reader: EntityReader = Depends(get_entity_reader),
) -> DashboardService:
    return DashboardService(
        runtime.cache,
        reader,
        timeout=settings.compute_timeout_seconds,
    )
