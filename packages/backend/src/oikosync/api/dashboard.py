"""Cached dashboard and listing routes — the HTTP read-path entry.

Error mapping:
- AggregateComputeFailure (every section failed) → 503
- ComputeTimeoutError                          → 504
A partially failed dashboard is still a 200, with the failed sections
listed in "degraded".
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from oikosync.api.dependencies import get_dashboard_service
from oikosync.auth.dependencies import get_org_identity
from oikosync.cache.sources import AggregateComputeFailure
from oikosync.cache.store import ComputeTimeoutError
from oikosync.events.types import EntityType
from oikosync.schemas.dashboard import DashboardRead, PageRead
from oikosync.services.dashboard_service import DashboardService

router = APIRouter()


@router.get(
    "/orgs/{org_id}/dashboard",
    response_model=DashboardRead,
    dependencies=[Depends(get_org_identity)],
)
async def get_dashboard(
    org_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=100),
    svc: DashboardService = Depends(get_dashboard_service),
):
    """Latest properties, clients and activities for an organization."""
    try:
        return await svc.get_dashboard(org_id, page=page, limit=limit)
    except AggregateComputeFailure:
        raise HTTPException(status_code=503, detail="Dashboard data unavailable")
    except ComputeTimeoutError:
        raise HTTPException(status_code=504, detail="Dashboard computation timed out")


@router.get(
    "/orgs/{org_id}/listings/{entity_type}",
    response_model=PageRead,
    dependencies=[Depends(get_org_identity)],
)
async def get_listing(
    org_id: str,
    entity_type: EntityType,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    svc: DashboardService = Depends(get_dashboard_service),
):
    """One page of a single entity listing."""
    try:
        return await svc.get_listing(org_id, entity_type, page=page, limit=limit)
    except AggregateComputeFailure:
        raise HTTPException(status_code=503, detail=f"{entity_type.value} listing unavailable")
    except ComputeTimeoutError:
        raise HTTPException(status_code=504, detail="Listing computation timed out")
