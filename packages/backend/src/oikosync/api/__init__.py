"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Organization-scoped routes (changes, dashboard) check the caller's
organization inside the route via get_org_identity, because they need the
org_id path parameter. Stats just need a valid token; health is open.
"""

from fastapi import APIRouter, Depends

from oikosync.api.changes import router as changes_router
from oikosync.api.dashboard import router as dashboard_router
from oikosync.api.health import router as health_router
from oikosync.api.realtime import router as realtime_router
from oikosync.auth.dependencies import get_current_user

_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes
api_router.include_router(changes_router, tags=["changes"])
api_router.include_router(dashboard_router, tags=["dashboard"])
api_router.include_router(realtime_router, tags=["realtime"], dependencies=_auth)
