"""Live-update runtime statistics."""

from fastapi import APIRouter, Depends

from oikosync.api.dependencies import get_live_runtime
from oikosync.realtime.runtime import LiveRuntime

router = APIRouter()


@router.get("/realtime/stats")
async def realtime_stats(runtime: LiveRuntime = Depends(get_live_runtime)):
    """Bus, cache and relay counters for this process."""
    return runtime.get_statistics()
