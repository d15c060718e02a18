"""Change notification route — the HTTP write-path entry.

Learn: The CRM app commits its own writes, then POSTs here. The response is
202 Accepted with the published event: the cache is already invalidated and
the event is queued for every live view of that organization by the time the
response is sent.
"""

from fastapi import APIRouter, Depends, HTTPException

from oikosync.api.dependencies import get_live_runtime
from oikosync.auth.dependencies import CurrentIdentity, get_org_identity
from oikosync.realtime.bus import OrganizationNotFoundError
from oikosync.realtime.runtime import LiveRuntime
from oikosync.schemas.change import ChangeEventRead, ChangeNotification

router = APIRouter()


@router.post(
    "/orgs/{org_id}/changes",
    response_model=ChangeEventRead,
    status_code=202,
)
async def notify_change(
    org_id: str,
    body: ChangeNotification,
    identity: CurrentIdentity = Depends(get_org_identity),
    runtime: LiveRuntime = Depends(get_live_runtime),
):
    """Report a committed create/update/archive/delete of one entity."""
    try:
        event = await runtime.notifier.notify_change(
            body.entity_type,
            body.entity_id,
            org_id,
            body.operation,
            updated_by=body.updated_by or identity.user_id,
            updated_fields=body.updated_fields,
        )
    except OrganizationNotFoundError:
        raise HTTPException(status_code=404, detail="Organization not found")
    return ChangeEventRead.from_event(event)
