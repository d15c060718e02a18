"""Write-path helper — notify only after a successful commit.

Learn: The rule for every entity mutation is "commit, THEN notify; never
notify a write that did not commit". committed_change() packages that rule:

    async with committed_change(db, notifier, EntityType.PROPERTY,
                                property_id, org_id, Operation.CREATED):
        db.add(Property(...))

On normal exit the session is committed and notify_change() runs. If the
block raises or the commit fails, the session is rolled back, the error
propagates, and no event is published.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from oikosync.events.types import ChangeEvent, EntityType, Operation
from oikosync.services.notifier import ChangeNotifier

logger = structlog.get_logger()


class CommittedChange:
    """Filled in after the commit succeeds."""

    def __init__(self):
        self.event: Optional[ChangeEvent] = None


@asynccontextmanager
async def committed_change(
    session: AsyncSession,
    notifier: ChangeNotifier,
    entity_type: EntityType,
    entity_id: str,
    organization_id: str,
    operation: Operation,
    *,
    updated_by: Optional[str] = None,
    updated_fields: Iterable[str] = (),
) -> AsyncIterator[CommittedChange]:
    change = CommittedChange()
    try:
        yield change
        await session.commit()
    except Exception:
        await session.rollback()
        logger.info(
            "writes.rolled_back",
            entity_type=EntityType(entity_type).value,
            entity_id=entity_id,
            organization_id=organization_id,
        )
        raise

    change.event = await notifier.notify_change(
        entity_type,
        entity_id,
        organization_id,
        operation,
        updated_by=updated_by,
        updated_fields=updated_fields,
        source="db",
    )
