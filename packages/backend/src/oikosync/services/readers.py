"""Per-entity page readers — the raw sources behind cached aggregates.

Learn: Each reader call opens its OWN session. The dashboard fans out to
several readers concurrently, and an AsyncSession must never be shared
between concurrent tasks.

Pages use the CRM's listing shape:
    {"items": [...], "total_count": 42, "page": 1, "total_pages": 9}
"""

import math
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from oikosync.db.engine import async_session_factory
from oikosync.db.models import Activity, Client, Organization, Property
from oikosync.events.types import EntityType


class EntityReader(Protocol):
    async def list_page(
        self,
        organization_id: str,
        entity_type: EntityType,
        page: int,
        limit: int,
    ) -> dict[str, Any]: ...


def empty_page(page: int = 1) -> dict[str, Any]:
    """Fallback shape used when a source fails."""
    return {"items": [], "total_count": 0, "page": page, "total_pages": 0}


def page_of(items: list, total_count: int, page: int, limit: int) -> dict[str, Any]:
    return {
        "items": items,
        "total_count": total_count,
        "page": page,
        "total_pages": math.ceil(total_count / limit) if limit else 0,
    }


class SqlEntityReader:
    """Reads CRM tables with SQLAlchemy async."""

    MODELS = {
        EntityType.PROPERTY: Property,
        EntityType.CLIENT: Client,
        EntityType.ACTIVITY: Activity,
    }

    def __init__(self, session_factory: async_sessionmaker = async_session_factory):
        self.session_factory = session_factory

    async def list_page(
        self,
        organization_id: str,
        entity_type: EntityType,
        page: int,
        limit: int,
    ) -> dict[str, Any]:
        model = self.MODELS.get(EntityType(entity_type))
        if model is None:
            raise ValueError(f"No table mapped for entity type {entity_type}")

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count())
                .select_from(model)
                .where(model.organization_id == organization_id)
            )
            result = await session.execute(
                select(model)
                .where(model.organization_id == organization_id)
                .order_by(model.created_at.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            rows = result.scalars().all()

        return page_of([_row_to_dict(r) for r in rows], total or 0, page, limit)


def _row_to_dict(row) -> dict[str, Any]:
    return {col.key: getattr(row, col.key) for col in row.__table__.columns}


async def organization_exists(organization_id: str) -> bool:
    """Organization resolver used by the notifier in production."""
    async with async_session_factory() as session:
        found = await session.scalar(
            select(Organization.id).where(Organization.id == organization_id)
        )
    return found is not None
