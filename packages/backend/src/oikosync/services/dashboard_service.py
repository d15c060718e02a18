"""Dashboard and listing reads through the tagged cache.

Learn: The dashboard overview is three independent reads (latest properties,
clients and activities). It is cached under a key derived from
(view, organization, pagination) and tagged with one scope tag per entity
type it depends on:

    key:  dashboard:<org>:p1:ldefault
    tags: property:<org>, client:<org>, activity:<org>

Any write to one of those scopes invalidates the entry; the next read
recomputes it once, however many viewers refresh at the same time. A failing
section falls back to an empty page and is listed in "degraded".
"""

from datetime import datetime, timezone
from typing import Any, Optional

from oikosync.cache.sources import Source, gather_sources
from oikosync.cache.store import TaggedCache
from oikosync.config import settings
from oikosync.events.types import EntityType, scope_tag
from oikosync.services.readers import EntityReader, empty_page

# (section name, entity type, default page size)
DASHBOARD_SECTIONS: tuple[tuple[str, EntityType, int], ...] = (
    ("properties", EntityType.PROPERTY, 5),
    ("clients", EntityType.CLIENT, 5),
    ("activities", EntityType.ACTIVITY, 10),
)

DASHBOARD_ENTITY_TYPES = frozenset(entity for _, entity, _ in DASHBOARD_SECTIONS)


def dashboard_key(organization_id: str, page: int, limit: Optional[int]) -> str:
    return f"dashboard:{organization_id}:p{page}:l{limit or 'default'}"


def listing_key(organization_id: str, entity_type: EntityType, page: int, limit: int) -> str:
    return f"listing:{EntityType(entity_type).value}:{organization_id}:p{page}:l{limit}"


def dashboard_tags(organization_id: str) -> list[str]:
    return [scope_tag(entity, organization_id) for _, entity, _ in DASHBOARD_SECTIONS]


class DashboardService:
    def __init__(
        self,
        cache: TaggedCache,
        reader: EntityReader,
        ttl_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.cache = cache
        self.reader = reader
        self.ttl_seconds = settings.dashboard_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.timeout = timeout

    async def get_dashboard(
        self,
        organization_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """Cached overview of an organization's latest records."""

        async def compute() -> dict[str, Any]:
            sources = {
                name: Source(
                    fetch=_page_fetcher(self.reader, organization_id, entity, page, limit or size),
                    default=empty_page(page),
                )
                for name, entity, size in DASHBOARD_SECTIONS
            }
            results = await gather_sources(sources)
            overview: dict[str, Any] = {
                "organization_id": organization_id,
                "computed_at": datetime.now(timezone.utc).isoformat(),
                "degraded": sorted(name for name, r in results.items() if not r.ok),
            }
            for name, result in results.items():
                overview[name] = result.value
            return overview

        return await self.cache.get_or_compute(
            dashboard_key(organization_id, page, limit),
            dashboard_tags(organization_id),
            self.ttl_seconds,
            compute,
            timeout=self.timeout,
        )

    async def get_listing(
        self,
        organization_id: str,
        entity_type: EntityType,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Cached single-entity listing page. Fails if its only source fails."""
        entity_type = EntityType(entity_type)

        async def compute() -> dict[str, Any]:
            results = await gather_sources({
                entity_type.value: Source(
                    fetch=_page_fetcher(self.reader, organization_id, entity_type, page, limit),
                    default=empty_page(page),
                ),
            })
            return results[entity_type.value].value

        return await self.cache.get_or_compute(
            listing_key(organization_id, entity_type, page, limit),
            [scope_tag(entity_type, organization_id)],
            self.ttl_seconds,
            compute,
            timeout=self.timeout,
        )


def _page_fetcher(reader: EntityReader, organization_id: str, entity_type: EntityType,
                  page: int, limit: int):
    async def fetch():
        return await reader.list_page(organization_id, entity_type, page, limit)
    return fetch
