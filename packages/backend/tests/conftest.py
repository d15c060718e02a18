"""Test fixtures — a fresh live-update runtime per test, no Postgres needed.

Learn: Testing pattern for the live-update pipeline:

1. Each test gets its own runtime (bus + cache + notifier) created on the
   test's event loop with the in-memory transport, and fully torn down after.
2. Dashboard reads go through an InMemoryReader swapped in with
   app.dependency_overrides, so the cache and fallback logic run for real
   against rows the test controls.
3. The HTTP client carries a real JWT for TEST_ORG_ID, so the auth and
   organization checks run exactly as in production.
"""

import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from oikosync.api.dependencies import get_entity_reader
from oikosync.auth.jwt import create_access_token
from oikosync.events.types import EntityType
from oikosync.main import app
from oikosync.services.readers import page_of

TEST_USER_ID = "00000000-0000-0000-0000-000000000001"
TEST_ORG_ID = "00000000-0000-0000-0000-000000000002"
OTHER_ORG_ID = "00000000-0000-0000-0000-000000000003"


class InMemoryReader:
    """EntityReader over plain lists, with failure and latency knobs."""

    def __init__(self):
        self.rows: dict[tuple[str, EntityType], list[dict[str, Any]]] = {}
        self.calls: dict[EntityType, int] = {}
        self.failing: set[EntityType] = set()
        self.delay: float = 0.0

    def add(self, organization_id: str, entity_type: EntityType, **row) -> dict:
        items = self.rows.setdefault((organization_id, entity_type), [])
        row.setdefault("id", f"{entity_type.value}-{len(items) + 1}")
        row.setdefault("organization_id", organization_id)
        items.insert(0, row)  # newest first, like the SQL reader
        return row

    async def list_page(self, organization_id, entity_type, page, limit):
        entity_type = EntityType(entity_type)
        self.calls[entity_type] = self.calls.get(entity_type, 0) + 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if entity_type in self.failing:
            raise RuntimeError(f"{entity_type.value} table unavailable")
        items = self.rows.get((organization_id, entity_type), [])
        start = (page - 1) * limit
        return page_of(list(items[start:start + limit]), len(items), page, limit)


def auth_headers(org_id: Optional[str] = TEST_ORG_ID, user_id: str = TEST_USER_ID) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, org_id)}"}


@pytest.fixture()
def reader():
    return InMemoryReader()


@pytest_asyncio.fixture()
async def runtime():
    """Fresh in-memory runtime bound to the test's event loop."""
    from oikosync.realtime.runtime import close_runtime, init_runtime

    rt = await init_runtime(transport="memory")
    try:
        yield rt
    finally:
        await close_runtime()


@pytest_asyncio.fixture()
async def client(runtime, reader):
    """HTTP client authenticated as a member of TEST_ORG_ID.

    Learn: Unlike overriding get_current_user, a real token exercises the
    org_id claim check in get_org_identity.
    """
    app.dependency_overrides[get_entity_reader] = lambda: reader

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers=auth_headers(),
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def unauthenticated_client(runtime, reader):
    """HTTP client WITHOUT a token — for testing the auth pipeline."""
    app.dependency_overrides[get_entity_reader] = lambda: reader

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
