"""Cached dashboard and listing API tests.

Learn: The reader's call counters show whether a request was served from
the cache (no new calls) or recomputed (one call per section).
"""

import asyncio

import pytest

from conftest import OTHER_ORG_ID, TEST_ORG_ID
from oikosync.api.dependencies import get_dashboard_service
from oikosync.events.types import EntityType
from oikosync.main import app
from oikosync.services.dashboard_service import DashboardService


@pytest.fixture
def seeded(reader):
    for i in range(7):
        reader.add(TEST_ORG_ID, EntityType.PROPERTY, title=f"Flat {i}", price=100_000 + i)
    reader.add(TEST_ORG_ID, EntityType.CLIENT, name="Alice")
    reader.add(TEST_ORG_ID, EntityType.ACTIVITY, kind="viewing")
    reader.add(OTHER_ORG_ID, EntityType.PROPERTY, title="Not yours")
    return reader


@pytest.mark.asyncio
async def test_dashboard_overview(client, seeded):
    resp = await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    assert resp.status_code == 200
    data = resp.json()
    assert data["organization_id"] == TEST_ORG_ID
    assert data["degraded"] == []
    assert data["properties"]["total_count"] == 7
    assert len(data["properties"]["items"]) == 5  # default section size
    assert data["properties"]["total_pages"] == 2
    assert data["properties"]["items"][0]["title"] == "Flat 6"
    assert data["clients"]["items"][0]["name"] == "Alice"
    assert data["activities"]["total_count"] == 1


@pytest.mark.asyncio
async def test_dashboard_is_cached(client, seeded):
    await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    assert seeded.calls[EntityType.PROPERTY] == 1


@pytest.mark.asyncio
async def test_concurrent_dashboard_reads_compute_once(client, seeded):
    seeded.delay = 0.05
    responses = await asyncio.gather(*(
        client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard") for _ in range(20)
    ))
    assert all(r.status_code == 200 for r in responses)
    assert seeded.calls[EntityType.PROPERTY] == 1
    assert len({r.json()["computed_at"] for r in responses}) == 1


@pytest.mark.asyncio
async def test_change_notification_refreshes_dashboard(client, seeded):
    url = f"/api/v1/orgs/{TEST_ORG_ID}/dashboard"
    before = (await client.get(url)).json()

    seeded.add(TEST_ORG_ID, EntityType.PROPERTY, title="Brand new")
    stale = (await client.get(url)).json()
    assert stale["properties"]["total_count"] == before["properties"]["total_count"]

    await client.post(f"/api/v1/orgs/{TEST_ORG_ID}/changes", json={
        "entity_type": "property", "entity_id": "property-8", "operation": "created",
    })
    after = (await client.get(url)).json()
    assert after["properties"]["total_count"] == 8
    assert after["properties"]["items"][0]["title"] == "Brand new"


@pytest.mark.asyncio
async def test_unrelated_change_keeps_cache(client, seeded):
    await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    await client.post(f"/api/v1/orgs/{TEST_ORG_ID}/changes", json={
        "entity_type": "task", "entity_id": "t-1", "operation": "created",
    })
    await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    assert seeded.calls[EntityType.PROPERTY] == 1


@pytest.mark.asyncio
async def test_pagination_params(client, seeded):
    resp = await client.get(
        f"/api/v1/orgs/{TEST_ORG_ID}/dashboard", params={"page": 2, "limit": 3}
    )
    assert resp.status_code == 200
    props = resp.json()["properties"]
    assert props["page"] == 2
    assert props["total_pages"] == 3
    assert [p["title"] for p in props["items"]] == ["Flat 3", "Flat 2", "Flat 1"]

    assert (await client.get(
        f"/api/v1/orgs/{TEST_ORG_ID}/dashboard", params={"page": 0}
    )).status_code == 422
    assert (await client.get(
        f"/api/v1/orgs/{TEST_ORG_ID}/dashboard", params={"limit": 500}
    )).status_code == 422


@pytest.mark.asyncio
async def test_failed_section_is_degraded(client, seeded):
    seeded.failing.add(EntityType.CLIENT)
    resp = await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    assert resp.status_code == 200
    data = resp.json()
    assert data["degraded"] == ["clients"]
    assert data["clients"]["items"] == []
    assert data["properties"]["total_count"] == 7


@pytest.mark.asyncio
async def test_all_sections_failing_is_503(client, seeded):
    seeded.failing.update({EntityType.PROPERTY, EntityType.CLIENT, EntityType.ACTIVITY})
    resp = await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    assert resp.status_code == 503

    # Failures are not cached: the next read tries again
    seeded.failing.clear()
    resp = await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_slow_dashboard_is_504(client, runtime, seeded):
    seeded.delay = 1.0
    app.dependency_overrides[get_dashboard_service] = lambda: DashboardService(
        runtime.cache, seeded, timeout=0.05
    )
    resp = await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/dashboard")
    assert resp.status_code == 504


@pytest.mark.asyncio
async def test_dashboard_of_other_org_is_not_found(client, seeded):
    resp = await client.get(f"/api/v1/orgs/{OTHER_ORG_ID}/dashboard")
    assert resp.status_code == 404


# ═══════════════════════════════════════════════════════════
# Listings
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_listing_page(client, seeded):
    resp = await client.get(
        f"/api/v1/orgs/{TEST_ORG_ID}/listings/property", params={"limit": 4}
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_count"] == 7
    assert data["total_pages"] == 2
    assert len(data["items"]) == 4


@pytest.mark.asyncio
async def test_listing_invalidated_by_its_entity_type_only(client, seeded):
    url = f"/api/v1/orgs/{TEST_ORG_ID}/listings/client"
    await client.get(url)
    await client.post(f"/api/v1/orgs/{TEST_ORG_ID}/changes", json={
        "entity_type": "property", "entity_id": "p-1", "operation": "updated",
    })
    await client.get(url)
    assert seeded.calls[EntityType.CLIENT] == 1

    await client.post(f"/api/v1/orgs/{TEST_ORG_ID}/changes", json={
        "entity_type": "client", "entity_id": "c-1", "operation": "updated",
    })
    await client.get(url)
    assert seeded.calls[EntityType.CLIENT] == 2


@pytest.mark.asyncio
async def test_listing_failure_is_503(client, seeded):
    seeded.failing.add(EntityType.ACTIVITY)
    resp = await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/listings/activity")
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_listing_unknown_entity_type(client):
    resp = await client.get(f"/api/v1/orgs/{TEST_ORG_ID}/listings/spaceship")
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_duplicate_notification_leaves_same_visible_state(client, seeded):
    url = f"/api/v1/orgs/{TEST_ORG_ID}/dashboard"
    change = {"entity_type": "property", "entity_id": "property-1", "operation": "updated"}

    await client.post(f"/api/v1/orgs/{TEST_ORG_ID}/changes", json=change)
    once = (await client.get(url)).json()
    await client.post(f"/api/v1/orgs/{TEST_ORG_ID}/changes", json=change)
    twice = (await client.get(url)).json()

    assert seeded.calls[EntityType.PROPERTY] == 2  # recomputed after each
    for section in ("properties", "clients", "activities"):
        assert twice[section] == once[section]
