"""Tests for request ID middleware."""

import pytest
import structlog
from structlog.testing import LogCapture

from conftest import TEST_ORG_ID


@pytest.mark.asyncio
async def test_request_id_generated(client):
    """Each request gets a unique X-Request-ID header."""
    r1 = await client.get("/api/v1/realtime/stats")
    r2 = await client.get("/api/v1/realtime/stats")
    assert "X-Request-ID" in r1.headers
    assert "X-Request-ID" in r2.headers
    # Each request gets a unique ID
    assert r1.headers["X-Request-ID"] != r2.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_id_propagated(client):
    """Incoming X-Request-ID is propagated through the response."""
    custom_id = "crm-write-12345"
    r = await client.get(
        "/api/v1/realtime/stats",
        headers={"X-Request-ID": custom_id},
    )
    assert r.headers["X-Request-ID"] == custom_id


@pytest.mark.asyncio
async def test_request_id_reaches_notifier_logs(client):
    """The notifier's log line carries the request that caused it."""
    capture = LogCapture()
    previous = structlog.get_config()
    structlog.configure(processors=[structlog.contextvars.merge_contextvars, capture])
    try:
        await client.post(
            f"/api/v1/orgs/{TEST_ORG_ID}/changes",
            json={"entity_type": "property", "entity_id": "p-1", "operation": "updated"},
            headers={"X-Request-ID": "trace-abc"},
        )
    finally:
        structlog.configure(**previous)

    published = [e for e in capture.entries if e["event"] == "notifier.published"]
    assert len(published) == 1
    assert published[0]["request_id"] == "trace-abc"
    assert published[0]["sequence"] == 1
