#!/usr/bin/env python3
"""
Oikosync Quickstart — a burst of writes and what the dashboard sees.

Reports three committed property writes → reads the cached dashboard →
prints the live-update counters.
Run with: python examples/quickstart.py

Requires: pip install httpx
Backend must be running: http://localhost:8000
Set OIKOSYNC_TOKEN to an access token and OIKOSYNC_ORG_ID to its organization.
"""

import os
import sys

import httpx

BASE = os.environ.get("OIKOSYNC_API_URL", "http://localhost:8000") + "/api/v1"


def main():
    token = os.environ.get("OIKOSYNC_TOKEN")
    org_id = os.environ.get("OIKOSYNC_ORG_ID")
    if not token or not org_id:
        print("Set OIKOSYNC_TOKEN and OIKOSYNC_ORG_ID first.")
        sys.exit(1)

    client = httpx.Client(
        base_url=BASE,
        timeout=10,
        headers={"Authorization": f"Bearer {token}"},
    )

    # ── Health check ──────────────────────────────────────────────
    print("Checking backend health...")
    resp = client.get("/health")
    if resp.status_code != 200:
        print(f"Backend not reachable at {BASE}")
        sys.exit(1)
    health = resp.json()
    print(f"  Status:   {health['status']}")
    print(f"  Realtime: {'✓' if health['realtime'] == 'ok' else '✗'}")
    print(f"  Postgres: {'✓' if health['postgres'] == 'ok' else '✗'}")

    # ── First read fills the cache ────────────────────────────────
    print("\n1. Reading dashboard (cold)...")
    resp = client.get(f"/orgs/{org_id}/dashboard")
    assert resp.status_code == 200, f"Failed: {resp.text}"
    print(f"   Computed at {resp.json()['computed_at']}")

    # ── Burst of writes ───────────────────────────────────────────
    print("\n2. Reporting three property writes...")
    for i, op in enumerate(["created", "updated", "updated"], start=1):
        resp = client.post(f"/orgs/{org_id}/changes", json={
            "entity_type": "property",
            "entity_id": "quickstart-property",
            "operation": op,
            "updated_fields": ["price"] if op == "updated" else [],
        })
        assert resp.status_code == 202, f"Failed: {resp.text}"
        event = resp.json()
        print(f"   {event['type']:<18} sequence {event['sequence']}")

    # ── Second read recomputes once ───────────────────────────────
    print("\n3. Reading dashboard (after writes)...")
    resp = client.get(f"/orgs/{org_id}/dashboard")
    assert resp.status_code == 200, f"Failed: {resp.text}"
    data = resp.json()
    print(f"   Recomputed at {data['computed_at']}")
    print(f"   Properties: {data['properties']['total_count']}")
    if data["degraded"]:
        print(f"   Degraded sections: {', '.join(data['degraded'])}")

    # ── Counters ──────────────────────────────────────────────────
    stats = client.get("/realtime/stats").json()
    print("\n4. Live-update counters:")
    print(f"   Published:     {stats['bus']['total_published']}")
    print(f"   Subscribers:   {stats['bus']['subscriber_count']}")
    print(f"   Cache hits:    {stats['cache']['hits']}")
    print(f"   Invalidations: {stats['cache']['invalidations']}")

    print("\nOpen ws://localhost:8000/ws/{org}?token=... in a browser tab and rerun")
    print("to watch one debounced 'refresh' frame arrive per burst.")


if __name__ == "__main__":
    main()
