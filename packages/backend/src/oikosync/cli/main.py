"""Oikosync CLI — poke the live-update service from a terminal.

Usage:
    oikosync notify property 42 --org ORG --op updated   # Report a committed write
    oikosync dashboard --org ORG                         # Show the cached dashboard
    oikosync stats                                       # Bus / cache / relay counters
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("OIKOSYNC_API_URL", DEFAULT_API_URL).rstrip("/")


def _client(token: Optional[str]) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Oikosync backend."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when already inside an event loop (e.g. tests).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _org_id(org: Optional[str]) -> str:
    oid = org or os.environ.get("OIKOSYNC_ORG_ID")
    if not oid:
        click.secho(
            "Error: --org required (or set OIKOSYNC_ORG_ID env var)",
            fg="red",
            err=True,
        )
        sys.exit(1)
    return oid


def _token(token: Optional[str]) -> Optional[str]:
    return token or os.environ.get("OIKOSYNC_TOKEN")


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _fail(resp: httpx.Response) -> None:
    detail = resp.json().get("detail") if resp.headers.get("content-type", "").startswith(
        "application/json"
    ) else resp.text
    click.secho(f"Error {resp.status_code}: {detail}", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="oikosync")
def main():
    """Oikosync — change notifications and cached dashboards."""


@main.command()
@click.argument("entity_type")
@click.argument("entity_id")
@click.option("--org", "-o", help="Organization id (or set OIKOSYNC_ORG_ID)")
@click.option("--op", "operation", default="updated",
              type=click.Choice(["created", "updated", "archived", "deleted"]))
@click.option("--field", "fields", multiple=True, help="Updated field (repeatable)")
@click.option("--token", help="Access token (or set OIKOSYNC_TOKEN)")
def notify(entity_type: str, entity_id: str, org: Optional[str], operation: str,
           fields: tuple[str, ...], token: Optional[str]):
    """Report that ENTITY_TYPE ENTITY_ID was written and committed."""
    _run(_notify_impl(entity_type, entity_id, _org_id(org), operation, fields, _token(token)))


async def _notify_impl(entity_type: str, entity_id: str, org_id: str, operation: str,
                       fields: tuple[str, ...], token: Optional[str]):
    async with _client(token) as c:
        r = await c.post(f"/api/v1/orgs/{org_id}/changes", json={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            "updated_fields": list(fields),
        })
        if r.status_code != 202:
            _fail(r)
        event = r.json()
        click.secho(
            f"Published {event['type']} #{event['sequence']} for {event['entity_id']}",
            fg="green",
        )


@main.command()
@click.option("--org", "-o", help="Organization id (or set OIKOSYNC_ORG_ID)")
@click.option("--page", default=1, show_default=True)
@click.option("--token", help="Access token (or set OIKOSYNC_TOKEN)")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def dashboard(org: Optional[str], page: int, token: Optional[str], as_json: bool):
    """Show the cached dashboard overview of an organization."""
    _run(_dashboard_impl(_org_id(org), page, _token(token), as_json))


async def _dashboard_impl(org_id: str, page: int, token: Optional[str], as_json: bool):
    async with _client(token) as c:
        r = await c.get(f"/api/v1/orgs/{org_id}/dashboard", params={"page": page})
        if r.status_code != 200:
            _fail(r)
        data = r.json()

    if as_json:
        click.echo(_pretty_json(data))
        return
    click.secho(f"Dashboard for {org_id} (computed {data['computed_at']})", bold=True)
    for section in ("properties", "clients", "activities"):
        block = data[section]
        click.echo(f"  {section:<11} {block['total_count']:>6} total  "
                   f"page {block['page']}/{block['total_pages']}")
    if data["degraded"]:
        click.secho(f"  degraded: {', '.join(data['degraded'])}", fg="yellow")


@main.command()
@click.option("--token", help="Access token (or set OIKOSYNC_TOKEN)")
def stats(token: Optional[str]):
    """Show live-update runtime counters."""
    _run(_stats_impl(_token(token)))


async def _stats_impl(token: Optional[str]):
    async with _client(token) as c:
        r = await c.get("/api/v1/realtime/stats")
        if r.status_code != 200:
            _fail(r)
        click.echo(_pretty_json(r.json()))


if __name__ == "__main__":
    main()
