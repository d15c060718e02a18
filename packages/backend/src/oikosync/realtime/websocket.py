"""WebSocket endpoint — one live viewing session per connection.

Learn: Each browser view connects to
    /ws/{org_id}?token=JWT&entity_types=property,client
The handler:
1. Authenticates the token and checks it belongs to org_id
2. Mounts a SubscriptionBridge for (org_id, entity_types)
3. Sends a "refresh" frame after each debounced burst, carrying the
   coalesced events and the freshly re-read dashboard
4. Sends a "heartbeat" frame every heartbeat_interval_seconds
5. Answers {"type": "ping"} with pong and {"type": "rescope", ...} by
   moving the bridge to new entity types

When the client disconnects the bridge is unmounted: no event reaches a
closed socket.
"""

import asyncio
import json
import time
from typing import Any, Iterable, Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from oikosync.auth.dependencies import identity_from_token
from oikosync.auth.jwt import TokenError
from oikosync.config import settings
from oikosync.events.types import ChangeEvent, EntityType, parse_entity_types
from oikosync.realtime.bridge import SubscriptionBridge
from oikosync.realtime.runtime import LiveRuntime, get_runtime
from oikosync.services.dashboard_service import DASHBOARD_ENTITY_TYPES, DashboardService
from oikosync.services.readers import SqlEntityReader

logger = structlog.get_logger()
router = APIRouter()

DEFAULT_ENTITY_TYPES = "property,client,activity"


class LiveSession:
    """Drives one WebSocket: bridge refreshes out, client commands in."""

    def __init__(
        self,
        websocket,
        runtime: LiveRuntime,
        dashboard: DashboardService,
        organization_id: str,
        entity_types: Iterable[EntityType],
        *,
        window: Optional[float] = None,
        max_wait: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.websocket = websocket
        self.dashboard = dashboard
        self.organization_id = organization_id
        self.heartbeat_interval = (
            settings.heartbeat_interval_seconds if heartbeat_interval is None
            else heartbeat_interval
        )
        self.bridge = SubscriptionBridge(
            runtime.bus,
            self._refresh,
            window=settings.live_debounce_ms / 1000 if window is None else window,
            max_wait=settings.live_max_wait_ms / 1000 if max_wait is None else max_wait,
        )
        self._initial_types = frozenset(entity_types)
        self._send_lock = asyncio.Lock()

    async def run(self) -> None:
        self.bridge.mount(self.organization_id, self._initial_types)
        await self._send({
            "type": "connection",
            "status": "connected",
            "organization_id": self.organization_id,
            "entity_types": sorted(t.value for t in self._initial_types),
            "timestamp": time.time(),
        })

        heartbeat_task = asyncio.create_task(self._heartbeat())
        client_task = asyncio.create_task(self._client_listener())
        try:
            done, pending = await asyncio.wait(
                [heartbeat_task, client_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            self.bridge.unmount()
            logger.info(
                "realtime.session_closed",
                organization_id=self.organization_id,
                **self.bridge.stats,
            )

    async def _refresh(self, batch: list[ChangeEvent]) -> None:
        frame: dict[str, Any] = {
            "type": "refresh",
            "organization_id": self.organization_id,
            "last_sequence": batch[-1].sequence,
            "events": [e.to_dict() for e in batch],
        }
        if self.bridge.entity_types & DASHBOARD_ENTITY_TYPES:
            frame["dashboard"] = await self.dashboard.get_dashboard(self.organization_id)
        await self._send(frame)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self._send({"type": "heartbeat", "timestamp": time.time()})

    async def _client_listener(self) -> None:
        try:
            while True:
                data = await self.websocket.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                await self._handle_command(msg)
        except WebSocketDisconnect:
            pass

    async def _handle_command(self, msg: dict) -> None:
        kind = msg.get("type")
        if kind == "ping":
            await self._send({"type": "pong"})
        elif kind == "rescope":
            try:
                types = frozenset(EntityType(t) for t in msg.get("entity_types") or [])
            except ValueError:
                await self._send({"type": "error", "detail": "Unknown entity type"})
                return
            if not types:
                await self._send({"type": "error", "detail": "entity_types is required"})
                return
            self.bridge.rescope(self.organization_id, types)
            await self._send({
                "type": "rescoped",
                "entity_types": sorted(t.value for t in types),
            })

    async def _send(self, frame: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(frame, default=str))


@router.websocket("/ws/{org_id}")
async def org_websocket(websocket: WebSocket, org_id: str):
    """WebSocket endpoint for live updates of one organization."""
    # ── Authentication ──────────────────────────────────────
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return
    try:
        identity = identity_from_token(token)
    except TokenError:
        await websocket.close(code=4001, reason="Invalid or expired token")
        return
    if not identity.can_access(org_id):
        await websocket.close(code=4004, reason="Organization not found")
        return

    try:
        entity_types = parse_entity_types(
            websocket.query_params.get("entity_types") or DEFAULT_ENTITY_TYPES
        )
    except ValueError:
        await websocket.close(code=4400, reason="Unknown entity type")
        return
    if not entity_types:
        await websocket.close(code=4400, reason="entity_types is required")
        return

    try:
        runtime = get_runtime()
    except RuntimeError:
        await websocket.close(code=1013, reason="Live updates unavailable")
        return

    # ── Connection accepted ─────────────────────────────────
    await websocket.accept()
    session = LiveSession(
        websocket,
        runtime,
        DashboardService(runtime.cache, SqlEntityReader(), timeout=settings.compute_timeout_seconds),
        org_id,
        entity_types,
    )
    try:
        await session.run()
    finally:
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
