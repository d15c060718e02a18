"""Client subscription bridge — one per viewing session.

Learn: A dashboard tab cares about "anything changed in org O for these
entity types", not about each individual event. The bridge subscribes once,
collects events, and fires a single refresh per burst:

    events:   x  x x   x                  x
    timer:    |--W--|                      |--W--|
                 |--W--|                          → refresh([x])
                       |--W--| → refresh([x, x, x, x])

Each event re-arms the timer for `window` seconds, but never beyond
`max_wait` after the first pending event — under a continuous stream of
writes the view still refreshes at least every `max_wait` seconds.

Refreshes never overlap. A failing refresh is logged and leaves the previous
view on screen; the next event simply tries again.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from oikosync.events.types import ChangeEvent, EntityType
from oikosync.realtime.bus import EventBus, Subscription

logger = structlog.get_logger()

RefreshFn = Callable[[list[ChangeEvent]], Awaitable[None]]


class SubscriptionBridge:
    def __init__(
        self,
        bus: EventBus,
        refresh: RefreshFn,
        *,
        window: float = 0.25,
        max_wait: float = 1.0,
    ):
        if window <= 0:
            raise ValueError("window must be positive")
        if max_wait < window:
            raise ValueError("max_wait must be >= window")
        self.bus = bus
        self.refresh = refresh
        self.window = window
        self.max_wait = max_wait

        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._pending: list[ChangeEvent] = []
        self._first_pending_at: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._refresh_tasks: set[asyncio.Task] = set()
        self._refresh_lock = asyncio.Lock()

        self.events_received = 0
        self.refreshes = 0
        self.refresh_failures = 0

    # ─── Lifecycle ─────────────────────────────────────────

    @property
    def mounted(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def organization_id(self) -> Optional[str]:
        return self._subscription.organization_id if self._subscription else None

    @property
    def entity_types(self) -> frozenset[EntityType]:
        return self._subscription.entity_types if self._subscription else frozenset()

    def mount(self, organization_id: str, entity_types: Iterable[EntityType]) -> None:
        """Start receiving events for a scope, dropping any previous scope first."""
        self.unmount()
        self._generation += 1
        generation = self._generation
        self._subscription = self.bus.subscribe(
            organization_id,
            entity_types,
            lambda event: self._on_event(event, generation),
        )

    def rescope(self, organization_id: str, entity_types: Iterable[EntityType]) -> None:
        self.mount(organization_id, entity_types)

    def unmount(self) -> None:
        """Stop receiving events and cancel anything still scheduled."""
        if self._subscription is not None:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = []
        self._first_pending_at = None
        for task in list(self._refresh_tasks):
            task.cancel()

    # ─── Debounce ──────────────────────────────────────────

    def _on_event(self, event: ChangeEvent, generation: int) -> None:
        if generation != self._generation:
            return
        loop = asyncio.get_running_loop()
        now = loop.time()
        self.events_received += 1
        self._pending.append(event)
        if self._first_pending_at is None:
            self._first_pending_at = now

        deadline = min(now + self.window, self._first_pending_at + self.max_wait)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_at(deadline, self._fire)

    def _fire(self) -> None:
        self._timer = None
        batch, self._pending = self._pending, []
        self._first_pending_at = None
        if not batch:
            return
        task = asyncio.get_running_loop().create_task(self._run_refresh(batch))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _run_refresh(self, batch: list[ChangeEvent]) -> None:
        async with self._refresh_lock:
            try:
                await self.refresh(batch)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.refresh_failures += 1
                logger.warning(
                    "realtime.refresh_failed",
                    organization_id=self.organization_id,
                    events=len(batch),
                    error=str(e),
                    exc_info=True,
                )
            else:
                self.refreshes += 1
                logger.debug(
                    "realtime.refreshed",
                    organization_id=self.organization_id,
                    events=len(batch),
                    last_sequence=batch[-1].sequence,
                )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "events_received": self.events_received,
            "refreshes": self.refreshes,
            "refresh_failures": self.refresh_failures,
            "pending": len(self._pending),
        }
