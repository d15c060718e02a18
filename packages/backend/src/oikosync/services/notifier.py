"""Change notifier — the single entry point for "something was written".

Learn: Every write path calls notify_change() AFTER its commit succeeds.
For each call, under a per-organization lock:
1. Allocate the next sequence number for the organization
2. Build an immutable ChangeEvent
3. Invalidate the cache tag "<entity_type>:<org_id>"
4. Publish the event through the transport

Step 3 happens-before step 4, so any refresh triggered by the event already
sees invalidated cache state. The lock is per organization: two orgs never
wait on each other, but one org's events leave in sequence order.

Duplicate calls are NOT deduplicated — each produces a new event. Refreshes
re-read current state, so a duplicate costs one cheap recompute at most.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Iterable, Optional, Protocol

import structlog

from oikosync.cache.store import TaggedCache
from oikosync.events.types import ChangeEvent, EntityType, Operation
from oikosync.realtime.bus import EventBus, OrganizationNotFoundError

logger = structlog.get_logger()

OrganizationResolver = Callable[[str], Awaitable[bool]]


class Transport(Protocol):
    """Where sequences come from and where events go."""

    async def next_sequence(self, organization_id: str) -> int: ...

    async def publish(self, event: ChangeEvent) -> None: ...


class LocalTransport:
    """Single-process transport: in-memory sequences, direct bus publish."""

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._sequences: dict[str, int] = {}

    async def next_sequence(self, organization_id: str) -> int:
        seq = self._sequences.get(organization_id, 0) + 1
        self._sequences[organization_id] = seq
        return seq

    async def publish(self, event: ChangeEvent) -> None:
        self.bus.publish(event)


class ChangeNotifier:
    def __init__(
        self,
        cache: TaggedCache,
        transport: Transport,
        organization_resolver: Optional[OrganizationResolver] = None,
    ):
        self.cache = cache
        self.transport = transport
        self.organization_resolver = organization_resolver
        # org → [lock, callers holding or waiting on it]; dropped when idle
        self._locks: dict[str, list] = {}

    async def notify_change(
        self,
        entity_type: EntityType,
        entity_id: str,
        organization_id: str,
        operation: Operation,
        *,
        updated_by: Optional[str] = None,
        updated_fields: Iterable[str] = (),
        source: str = "api",
    ) -> ChangeEvent:
        """Record a committed write. Returns the published event."""
        if not organization_id:
            raise OrganizationNotFoundError("organization_id is required")
        if self.organization_resolver is not None:
            if not await self.organization_resolver(organization_id):
                raise OrganizationNotFoundError(
                    f"Organization {organization_id} not found"
                )

        entity_type = EntityType(entity_type)
        operation = Operation(operation)

        async with self._organization_lock(organization_id):
            sequence = await self.transport.next_sequence(organization_id)
            event = ChangeEvent(
                entity_type=entity_type,
                entity_id=str(entity_id),
                organization_id=organization_id,
                operation=operation,
                sequence=sequence,
                updated_by=updated_by,
                updated_fields=tuple(updated_fields),
                source=source,
            )
            invalidated = self.cache.invalidate_tag(event.tag)
            await self.transport.publish(event)

        logger.info(
            "notifier.published",
            event_type=event.type,
            entity_id=event.entity_id,
            organization_id=organization_id,
            sequence=sequence,
            invalidated=invalidated,
        )
        return event

    @asynccontextmanager
    async def _organization_lock(self, organization_id: str):
        slot = self._locks.get(organization_id)
        if slot is None:
            slot = self._locks[organization_id] = [asyncio.Lock(), 0]
        slot[1] += 1
        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[organization_id]

    @property
    def active_organizations(self) -> int:
        """Organizations with a notification in progress or queued."""
        return len(self._locks)
