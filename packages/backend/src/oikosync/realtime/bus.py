"""In-process event bus — fan-out of ChangeEvents to scoped subscribers.

Learn: The registry is a multimap keyed by (organization_id, entity_type).
publish() only touches the bucket for the event's own scope, so fan-out costs
O(k) for k matching subscriptions and unrelated organizations never contend.

Every Subscription owns a bounded asyncio.Queue and a worker task that drains
it in FIFO order. publish() is synchronous and only does put_nowait(), so a
slow callback delays nobody but itself. Because the bus lives on one event
loop, registry mutations (subscribe, unsubscribe, publish) run between awaits
and are atomic with respect to each other — no lock is ever held while a
callback runs.

Overflow: when a subscriber falls `queue_size` events behind, the oldest queued
event is dropped. Refreshes re-read current state, so losing an intermediate
event costs nothing but a log line; order is still preserved.
"""

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog

from oikosync.events.types import ChangeEvent, EntityType

logger = structlog.get_logger()

Callback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class OrganizationNotFoundError(Exception):
    """Raised when a subscribe/notify targets an unresolvable organization."""


class SubscriberFailure(Exception):
    """Wraps an exception raised by a subscriber callback.

    Never propagated to the publisher — kept on the subscription as
    last_error and logged.
    """

    def __init__(self, subscription_id: str, event: ChangeEvent, error: BaseException):
        super().__init__(
            f"Subscriber {subscription_id} failed on {event.type}: {error!r}"
        )
        self.subscription_id = subscription_id
        self.event = event
        self.error = error


@dataclass(eq=False)
class Subscription:
    """Handle returned by EventBus.subscribe()."""

    organization_id: str
    entity_types: frozenset[EntityType]
    callback: Callback
    queue: asyncio.Queue
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    active: bool = True
    delivered: int = 0
    failed: int = 0
    dropped: int = 0
    last_error: Optional[SubscriberFailure] = None
    _worker: Optional[asyncio.Task] = field(default=None, repr=False)

    def matches(self, event: ChangeEvent) -> bool:
        return (
            self.active
            and event.organization_id == self.organization_id
            and event.entity_type in self.entity_types
        )


class EventBus:
    """Scoped pub/sub with a bounded queue per subscriber."""

    def __init__(self, queue_size: int = 1000):
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.queue_size = queue_size
        self._registry: dict[tuple[str, EntityType], dict[str, Subscription]] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._total_published = 0
        self._total_delivered = 0
        self._total_errors = 0
        self._total_dropped = 0

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    # ─── Registration ──────────────────────────────────────

    def subscribe(
        self,
        organization_id: str,
        entity_types: Iterable[EntityType],
        callback: Callback,
    ) -> Subscription:
        """Register a callback for one organization and a set of entity types.

        Must be called from inside the running event loop — the subscription's
        worker task is started immediately.
        """
        if not organization_id:
            raise OrganizationNotFoundError("organization_id is required")
        types = frozenset(EntityType(t) for t in entity_types)
        if not types:
            raise ValueError("At least one entity type is required")

        self._loop = asyncio.get_running_loop()
        sub = Subscription(
            organization_id=organization_id,
            entity_types=types,
            callback=callback,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        for entity_type in types:
            self._registry.setdefault((organization_id, entity_type), {})[sub.id] = sub
        self._subscriptions[sub.id] = sub
        sub._worker = self._loop.create_task(self._drain(sub))

        logger.info(
            "realtime.subscribed",
            subscription_id=sub.id,
            organization_id=organization_id,
            entity_types=sorted(t.value for t in types),
        )
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Deactivate and remove a subscription. Safe to call repeatedly."""
        if not sub.active:
            return
        sub.active = False
        for entity_type in sub.entity_types:
            key = (sub.organization_id, entity_type)
            bucket = self._registry.get(key)
            if bucket is None:
                continue
            bucket.pop(sub.id, None)
            if not bucket:
                del self._registry[key]
        self._subscriptions.pop(sub.id, None)
        if sub._worker is not None and not sub._worker.done():
            sub._worker.cancel()

        logger.info(
            "realtime.unsubscribed",
            subscription_id=sub.id,
            organization_id=sub.organization_id,
            delivered=sub.delivered,
            failed=sub.failed,
        )

    async def close(self) -> None:
        """Unsubscribe everyone and wait for the workers to stop."""
        subs = list(self._subscriptions.values())
        workers = [s._worker for s in subs if s._worker is not None]
        for sub in subs:
            self.unsubscribe(sub)
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    # ─── Publishing ────────────────────────────────────────

    def publish(self, event: ChangeEvent) -> int:
        """Enqueue an event for every matching subscriber. Never blocks.

        Returns the number of subscriptions the event was queued for.
        """
        self._total_published += 1
        bucket = self._registry.get((event.organization_id, event.entity_type))
        if not bucket:
            return 0

        queued = 0
        for sub in list(bucket.values()):
            if not sub.matches(event):
                continue
            if sub.queue.full():
                sub.queue.get_nowait()
                sub.dropped += 1
                self._total_dropped += 1
                logger.warning(
                    "realtime.subscriber_overflow",
                    subscription_id=sub.id,
                    organization_id=sub.organization_id,
                    dropped=sub.dropped,
                )
            sub.queue.put_nowait(event)
            queued += 1
        return queued

    def publish_threadsafe(self, event: ChangeEvent) -> None:
        """Publish from a thread that does not own the bus's event loop."""
        if self._loop is None:
            raise RuntimeError("EventBus is not bound to an event loop yet")
        self._loop.call_soon_threadsafe(self.publish, event)

    async def _drain(self, sub: Subscription) -> None:
        while sub.active:
            event = await sub.queue.get()
            if not sub.active:
                break
            try:
                result = sub.callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failure = SubscriberFailure(sub.id, event, e)
                sub.failed += 1
                sub.last_error = failure
                self._total_errors += 1
                logger.error(
                    "realtime.subscriber_failed",
                    subscription_id=sub.id,
                    organization_id=sub.organization_id,
                    event_type=event.type,
                    sequence=event.sequence,
                    error=str(e),
                    exc_info=True,
                )
            else:
                sub.delivered += 1
                self._total_delivered += 1

    # ─── Introspection ─────────────────────────────────────

    def subscriber_count(
        self,
        organization_id: Optional[str] = None,
        entity_type: Optional[EntityType] = None,
    ) -> int:
        if organization_id is None:
            return len(self._subscriptions)
        if entity_type is not None:
            return len(self._registry.get((organization_id, entity_type), {}))
        return sum(
            1 for s in self._subscriptions.values()
            if s.organization_id == organization_id
        )

    def get_statistics(self) -> dict[str, Any]:
        return {
            "total_published": self._total_published,
            "total_delivered": self._total_delivered,
            "total_errors": self._total_errors,
            "total_dropped": self._total_dropped,
            "pending_events": sum(s.queue.qsize() for s in self._subscriptions.values()),
            "subscriber_count": len(self._subscriptions),
            "organization_count": len({s.organization_id for s in self._subscriptions.values()}),
        }
