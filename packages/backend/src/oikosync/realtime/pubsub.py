"""Redis pub/sub — change events across API processes.

Learn: With realtime_transport="redis" every process publishes its change
events to Redis instead of straight into its own bus, and every process
(including the publisher) feeds what it receives back into its local bus.
That keeps one code path for local and remote events.

Channel naming: oikosync:changes:{org_id}
Sequences:      INCR oikosync:seq:{org_id} — one counter per org, shared by
                all processes, so sequences stay monotonic cluster-wide.

Redis pub/sub is fire-and-forget. If a process is down it misses events —
that's fine for live UI refreshes (TTL bounds staleness, and the next event
triggers a full re-read anyway).
"""

import asyncio
from typing import Optional

import redis.asyncio as aioredis
import structlog

from oikosync.cache.store import TaggedCache
from oikosync.config import settings
from oikosync.events.types import ChangeEvent
from oikosync.realtime.bus import EventBus
from oikosync.realtime.ordering import ReorderBuffer

logger = structlog.get_logger()

CHANNEL_PREFIX = "oikosync:changes:"
SEQUENCE_PREFIX = "oikosync:seq:"

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def channel_for(organization_id: str) -> str:
    return f"{CHANNEL_PREFIX}{organization_id}"


class RedisRelay:
    """Transport that routes change events through Redis pub/sub.

    Implements the same next_sequence()/publish() interface as
    LocalTransport, plus a listener that delivers received events to the
    local bus in per-organization sequence order.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        bus: EventBus,
        cache: TaggedCache,
        gap_timeout: float = 0.5,
    ):
        self.redis = redis
        self.bus = bus
        self.cache = cache
        self.gap_timeout = gap_timeout
        self.buffer = ReorderBuffer()
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._gap_timers: dict[str, asyncio.TimerHandle] = {}

        self.received = 0
        self.late = 0
        self.gaps_skipped = 0

    # ─── Transport interface ───────────────────────────────

    async def next_sequence(self, organization_id: str) -> int:
        return int(await self.redis.incr(f"{SEQUENCE_PREFIX}{organization_id}"))

    async def publish(self, event: ChangeEvent) -> None:
        await self.redis.publish(channel_for(event.organization_id), event.to_json())

    # ─── Listener ──────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def start(self) -> None:
        self._pubsub = self.redis.pubsub()
        await self._pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        self._listener = asyncio.create_task(self._listen())
        logger.info("realtime.relay_started", pattern=f"{CHANNEL_PREFIX}*")

    async def stop(self) -> None:
        for timer in self._gap_timers.values():
            timer.cancel()
        self._gap_timers.clear()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("realtime.relay_stopped")

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] == "pmessage":
                    self.handle_message(message["data"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("realtime.relay_failed", error=str(e), exc_info=True)

    def handle_message(self, raw: str) -> int:
        """Process one raw channel payload. Returns events delivered locally."""
        try:
            event = ChangeEvent.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("realtime.relay_bad_payload", error=str(e))
            return 0

        self.received += 1
        # Remote writes must invalidate this process's cache too, even when
        # the event itself is too late to deliver.
        self.cache.invalidate_tag(event.tag)

        if self.buffer.is_late(event):
            self.late += 1
            logger.warning(
                "realtime.relay_late_event",
                organization_id=event.organization_id,
                sequence=event.sequence,
                last_delivered=self.buffer.last_delivered(event.organization_id),
            )
            return 0

        ready = self.buffer.offer(event)
        for e in ready:
            self.bus.publish(e)
        self._arm_gap_timer(event.organization_id)
        return len(ready)

    def _arm_gap_timer(self, organization_id: str) -> None:
        if not self.buffer.has_gap(organization_id):
            timer = self._gap_timers.pop(organization_id, None)
            if timer is not None:
                timer.cancel()
            return
        if organization_id not in self._gap_timers:
            loop = asyncio.get_running_loop()
            self._gap_timers[organization_id] = loop.call_later(
                self.gap_timeout, self._flush_gap, organization_id
            )

    def _flush_gap(self, organization_id: str) -> None:
        self._gap_timers.pop(organization_id, None)
        ready = self.buffer.flush(organization_id)
        if not ready:
            return
        self.gaps_skipped += 1
        logger.warning(
            "realtime.relay_gap_skipped",
            organization_id=organization_id,
            resumed_at=ready[0].sequence,
            released=len(ready),
        )
        for e in ready:
            self.bus.publish(e)

    def get_statistics(self) -> dict:
        return {
            "running": self.running,
            "received": self.received,
            "late": self.late,
            "gaps_skipped": self.gaps_skipped,
        }
