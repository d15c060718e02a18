"""Process-scoped live-update runtime.

Learn: The bus, the cache and the notifier are shared by every request and
every WebSocket in the process. They are created together in the FastAPI
lifespan (init_runtime), looked up with get_runtime(), and torn down with
close_runtime() — which also fully resets them, so tests start clean.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from oikosync.cache.store import TaggedCache
from oikosync.config import settings
from oikosync.realtime.bus import EventBus
from oikosync.realtime.pubsub import RedisRelay, close_redis, init_redis
from oikosync.services.notifier import (
    ChangeNotifier,
    LocalTransport,
    OrganizationResolver,
)

logger = structlog.get_logger()


@dataclass
class LiveRuntime:
    bus: EventBus
    cache: TaggedCache
    notifier: ChangeNotifier
    relay: Optional[RedisRelay] = None

    def get_statistics(self) -> dict:
        return {
            "transport": "redis" if self.relay else "memory",
            "bus": self.bus.get_statistics(),
            "cache": self.cache.get_statistics(),
            "relay": self.relay.get_statistics() if self.relay else None,
        }


_runtime: Optional[LiveRuntime] = None


async def init_runtime(
    transport: Optional[str] = None,
    organization_resolver: Optional[OrganizationResolver] = None,
) -> LiveRuntime:
    """Create the process-wide runtime. Idempotent."""
    global _runtime
    if _runtime is not None:
        return _runtime

    mode = transport or settings.realtime_transport
    bus = EventBus(queue_size=settings.subscriber_queue_size)
    bus.bind_loop(asyncio.get_running_loop())
    cache = TaggedCache(default_timeout=settings.compute_timeout_seconds)

    relay = None
    if mode == "redis":
        redis = await init_redis()
        relay = RedisRelay(redis, bus, cache, gap_timeout=settings.reorder_gap_ms / 1000)
        await relay.start()
        notifier = ChangeNotifier(cache, relay, organization_resolver)
    else:
        notifier = ChangeNotifier(cache, LocalTransport(bus), organization_resolver)

    _runtime = LiveRuntime(bus=bus, cache=cache, notifier=notifier, relay=relay)
    logger.info("realtime.runtime_started", transport=mode)
    return _runtime


def get_runtime() -> LiveRuntime:
    """Get the runtime (must be initialized first)."""
    if _runtime is None:
        raise RuntimeError("Live runtime not initialized. Call init_runtime() first.")
    return _runtime


async def close_runtime() -> None:
    """Stop the relay, drop every subscription and cache entry."""
    global _runtime
    if _runtime is None:
        return
    runtime, _runtime = _runtime, None
    if runtime.relay is not None:
        await runtime.relay.stop()
        await close_redis()
    await runtime.bus.close()
    runtime.cache.clear()
    logger.info("realtime.runtime_stopped")
