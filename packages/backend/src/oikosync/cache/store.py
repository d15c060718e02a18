"""Tag-invalidated TTL cache with single-flight recomputation.

Learn: Three maps, all mutated only between awaits on one event loop:
- _entries:     key → CacheEntry (the cached value, replaced whole)
- _tag_index:   tag → keys carrying it (so invalidate_tag is O(entries with tag))
- _inflight:    key → (the one asyncio.Task computing that key right now,
                 the tags it was started with)

Staleness is checked two ways on every read:
1. TTL — now - computed_at > ttl_seconds → evicted lazily
2. Tag generation — each tag has a counter bumped by invalidate_tag().
   An entry remembers the generations it was computed under; any mismatch
   means a write happened after the computation started → never returned.

Single-flight: the first caller for a missing key creates the computation
task, everyone else awaits the same task through asyncio.shield(), so one
caller giving up never cancels the work the others are waiting for.
invalidate_tag() detaches every in-flight computation carrying the tag:
callers already waiting keep it, callers arriving afterwards start fresh.

Timeout policy: the timeout passed by the caller that starts the flight
bounds the computation itself. On expiry the computation is cancelled, every
waiter gets ComputeTimeoutError, and nothing is written to the cache.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

logger = structlog.get_logger()

ComputeFn = Callable[[], Awaitable[Any]]


class ComputeTimeoutError(TimeoutError):
    """A shared computation exceeded its time bound."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Computing {key!r} exceeded {timeout:.3f}s")
        self.key = key
        self.timeout = timeout


@dataclass
class CacheEntry:
    key: str
    tags: frozenset[str]
    value: Any
    computed_at: float
    ttl_seconds: float
    generations: dict[str, int] = field(default_factory=dict)

    def expired(self, now: float) -> bool:
        return now - self.computed_at > self.ttl_seconds


class TaggedCache:
    """Process-scoped memo for expensive aggregate reads."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        default_timeout: Optional[float] = None,
    ):
        self._clock = clock
        self.default_timeout = default_timeout
        self._entries: dict[str, CacheEntry] = {}
        self._tag_index: dict[str, set[str]] = {}
        self._generations: dict[str, int] = {}
        self._inflight: dict[str, tuple[asyncio.Task, frozenset[str]]] = {}
        self._epoch = 0

        self._hits = 0
        self._misses = 0
        self._joined = 0
        self._computations = 0
        self._invalidations = 0
        self._discarded = 0

    # ─── Reads ─────────────────────────────────────────────

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for key, evicting it if stale."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()) or not self._generations_match(entry.generations):
            self._evict(key)
            return None
        return entry

    async def get_or_compute(
        self,
        key: str,
        tags: Iterable[str],
        ttl_seconds: float,
        compute_fn: ComputeFn,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Return the cached value for key, computing it at most once concurrently.

        compute_fn is an async zero-argument callable. All callers that arrive
        while a computation for key is in flight share its result or failure.
        """
        entry = self.peek(key)
        if entry is not None:
            self._hits += 1
            return entry.value

        timeout = self.default_timeout if timeout is None else timeout
        running = self._inflight.get(key)
        if running is None:
            self._misses += 1
            tags = frozenset(tags)
            flight = asyncio.get_running_loop().create_task(
                self._compute(key, tags, ttl_seconds, compute_fn, timeout)
            )
            flight.add_done_callback(_consume_exception)
            self._inflight[key] = (flight, tags)
        else:
            flight = running[0]
            self._joined += 1

        return await asyncio.shield(flight)

    async def _compute(
        self,
        key: str,
        tags: frozenset[str],
        ttl_seconds: float,
        compute_fn: ComputeFn,
        timeout: Optional[float],
    ) -> Any:
        epoch = self._epoch
        generations = {tag: self._generations.get(tag, 0) for tag in tags}
        self._computations += 1
        started = time.perf_counter()
        try:
            if timeout is None:
                value = await compute_fn()
            else:
                value = await asyncio.wait_for(compute_fn(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("cache.compute_timeout", key=key, timeout=timeout)
            raise ComputeTimeoutError(key, timeout) from None
        finally:
            running = self._inflight.get(key)
            if running is not None and running[0] is asyncio.current_task():
                del self._inflight[key]

        if epoch == self._epoch and self._generations_match(generations):
            self._store(CacheEntry(
                key=key,
                tags=tags,
                value=value,
                computed_at=self._clock(),
                ttl_seconds=ttl_seconds,
                generations=generations,
            ))
        else:
            # A tag was invalidated mid-computation: hand the value to the
            # waiters but let the next read recompute.
            self._discarded += 1
            logger.info("cache.stale_result_discarded", key=key)

        logger.debug(
            "cache.recompute",
            key=key,
            tags=sorted(tags),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return value

    # ─── Invalidation ──────────────────────────────────────

    def invalidate_tag(self, tag: str) -> int:
        """Invalidate every entry carrying tag. Returns entries dropped."""
        self._generations[tag] = self._generations.get(tag, 0) + 1
        self._invalidations += 1
        keys = self._tag_index.pop(tag, set())
        for key in keys:
            self._evict(key)
        detached = [key for key, (_, tags) in self._inflight.items() if tag in tags]
        for key in detached:
            del self._inflight[key]
        if keys or detached:
            logger.debug(
                "cache.invalidated", tag=tag, entries=len(keys), detached=len(detached)
            )
        return len(keys)

    def invalidate_key(self, key: str) -> bool:
        if key not in self._entries:
            return False
        self._evict(key)
        return True

    def clear(self) -> None:
        """Drop every entry. In-flight computations finish but are not stored."""
        self._entries.clear()
        self._tag_index.clear()
        self._inflight.clear()
        self._epoch += 1

    # ─── Internals ─────────────────────────────────────────

    def _generations_match(self, generations: dict[str, int]) -> bool:
        return all(
            self._generations.get(tag, 0) == seen for tag, seen in generations.items()
        )

    def _store(self, entry: CacheEntry) -> None:
        self._evict(entry.key)
        self._entries[entry.key] = entry
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(entry.key)

    def _evict(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]

    def get_statistics(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "inflight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "joined": self._joined,
            "computations": self._computations,
            "invalidations": self._invalidations,
            "discarded": self._discarded,
        }


def _consume_exception(task: asyncio.Task) -> None:
    # Every waiter may have been cancelled; mark the failure as retrieved.
    if not task.cancelled():
        task.exception()
