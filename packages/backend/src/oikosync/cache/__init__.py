"""Cached read aggregation — tag-invalidated TTL cache with single-flight.

Learn: Reads that fan out to several tables (the dashboard) are memoized by
key and labelled with scope tags like "property:<org_id>". A write to that
scope invalidates the tag, so the next read recomputes once no matter how
many viewers ask at the same moment.
"""

from oikosync.cache.sources import (
    AggregateComputeFailure,
    ComputeFailure,
    Source,
    SourceResult,
    gather_sources,
)
from oikosync.cache.store import CacheEntry, ComputeTimeoutError, TaggedCache

__all__ = [
    "AggregateComputeFailure",
    "CacheEntry",
    "ComputeFailure",
    "ComputeTimeoutError",
    "Source",
    "SourceResult",
    "TaggedCache",
    "gather_sources",
]
