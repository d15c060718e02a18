"""Per-source fallbacks for aggregate reads.

Learn: An aggregate like the dashboard reads several independent sources.
gather_sources() runs them concurrently and turns each one into a
SourceResult — either its value, or its declared default plus the original
error. A single broken source degrades the aggregate instead of failing it;
only when every source fails does the caller see AggregateComputeFailure.

    results = await gather_sources({
        "properties": Source(lambda: reader.list_page(...), default=EMPTY),
        "clients": Source(lambda: reader.list_page(...), default=EMPTY),
    })
    results["properties"].value   # real data or EMPTY
"""

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()


class ComputeFailure(Exception):
    """One named source of an aggregate failed."""

    def __init__(self, source: str, error: BaseException):
        super().__init__(f"Source {source!r} failed: {error!r}")
        self.source = source
        self.error = error


class AggregateComputeFailure(Exception):
    """Every source of an aggregate failed."""

    def __init__(self, failures: dict[str, ComputeFailure]):
        names = ", ".join(sorted(failures))
        super().__init__(f"All sources failed: {names}")
        self.failures = failures


@dataclass(frozen=True)
class Source:
    fetch: Callable[[], Awaitable[Any]]
    default: Any = None


@dataclass(frozen=True)
class SourceResult:
    name: str
    value: Any
    failure: Optional[ComputeFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


async def _run_source(name: str, source: Source) -> SourceResult:
    try:
        value = await source.fetch()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        failure = ComputeFailure(name, e)
        logger.warning("cache.source_failed", source=name, error=str(e), exc_info=True)
        # Copy so callers mutating one fallback never leak into the next.
        return SourceResult(name=name, value=copy.deepcopy(source.default), failure=failure)
    return SourceResult(name=name, value=value)


async def gather_sources(sources: dict[str, Source]) -> dict[str, SourceResult]:
    """Run sources concurrently; substitute defaults for the ones that fail."""
    if not sources:
        return {}
    names = list(sources)
    results = await asyncio.gather(*(_run_source(n, sources[n]) for n in names))
    by_name = dict(zip(names, results))

    failures = {r.name: r.failure for r in results if r.failure is not None}
    if len(failures) == len(by_name):
        raise AggregateComputeFailure(failures)
    return by_name
