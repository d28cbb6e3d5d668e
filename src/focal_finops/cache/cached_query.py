"""Cache-first query execution with stale-while-revalidate and single-flight.

Read policy for one key (``age`` measured from the entry's cached_at):

    age <  stale_time           serve from cache, no fetch
    stale_time <= age < ttl     serve from cache, refresh in the background
    absent or age >= ttl        fetch, then serve

The orchestrator is process-wide and keeps at most one in-flight fetch task
per cache key; every handle asking for that key while it runs awaits the same
task. Each ``CachedQuery`` handle owns its in-memory state and a generation
counter so a slow result never overwrites a newer request's state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from focal_finops.cache.aggregation_cache import AggregationCache
from focal_finops.core.errors import QueryExecutionError

logger = structlog.get_logger(__name__)

QueryFn = Callable[[], Awaitable[Any]]


class QueryStatus(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    FRESH_FROM_CACHE = "fresh_from_cache"
    FETCHING = "fetching"
    READY = "ready"


@dataclass
class CachedQueryOptions:
    """Per-key execution policy.

    Attributes:
        cache_key: Aggregation cache key for the result.
        query_fn: Zero-argument coroutine function producing the result.
        ttl_seconds: Hard expiry written with the cached result.
        kind: Cache kind tag used for invalidation and stats.
        background_refresh: Revalidate stale entries in the background.
        stale_time_seconds: Age after which a cached result is stale.
        enabled: When False, load() does nothing.
    """

    cache_key: str
    query_fn: QueryFn
    ttl_seconds: float = 15 * 60
    kind: str = "query"
    background_refresh: bool = True
    stale_time_seconds: float = 5 * 60
    enabled: bool = True


@dataclass
class CachedQueryState:
    data: Any = None
    is_loading: bool = False
    is_fetching: bool = False
    is_from_cache: bool = False
    error: QueryExecutionError | None = None
    status: QueryStatus = QueryStatus.EMPTY
    updated_at: datetime | None = None


def daily_costs_options(cache_key: str, query_fn: QueryFn, **overrides: Any) -> CachedQueryOptions:
    """Daily cost trend: 4 hour TTL, stale after 30 minutes."""
    return CachedQueryOptions(
        cache_key=cache_key,
        query_fn=query_fn,
        ttl_seconds=4 * 60 * 60,
        kind="daily_costs",
        stale_time_seconds=30 * 60,
        **overrides,
    )


def service_breakdown_options(cache_key: str, query_fn: QueryFn, **overrides: Any) -> CachedQueryOptions:
    """Service breakdown: 4 hour TTL, stale after 30 minutes."""
    return CachedQueryOptions(
        cache_key=cache_key,
        query_fn=query_fn,
        ttl_seconds=4 * 60 * 60,
        kind="service_breakdown",
        stale_time_seconds=30 * 60,
        **overrides,
    )


def kpi_options(cache_key: str, query_fn: QueryFn, **overrides: Any) -> CachedQueryOptions:
    """Headline KPIs: 15 minute TTL, stale after 5 minutes."""
    return CachedQueryOptions(
        cache_key=cache_key,
        query_fn=query_fn,
        ttl_seconds=15 * 60,
        kind="kpi",
        stale_time_seconds=5 * 60,
        **overrides,
    )


class CachedQueryOrchestrator:
    """Single-flight fetch coordinator shared by every CachedQuery handle.

    Args:
        cache: Aggregation cache that results are read from and written to.
        query_timeout_seconds: Upper bound for one query_fn call.
    """

    def __init__(self, cache: AggregationCache, query_timeout_seconds: float = 60.0) -> None:
        self._cache = cache
        self._timeout = query_timeout_seconds
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    @property
    def cache(self) -> AggregationCache:
        return self._cache

    def handle(self, options: CachedQueryOptions) -> CachedQuery:
        """Create a consumer handle bound to this orchestrator."""
        return CachedQuery(self, options)

    def is_in_flight(self, cache_key: str) -> bool:
        task = self._in_flight.get(cache_key)
        return task is not None and not task.done()

    def fetch(self, options: CachedQueryOptions) -> asyncio.Task[Any]:
        """Return the in-flight task for the key, starting one if none runs."""
        task = self._in_flight.get(options.cache_key)
        if task is not None and not task.done():
            logger.debug("cached_query_joined_in_flight", cache_key=options.cache_key)
            return task

        task = asyncio.create_task(self._run(options), name=f"cached-query:{options.cache_key}")
        self._in_flight[options.cache_key] = task
        task.add_done_callback(lambda done, key=options.cache_key: self._forget(key, done))
        return task

    def _forget(self, cache_key: str, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(cache_key) is task:
            del self._in_flight[cache_key]

    async def _run(self, options: CachedQueryOptions) -> Any:
        logger.info("cached_query_fetch_started", cache_key=options.cache_key)
        try:
            value = await asyncio.wait_for(options.query_fn(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise QueryExecutionError(
                f"Query timed out after {self._timeout}s", cache_key=options.cache_key
            ) from exc
        except QueryExecutionError as exc:
            if exc.cache_key is None:
                exc.cache_key = options.cache_key
            raise
        except Exception as exc:
            raise QueryExecutionError(str(exc), cache_key=options.cache_key) from exc

        await self._cache.set(options.cache_key, value, ttl_seconds=options.ttl_seconds, kind=options.kind)
        logger.info("cached_query_fetch_completed", cache_key=options.cache_key)
        return value

    async def close(self) -> None:
        """Cancel every in-flight fetch."""
        tasks = [task for task in self._in_flight.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()


class CachedQuery:
    """Per-consumer view of one cached query.

    Args:
        orchestrator: Shared single-flight coordinator.
        options: Execution policy for the current key.
    """

    def __init__(self, orchestrator: CachedQueryOrchestrator, options: CachedQueryOptions) -> None:
        self._orchestrator = orchestrator
        self._options = options
        self._state = CachedQueryState()
        self._generation = 0
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def options(self) -> CachedQueryOptions:
        return self._options

    @property
    def state(self) -> CachedQueryState:
        return self._state

    def snapshot(self) -> CachedQueryState:
        """Copy of the current state, safe to hand to other code."""
        return replace(self._state)

    def change_key(self, options: CachedQueryOptions) -> None:
        """Switch to another key, dropping all in-memory state of the old one."""
        self._generation += 1
        self._options = options
        self._state = CachedQueryState()
        self._refresh_task = None

    async def load(self, bypass_cache: bool = False) -> CachedQueryState:
        """Serve the key according to the cache-first policy.

        Never raises for query failures: they are stored in ``state.error``
        and previously held data is kept.
        """
        if not self._options.enabled:
            return self._state

        self._generation += 1
        generation = self._generation
        cache = self._orchestrator.cache

        if not bypass_cache:
            entry = await cache.get_entry(self._options.cache_key)
            if generation != self._generation:
                return self._state
            if entry is not None:
                age = entry.age_seconds(cache.now())
                state = self._state
                state.data = entry.value
                state.is_from_cache = True
                state.is_loading = False
                state.error = None
                state.status = QueryStatus.FRESH_FROM_CACHE
                state.updated_at = entry.cached_at
                state.is_fetching = False

                if age >= self._options.stale_time_seconds and self._options.background_refresh:
                    logger.debug(
                        "cached_query_stale_revalidating",
                        cache_key=self._options.cache_key,
                        age_seconds=age,
                    )
                    state.is_fetching = True
                    state.status = QueryStatus.FETCHING
                    self._refresh_task = asyncio.create_task(self._fetch(generation))
                return state

        self._state.is_loading = True
        self._state.status = QueryStatus.LOADING
        await self._fetch(generation)
        return self._state

    async def refetch(self) -> CachedQueryState:
        """Fetch unconditionally, bypassing the cache read."""
        return await self.load(bypass_cache=True)

    async def invalidate(self) -> None:
        """Drop the in-memory state and the cache entry for the current key."""
        self._generation += 1
        self._state = CachedQueryState()
        self._refresh_task = None
        await self._orchestrator.cache.set(self._options.cache_key, None, ttl_seconds=0)

    async def wait_for_refresh(self) -> None:
        """Await the background refresh started by the last stale read, if any."""
        if self._refresh_task is not None:
            await self._refresh_task

    async def _fetch(self, generation: int) -> None:
        task = self._orchestrator.fetch(self._options)
        try:
            value = await asyncio.shield(task)
        except QueryExecutionError as exc:
            if generation != self._generation:
                return
            logger.warning(
                "cached_query_fetch_failed",
                cache_key=self._options.cache_key,
                error=str(exc),
            )
            state = self._state
            state.error = exc
            state.is_loading = False
            state.is_fetching = False
            state.status = QueryStatus.READY if state.data is not None else QueryStatus.EMPTY
            return

        if generation != self._generation:
            logger.debug("cached_query_result_superseded", cache_key=self._options.cache_key)
            return

        state = self._state
        state.data = value
        state.is_from_cache = False
        state.is_loading = False
        state.is_fetching = False
        state.error = None
        state.status = QueryStatus.READY
        state.updated_at = self._orchestrator.cache.now()


__all__ = [
    "CachedQuery",
    "CachedQueryOptions",
    "CachedQueryOrchestrator",
    "CachedQueryState",
    "QueryStatus",
    "daily_costs_options",
    "kpi_options",
    "service_breakdown_options",
]
