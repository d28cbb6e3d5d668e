"""Unit tests for the aggregation cache."""

from unittest.mock import AsyncMock

import pytest

from focal_finops.adapters.kv_store import InMemoryKeyValueStore
from focal_finops.cache.aggregation_cache import (
    CACHE_TTL_SECONDS,
    AggregationCache,
    CacheEntry,
    make_cache_key,
)


# ---------------------------------------------------------------------------
# make_cache_key
# ---------------------------------------------------------------------------


class TestMakeCacheKey:
    """Tests for deterministic cache key construction."""

    def test_params_are_sorted_by_name(self) -> None:
        key = make_cache_key("daily_costs", {"start": "2026-01-01", "end": "2026-02-01"})
        assert key == "daily_costs:end=2026-02-01&start=2026-01-01"

    def test_kind_only_without_params(self) -> None:
        assert make_cache_key("kpi") == "kpi"
        assert make_cache_key("kpi", {}) == "kpi"


# ---------------------------------------------------------------------------
# TTL semantics
# ---------------------------------------------------------------------------


class TestAggregationCacheTtl:
    """Tests for the age < ttl / age >= ttl boundary."""

    @pytest.mark.asyncio
    async def test_entry_live_before_ttl(self, cache: AggregationCache, clock) -> None:
        """A value written with ttl=60 is returned at every age below 60 seconds."""
        await cache.set("k", {"total": 10}, ttl_seconds=60)

        clock.advance(seconds=59.999)

        assert await cache.get("k") == {"total": 10}

    @pytest.mark.asyncio
    async def test_entry_absent_at_ttl(self, cache: AggregationCache, clock) -> None:
        """At age == ttl the entry is treated as absent."""
        await cache.set("k", [1, 2, 3], ttl_seconds=60)

        clock.advance(seconds=60)

        assert await cache.get("k") is None
        assert await cache.get_entry("k") is None

    @pytest.mark.asyncio
    async def test_expired_entry_not_deleted_on_read(
        self,
        cache: AggregationCache,
        kv_store: InMemoryKeyValueStore,
        clock,
    ) -> None:
        """Expired entries stay in the store until cleanup() sweeps them."""
        await cache.set("k", "v", ttl_seconds=10)
        clock.advance(seconds=11)

        assert await cache.get("k") is None
        assert await kv_store.list_keys("focal_cache") == ["k"]

        assert await cache.cleanup() == 1
        assert await kv_store.list_keys("focal_cache") == []

    @pytest.mark.asyncio
    async def test_default_ttl_comes_from_kind(self, cache: AggregationCache) -> None:
        await cache.set("anomalies:x", [], kind="anomalies")

        entry = await cache.get_entry("anomalies:x")

        assert entry is not None
        assert entry.ttl_seconds == CACHE_TTL_SECONDS["anomalies"]

    @pytest.mark.asyncio
    async def test_unknown_kind_uses_default_ttl(self, kv_store: InMemoryKeyValueStore, clock) -> None:
        cache = AggregationCache(kv_store, default_ttl_seconds=123, clock=clock)

        await cache.set("custom-key", 1)

        entry = await cache.get_entry("custom-key")
        assert entry is not None
        assert entry.ttl_seconds == 123
        assert entry.kind == "custom"


# ---------------------------------------------------------------------------
# Invalidation
# ---------------------------------------------------------------------------


class TestAggregationCacheInvalidation:
    """Tests for invalidate, invalidate_kind and invalidate_all."""

    @pytest.mark.asyncio
    async def test_invalidate_then_get_is_absent(self, cache: AggregationCache) -> None:
        await cache.set("k", "value", ttl_seconds=10_000)

        await cache.invalidate("k")

        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_invalidate_missing_key_is_noop(self, cache: AggregationCache) -> None:
        await cache.invalidate("never-written")
        await cache.invalidate("never-written")

        assert await cache.get("never-written") is None

    @pytest.mark.asyncio
    async def test_none_value_with_zero_ttl_deletes(
        self,
        cache: AggregationCache,
        kv_store: InMemoryKeyValueStore,
    ) -> None:
        await cache.set("k", {"a": 1})

        await cache.set("k", None, ttl_seconds=0)

        assert await kv_store.list_keys("focal_cache") == []

    @pytest.mark.asyncio
    async def test_invalidate_kind_only_touches_that_kind(self, cache: AggregationCache) -> None:
        await cache.set_daily_costs("2026-01-01", "2026-02-01", [{"total": 1.0}])
        await cache.set_service_breakdown("2026-01-01", "2026-02-01", [{"cost": 2.0}])
        await cache.set_kpis({"totalCost": 3.0})

        deleted = await cache.invalidate_kind("daily_costs")

        assert deleted == 1
        assert await cache.get_daily_costs("2026-01-01", "2026-02-01") is None
        assert await cache.get_service_breakdown("2026-01-01", "2026-02-01") == [{"cost": 2.0}]
        assert await cache.get_kpis() == {"totalCost": 3.0}

    @pytest.mark.asyncio
    async def test_invalidate_all_clears_namespace_only(self, kv_store: InMemoryKeyValueStore, clock) -> None:
        cache = AggregationCache(kv_store, namespace="focal_cache", clock=clock)
        await kv_store.set("focal-metadata", "schema", b"{}")
        await cache.set("a", 1)
        await cache.set("b", 2)

        assert await cache.invalidate_all() == 2
        assert await kv_store.list_keys("focal_cache") == []
        assert await kv_store.list_keys("focal-metadata") == ["schema"]


# ---------------------------------------------------------------------------
# Stats and typed helpers
# ---------------------------------------------------------------------------


class TestAggregationCacheStats:
    """Tests for stats() and the typed helpers."""

    @pytest.mark.asyncio
    async def test_stats_counts_by_kind_and_tracks_age_bounds(self, cache: AggregationCache, clock, now) -> None:
        await cache.set_monthly_summary(2026, [{"month": "2026-01", "total": 10.0}])
        clock.advance(minutes=5)
        await cache.set_resource_costs([{"resourceId": "vm-1", "cost": 4.2}], limit=10)
        await cache.set_anomalies("2026-01-01", "2026-02-01", [])

        stats = await cache.stats()

        assert stats.total_entries == 3
        assert stats.entries_by_type == {"monthly_costs": 1, "resource_costs": 1, "anomalies": 1}
        assert stats.oldest_entry == now
        assert stats.newest_entry == clock.now
        assert stats.total_size > 0

    @pytest.mark.asyncio
    async def test_stats_empty_cache(self, cache: AggregationCache) -> None:
        stats = await cache.stats()

        assert stats.total_entries == 0
        assert stats.oldest_entry is None

    @pytest.mark.asyncio
    async def test_typed_helpers_round_trip(self, cache: AggregationCache) -> None:
        await cache.set_resource_costs([{"resourceId": "vm-1"}], limit=50)

        assert await cache.get_resource_costs(limit=50) == [{"resourceId": "vm-1"}]
        assert await cache.get_resource_costs(limit=100) is None

    @pytest.mark.asyncio
    async def test_kpis_expire_after_fifteen_minutes(self, cache: AggregationCache, clock) -> None:
        await cache.set_kpis({"totalCost": 1.0})

        clock.advance(minutes=14, seconds=59)
        assert await cache.get_kpis() == {"totalCost": 1.0}

        clock.advance(seconds=1)
        assert await cache.get_kpis() is None


# ---------------------------------------------------------------------------
# Store failures
# ---------------------------------------------------------------------------


class TestAggregationCacheStoreFailures:
    """Store errors degrade to misses instead of raising."""

    @pytest.fixture
    def broken_store(self) -> AsyncMock:
        store = AsyncMock()
        store.get = AsyncMock(side_effect=OSError("disk unavailable"))
        store.set = AsyncMock(side_effect=OSError("disk unavailable"))
        store.delete = AsyncMock(side_effect=OSError("disk unavailable"))
        store.list_keys = AsyncMock(side_effect=OSError("disk unavailable"))
        return store

    @pytest.mark.asyncio
    async def test_get_failure_is_a_miss(self, broken_store: AsyncMock, clock) -> None:
        cache = AggregationCache(broken_store, clock=clock)

        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_write_and_bulk_failures_do_not_raise(self, broken_store: AsyncMock, clock) -> None:
        cache = AggregationCache(broken_store, clock=clock)

        await cache.set("k", 1)
        await cache.invalidate("k")
        assert await cache.invalidate_kind("kpi") == 0
        assert await cache.invalidate_all() == 0
        assert await cache.cleanup() == 0
        assert (await cache.stats()).total_entries == 0

    @pytest.mark.asyncio
    async def test_undecodable_blob_is_a_miss(self, kv_store: InMemoryKeyValueStore, cache: AggregationCache) -> None:
        await kv_store.set("focal_cache", "k", b"not json")

        assert await cache.get("k") is None

    def test_entry_expiry_helpers(self, now) -> None:
        entry = CacheEntry(key="k", value=1, kind="kpi", cached_at=now, ttl_seconds=30)

        assert entry.age_seconds(now) == 0
        assert not entry.is_expired(now)
        assert entry.expires_at.timestamp() == now.timestamp() + 30
