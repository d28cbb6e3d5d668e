"""Result caching for the cost dashboards.

Modules:
    aggregation_cache: AggregationCache, the typed TTL cache over the key-value store
    cached_query: CachedQueryOrchestrator and CachedQuery, cache-first execution
        with stale-while-revalidate and single-flight fetches
"""

from focal_finops.cache.aggregation_cache import AggregationCache, make_cache_key
from focal_finops.cache.cached_query import CachedQuery, CachedQueryOptions, CachedQueryOrchestrator

__all__ = [
    "AggregationCache",
    "CachedQuery",
    "CachedQueryOptions",
    "CachedQueryOrchestrator",
    "make_cache_key",
]
