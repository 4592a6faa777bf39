"""
Thanalytica Metrics Cache

Tiered per-user cache of computed health metrics:
- daily (24h), weekly (7d), monthly (30d) sub-caches, replaced on recompute
- lifetime sub-cache, never expires, merged on recompute
- dashboard summary (1h), derived from the other four

Key components:
- CacheService: Envelope reads/writes, invalidation, maintenance, stats
- CacheInvalidator: Event-driven invalidation (plus SQLAlchemy session hooks)
- RecomputeDispatcher: Single-flight background recompute on cache miss
- Cache headers: Cache-Control / ETag / Retry-After for the HTTP layer

Usage:
    envelope = cache_service.get_dashboard_cache(user_id)
    if envelope is None:
        dispatcher.trigger(user_id)

    invalidator.handle_event(CacheEvent.WEARABLE_READING_CREATED, user_id)
"""

from thanalytica.cache.config import (
    CacheConfig,
    CacheTTL,
    CacheLimits,
    SCHEMA_VERSIONS,
    HTTP_CACHE_PRESETS,
    get_cache_config,
)
from thanalytica.cache.service import (
    CacheService,
    CacheStoreError,
    resolve_sub_cache_name,
)
from thanalytica.cache.lifetime import merge_lifetime_metrics
from thanalytica.cache.invalidation import (
    CacheInvalidator,
    CacheEvent,
    InvalidationResult,
    INVALIDATION_TARGETS,
    install_invalidation_hooks,
)
from thanalytica.cache.dispatch import RecomputeDispatcher
from thanalytica.cache.headers import (
    generate_etag,
    envelope_etag,
    etags_match,
    check_not_modified,
    processing_headers,
    CacheHeadersBuilder,
)

__all__ = [
    # Config
    "CacheConfig",
    "CacheTTL",
    "CacheLimits",
    "SCHEMA_VERSIONS",
    "HTTP_CACHE_PRESETS",
    "get_cache_config",
    # Store
    "CacheService",
    "CacheStoreError",
    "resolve_sub_cache_name",
    "merge_lifetime_metrics",
    # Invalidation
    "CacheInvalidator",
    "CacheEvent",
    "InvalidationResult",
    "INVALIDATION_TARGETS",
    "install_invalidation_hooks",
    # Dispatch
    "RecomputeDispatcher",
    # Headers
    "generate_etag",
    "envelope_etag",
    "etags_match",
    "check_not_modified",
    "processing_headers",
    "CacheHeadersBuilder",
]
