"""
Cache Configuration

Centralized configuration for the per-user metrics cache.
TTLs decide when a sub-cache stops being served; limits keep cache
records from growing without bound.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional
from functools import lru_cache

from thanalytica.database.models import SubCacheName


@dataclass(frozen=True)
class CacheTTL:
    """
    Time-to-live per sub-cache.

    Lifetime metrics never expire: they are merged on every recompute and
    only rebuilt from scratch when user data is deleted.
    """

    DASHBOARD: timedelta = timedelta(hours=1)
    DAILY: timedelta = timedelta(hours=24)
    WEEKLY: timedelta = timedelta(days=7)
    MONTHLY: timedelta = timedelta(days=30)
    LIFETIME: Optional[timedelta] = None

    def for_sub_cache(self, name: SubCacheName) -> Optional[timedelta]:
        """Get TTL for a sub-cache (None means no expiry)."""
        mapping = {
            SubCacheName.DASHBOARD: self.DASHBOARD,
            SubCacheName.DAILY: self.DAILY,
            SubCacheName.WEEKLY: self.WEEKLY,
            SubCacheName.MONTHLY: self.MONTHLY,
            SubCacheName.LIFETIME: self.LIFETIME,
        }
        return mapping[SubCacheName(name)]


@dataclass(frozen=True)
class CacheLimits:
    """Size limits applied when writing and compacting cache records."""

    MAX_DOCUMENT_SIZE: int = 900 * 1024  # bytes of serialized JSON
    MAX_INSIGHTS_PER_SECTION: int = 10
    MAX_ACHIEVEMENTS_CACHE: int = 20
    MAX_CORRELATION_INSIGHTS: int = 15
    MAX_MILESTONE_CACHE: int = 50


# Current envelope schema version per sub-cache. Bump one to make every
# stored envelope of that kind read as absent (and get recomputed).
SCHEMA_VERSIONS: Dict[SubCacheName, int] = {
    SubCacheName.DAILY: 1,
    SubCacheName.WEEKLY: 1,
    SubCacheName.MONTHLY: 1,
    SubCacheName.LIFETIME: 1,
    SubCacheName.DASHBOARD: 1,
}

# Record-level version string stored in user_caches.cache_version
CACHE_RECORD_VERSION = "1.0"


@dataclass
class CacheConfig:
    """
    Main cache configuration.

    Settings can be overridden via environment variables:
    - CACHE_ENABLED: Serve from cache at all (False forces every read to miss)
    - HTTP_CACHE_ENABLED: Enable HTTP cache headers
    - CACHE_COMPACT_ON_CLEANUP: Trim list fields during the cleanup job
    """

    # Global cache toggle
    enabled: bool = field(default_factory=lambda: os.getenv(
        "CACHE_ENABLED",
        "true"
    ).lower() == "true")

    # HTTP cache settings
    http_cache_enabled: bool = field(default_factory=lambda: os.getenv(
        "HTTP_CACHE_ENABLED",
        "true"
    ).lower() == "true")

    # Cleanup job behaviour
    compact_on_cleanup: bool = field(default_factory=lambda: os.getenv(
        "CACHE_COMPACT_ON_CLEANUP",
        "true"
    ).lower() == "true")

    ttl: CacheTTL = field(default_factory=CacheTTL)
    limits: CacheLimits = field(default_factory=CacheLimits)


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    """Get singleton cache configuration."""
    return CacheConfig()


# HTTP Cache-Control presets for the read endpoints
HTTP_CACHE_PRESETS = {
    "dashboard": {
        # Hero metrics and quick stats, refreshed hourly server-side
        "max_age": 300,  # 5 minutes
        "public": True,
    },
    "metrics": {
        # Timeframe metrics change at most daily
        "max_age": 600,  # 10 minutes
        "public": True,
    },
    "realtime": {
        # Processing responses must never be cached
        "max_age": 0,
        "no_store": True,
    },
}
