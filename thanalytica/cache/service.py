"""
Cache Service

Per-user metrics cache stored in the ``user_caches`` table. One row per
user holds five JSON sub-caches (daily, weekly, monthly, lifetime,
dashboard), each wrapped in an envelope:

    {"version": 1, "data": {...}, "lastUpdated": iso, "expiresAt": iso|None}

Read rules:
- A NULL column is a cold sub-cache.
- An envelope past ``expiresAt``, flagged ``stale``, or with an outdated
  schema version is treated exactly like a cold one. Expiry is decided
  here, on read.

Write rules:
- daily / weekly / monthly / dashboard are replaced wholesale with a single
  UPDATE statement, so concurrent writers resolve to last-writer-wins.
- lifetime is merged field by field under a row lock. Invalidating it only
  flags the envelope stale; the merged history stays as the base of the
  next merge, so lifetime values never go down unless explicitly reset.

Every public method opens its own short-lived session, so one instance is
safe to share between request handlers and worker threads.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from thanalytica.database.models import UserCacheRecord, SubCacheName
from thanalytica.database.session import session_scope
from thanalytica.utils.clock import Clock, utcnow, to_iso, from_iso
from thanalytica.cache.config import (
    CacheConfig,
    SCHEMA_VERSIONS,
    CACHE_RECORD_VERSION,
    get_cache_config,
)
from thanalytica.cache.lifetime import merge_lifetime_metrics

logger = logging.getLogger(__name__)


class CacheStoreError(Exception):
    """The cache store could not be read or written."""


# Names accepted for sub-caches in addition to the column names
_SUB_CACHE_ALIASES = {
    "dailyMetrics": SubCacheName.DAILY,
    "weeklyMetrics": SubCacheName.WEEKLY,
    "monthlyMetrics": SubCacheName.MONTHLY,
    "lifetimeMetrics": SubCacheName.LIFETIME,
    "dashboardCache": SubCacheName.DASHBOARD,
    "daily": SubCacheName.DAILY,
    "weekly": SubCacheName.WEEKLY,
    "monthly": SubCacheName.MONTHLY,
    "lifetime": SubCacheName.LIFETIME,
    "dashboard": SubCacheName.DASHBOARD,
}

SubCacheRef = Union[SubCacheName, str]


def resolve_sub_cache_name(name: SubCacheRef) -> SubCacheName:
    """
    Resolve a sub-cache name, column name, or alias.

    Raises:
        ValueError: For names that are not sub-caches
    """
    if isinstance(name, SubCacheName):
        return name
    if name in _SUB_CACHE_ALIASES:
        return _SUB_CACHE_ALIASES[name]
    try:
        return SubCacheName(name)
    except ValueError:
        raise ValueError(f"Unknown sub-cache: {name!r}") from None


def estimate_size(record: UserCacheRecord) -> int:
    """Approximate serialized size of a cache record in bytes."""
    payload = {name.value: getattr(record, name.value) for name in SubCacheName}
    return len(json.dumps(payload, default=str).encode("utf-8"))


class CacheService:
    """
    Cache store operations for per-user metric sub-caches.

    Store failures surface as CacheStoreError. There is no internal retry;
    callers decide (the API treats a failed read as a miss).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Clock = utcnow,
        config: Optional[CacheConfig] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.config = config or get_cache_config()
        self.ttl = self.config.ttl
        self.limits = self.config.limits

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "writes": 0,
        }

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @contextmanager
    def _transaction(self, action: str):
        try:
            with session_scope(self.session_factory) as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"Cache store error during {action}: {e}")
            raise CacheStoreError(f"{action} failed: {e}") from e

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def _envelope(self, name: SubCacheName, data: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        ttl = self.ttl.for_sub_cache(name)
        return {
            "version": SCHEMA_VERSIONS[name],
            "data": data,
            "lastUpdated": to_iso(now),
            "expiresAt": to_iso(now + ttl) if ttl is not None else None,
        }

    def is_fresh(self, name: SubCacheName, envelope: Optional[Dict[str, Any]]) -> bool:
        """True if ``envelope`` exists, has the current version and has not expired."""
        if not isinstance(envelope, dict) or "data" not in envelope:
            return False
        if envelope.get("version") != SCHEMA_VERSIONS[name]:
            return False
        if envelope.get("stale"):
            return False
        expires_at = envelope.get("expiresAt")
        if expires_at is None:
            return True
        try:
            return self.clock() < from_iso(expires_at)
        except (TypeError, ValueError):
            logger.warning(f"Unreadable expiresAt on {name.value}: {expires_at!r}")
            return False

    def _lock_record(self, db: Session, user_id: str) -> Optional[UserCacheRecord]:
        """
        Load a record for read-modify-write.

        The touch UPDATE takes the write lock on backends that ignore
        FOR UPDATE (SQLite); PostgreSQL gets a row lock from both.
        """
        touched = db.execute(
            update(UserCacheRecord)
            .where(UserCacheRecord.user_id == user_id)
            .values(updated_at=self.clock())
            .execution_options(synchronize_session=False)
        ).rowcount
        if not touched:
            return None
        return db.execute(
            select(UserCacheRecord)
            .where(UserCacheRecord.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _refresh_size(self, db: Session, user_id: str) -> int:
        record = db.execute(
            select(UserCacheRecord)
            .where(UserCacheRecord.user_id == user_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            return 0
        size = estimate_size(record)
        record.total_size = size
        return size

    # =========================================================================
    # RECORD LIFECYCLE
    # =========================================================================

    def get_user_cache(self, user_id: str) -> Optional[UserCacheRecord]:
        """Full cache record for a user (no side effects)."""
        with self._transaction("get_user_cache") as db:
            return db.get(UserCacheRecord, user_id)

    def initialize_user_cache(self, user_id: str) -> None:
        """
        Create an empty cache record if none exists.

        Idempotent: an existing record (or one created concurrently) is left
        untouched.
        """
        try:
            with session_scope(self.session_factory) as db:
                if db.get(UserCacheRecord, user_id) is not None:
                    return
                now = self.clock()
                db.add(UserCacheRecord(
                    user_id=user_id,
                    cache_version=CACHE_RECORD_VERSION,
                    total_size=0,
                    created_at=now,
                    updated_at=now,
                ))
            logger.info(f"Initialized cache for user {user_id}")
        except IntegrityError:
            logger.debug(f"Cache for user {user_id} was initialized concurrently")
        except SQLAlchemyError as e:
            logger.error(f"Cache store error during initialize_user_cache: {e}")
            raise CacheStoreError(f"initialize_user_cache failed: {e}") from e

    def delete_user_cache(self, user_id: str) -> bool:
        """Remove the whole record. Only used when the user is deleted."""
        with self._transaction("delete_user_cache") as db:
            deleted = db.execute(
                delete(UserCacheRecord).where(UserCacheRecord.user_id == user_id)
            ).rowcount
        if deleted:
            logger.info(f"Deleted cache record for user {user_id}")
        return bool(deleted)

    # =========================================================================
    # SUB-CACHE READS
    # =========================================================================

    def get_sub_cache(self, user_id: str, name: SubCacheRef) -> Optional[Dict[str, Any]]:
        """
        Fresh envelope for one sub-cache.

        Returns:
            The envelope, or None when absent, expired, or outdated
        """
        name = resolve_sub_cache_name(name)
        if not self.config.enabled:
            self._count("misses")
            return None

        with self._transaction(f"get {name.value}") as db:
            envelope = db.execute(
                select(getattr(UserCacheRecord, name.value))
                .where(UserCacheRecord.user_id == user_id)
            ).scalar_one_or_none()

        if self.is_fresh(name, envelope):
            self._count("hits")
            return envelope

        self._count("misses")
        return None

    def get_daily_metrics(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.get_sub_cache(user_id, SubCacheName.DAILY)

    def get_weekly_metrics(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.get_sub_cache(user_id, SubCacheName.WEEKLY)

    def get_monthly_metrics(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.get_sub_cache(user_id, SubCacheName.MONTHLY)

    def get_lifetime_metrics(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.get_sub_cache(user_id, SubCacheName.LIFETIME)

    def get_dashboard_cache(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.get_sub_cache(user_id, SubCacheName.DASHBOARD)

    # =========================================================================
    # SUB-CACHE WRITES
    # =========================================================================

    def _replace(self, user_id: str, name: SubCacheName, data: Dict[str, Any]) -> Dict[str, Any]:
        envelope = self._envelope(name, data)
        column = name.value

        for attempt in range(2):
            with self._transaction(f"update {column}") as db:
                written = db.execute(
                    update(UserCacheRecord)
                    .where(UserCacheRecord.user_id == user_id)
                    .values({column: envelope, "updated_at": self.clock()})
                    .execution_options(synchronize_session=False)
                ).rowcount
                if written:
                    size = self._refresh_size(db, user_id)
                    break
            # No record yet: create it, then write again
            self.initialize_user_cache(user_id)
        else:
            raise CacheStoreError(f"update {column} failed: record for {user_id} missing")

        self._count("writes")
        logger.debug(f"Cached {column} for user {user_id} ({size} bytes)")
        return envelope

    def update_daily_metrics(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._replace(user_id, SubCacheName.DAILY, data)

    def update_weekly_metrics(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._replace(user_id, SubCacheName.WEEKLY, data)

    def update_monthly_metrics(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._replace(user_id, SubCacheName.MONTHLY, data)

    def update_dashboard_cache(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._replace(user_id, SubCacheName.DASHBOARD, data)

    def update_lifetime_metrics(
        self,
        user_id: str,
        data: Dict[str, Any],
        reset: bool = False,
    ) -> Dict[str, Any]:
        """
        Merge ``data`` into the stored lifetime metrics.

        Args:
            user_id: User whose record is updated
            data: Newly computed lifetime payload
            reset: Replace wholesale instead of merging. Only for justified
                decreases such as user data deletion.

        Returns:
            The envelope as stored
        """
        if reset:
            envelope = self._replace(user_id, SubCacheName.LIFETIME, data)
            logger.info(f"Reset lifetime metrics for user {user_id}")
            return envelope

        self.initialize_user_cache(user_id)
        with self._transaction("update lifetime_metrics") as db:
            record = self._lock_record(db, user_id)
            if record is None:
                raise CacheStoreError(f"update lifetime_metrics failed: record for {user_id} missing")

            existing = _lifetime_history(record.lifetime_metrics)
            merged = merge_lifetime_metrics(
                existing, data, max_milestones=self.limits.MAX_MILESTONE_CACHE
            )
            envelope = self._envelope(SubCacheName.LIFETIME, merged)
            record.lifetime_metrics = envelope
            record.total_size = estimate_size(record)

        self._count("writes")
        return envelope

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    def invalidate_cache(
        self,
        user_id: str,
        sub_cache_names: Optional[Iterable[SubCacheRef]] = None,
        drop_lifetime_history: bool = False,
    ) -> List[str]:
        """
        Invalidate sub-caches for a user.

        Args:
            user_id: User whose cache is invalidated
            sub_cache_names: Sub-caches to invalidate; None means all five.
                The record itself is kept.
            drop_lifetime_history: Clear the lifetime column instead of
                flagging it stale. Only for justified decreases such as
                rebuilding an oversized record.

        Returns:
            Column names that were invalidated (empty if no record exists)

        Raises:
            ValueError: If a name is not a sub-cache
        """
        names = (
            list(SubCacheName) if sub_cache_names is None
            else [resolve_sub_cache_name(n) for n in sub_cache_names]
        )
        if not names:
            return []

        columns = sorted({n.value for n in names})
        cleared = {c: None for c in columns}
        keep_history = SubCacheName.LIFETIME.value in cleared and not drop_lifetime_history
        if keep_history:
            del cleared[SubCacheName.LIFETIME.value]

        with self._transaction("invalidate_cache") as db:
            if keep_history:
                record = self._lock_record(db, user_id)
                found = record is not None
                if found:
                    for column in cleared:
                        setattr(record, column, None)
                    record.lifetime_metrics = _mark_stale(record.lifetime_metrics)
                    record.total_size = estimate_size(record)
            else:
                found = bool(db.execute(
                    update(UserCacheRecord)
                    .where(UserCacheRecord.user_id == user_id)
                    .values({**cleared, "updated_at": self.clock()})
                    .execution_options(synchronize_session=False)
                ).rowcount)
                if found:
                    self._refresh_size(db, user_id)

        if not found:
            logger.debug(f"No cache record to invalidate for user {user_id}")
            return []

        logger.info(f"Invalidated {', '.join(columns)} for user {user_id}")
        return columns

    def bulk_invalidate_cache(
        self,
        user_ids: Iterable[str],
        sub_cache_names: Optional[Iterable[SubCacheRef]] = None,
    ) -> Dict[str, Any]:
        """
        Invalidate the same sub-caches for many users.

        Per-user failures are collected, not raised.
        """
        names = None if sub_cache_names is None else list(sub_cache_names)
        invalidated = 0
        errors = []

        for user_id in user_ids:
            try:
                if self.invalidate_cache(user_id, names):
                    invalidated += 1
            except CacheStoreError as e:
                errors.append({"user_id": user_id, "error": str(e)})

        logger.info(f"Bulk invalidation: {invalidated} users, {len(errors)} errors")
        return {"invalidated": invalidated, "errors": errors}

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def purge_expired(self, user_id: Optional[str] = None) -> int:
        """
        Physically clear expired or outdated sub-caches.

        Reads already ignore them; this only reclaims space.

        Returns:
            Number of sub-caches cleared
        """
        with self._transaction("purge_expired") as db:
            query = select(UserCacheRecord.user_id)
            if user_id is not None:
                query = query.where(UserCacheRecord.user_id == user_id)
            user_ids = [row[0] for row in db.execute(query)]

        purged = 0
        for uid in user_ids:
            with self._transaction("purge_expired") as db:
                record = self._lock_record(db, uid)
                if record is None:
                    continue
                for name in SubCacheName:
                    envelope = getattr(record, name.value)
                    if name is SubCacheName.LIFETIME:
                        # Stale lifetime history is still the base of the next merge
                        expired = envelope is not None and _lifetime_history(envelope) is None
                    else:
                        expired = envelope is not None and not self.is_fresh(name, envelope)
                    if expired:
                        setattr(record, name.value, None)
                        purged += 1
                record.total_size = estimate_size(record)

        if purged:
            logger.info(f"Purged {purged} expired sub-caches")
        return purged

    def compact_cache(self, user_id: str) -> Dict[str, Any]:
        """
        Trim list fields of a cache record to the configured limits.

        Returns:
            Dict with size before/after compaction
        """
        limits = self.limits
        with self._transaction("compact_cache") as db:
            record = self._lock_record(db, user_id)
            if record is None:
                return {"user_id": user_id, "compacted": False, "size_before": 0, "size_after": 0}

            size_before = record.total_size or 0
            record.lifetime_metrics = _trim(
                record.lifetime_metrics, "milestones", limits.MAX_MILESTONE_CACHE, keep="last"
            )
            monthly = _trim(
                record.monthly_metrics, "correlationInsights", limits.MAX_CORRELATION_INSIGHTS
            )
            record.monthly_metrics = _trim(monthly, "achievements", limits.MAX_ACHIEVEMENTS_CACHE)
            record.weekly_metrics = _trim(
                record.weekly_metrics, "topInsights", limits.MAX_INSIGHTS_PER_SECTION
            )
            record.dashboard_cache = _trim(
                record.dashboard_cache, "recentAchievements", limits.MAX_ACHIEVEMENTS_CACHE
            )
            size_after = estimate_size(record)
            record.total_size = size_after

        logger.info(f"Compacted cache for user {user_id}: {size_before} -> {size_after} bytes")
        return {
            "user_id": user_id,
            "compacted": True,
            "size_before": size_before,
            "size_after": size_after,
        }

    def list_oversized_user_ids(self) -> List[str]:
        """Users whose cache record exceeds MAX_DOCUMENT_SIZE."""
        with self._transaction("list_oversized_user_ids") as db:
            rows = db.execute(
                select(UserCacheRecord.user_id)
                .where(UserCacheRecord.total_size > self.limits.MAX_DOCUMENT_SIZE)
                .order_by(UserCacheRecord.user_id)
            )
            return [row[0] for row in rows]

    # =========================================================================
    # SINGLE-FLIGHT MARKER
    # =========================================================================

    def try_mark_computing(self, user_id: str, ttl: timedelta) -> bool:
        """
        Claim the recompute marker for a user.

        Succeeds only when no other worker holds an unexpired marker. The
        TTL bounds how long a crashed worker can block recomputation.
        """
        self.initialize_user_cache(user_id)
        now = self.clock()
        with self._transaction("try_mark_computing") as db:
            claimed = db.execute(
                update(UserCacheRecord)
                .where(
                    UserCacheRecord.user_id == user_id,
                    or_(
                        UserCacheRecord.computing_until.is_(None),
                        UserCacheRecord.computing_until <= now,
                    ),
                )
                .values(computing_until=now + ttl)
                .execution_options(synchronize_session=False)
            ).rowcount
        return claimed == 1

    def clear_computing(self, user_id: str) -> None:
        with self._transaction("clear_computing") as db:
            db.execute(
                update(UserCacheRecord)
                .where(UserCacheRecord.user_id == user_id)
                .values(computing_until=None)
                .execution_options(synchronize_session=False)
            )

    # =========================================================================
    # STATS & HEALTH
    # =========================================================================

    def get_cache_stats(self) -> Dict[str, Any]:
        """Aggregate store statistics plus this instance's hit/miss counters."""
        with self._transaction("get_cache_stats") as db:
            total_documents, total_size = db.execute(
                select(
                    func.count(UserCacheRecord.user_id),
                    func.coalesce(func.sum(UserCacheRecord.total_size), 0),
                )
            ).one()
            oversized = db.execute(
                select(func.count(UserCacheRecord.user_id))
                .where(UserCacheRecord.total_size > self.limits.MAX_DOCUMENT_SIZE)
            ).scalar() or 0

        with self._stats_lock:
            counters = dict(self._stats)
        lookups = counters["hits"] + counters["misses"]
        hit_rate = (counters["hits"] / lookups * 100) if lookups > 0 else 0

        return {
            "total_documents": total_documents,
            "oversized_documents": oversized,
            "total_size": int(total_size),
            "average_size": int(total_size / total_documents) if total_documents else 0,
            "hits": counters["hits"],
            "misses": counters["misses"],
            "writes": counters["writes"],
            "hit_rate_percent": round(hit_rate, 2),
        }

    def health_check(self) -> Dict[str, Any]:
        """
        Simple health check.

        Just verifies we can query the table.
        """
        try:
            with session_scope(self.session_factory) as db:
                count = db.execute(select(func.count(UserCacheRecord.user_id))).scalar()
            return {
                "healthy": True,
                "status": "connected",
                "cached_users": count,
            }
        except SQLAlchemyError as e:
            return {
                "healthy": False,
                "status": "error",
                "error": str(e),
            }


def _lifetime_history(envelope: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Stored lifetime payload to merge into, stale or not; None when unusable."""
    if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), dict):
        return None
    if envelope.get("version") != SCHEMA_VERSIONS[SubCacheName.LIFETIME]:
        return None
    return envelope["data"]


def _mark_stale(envelope: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if _lifetime_history(envelope) is None:
        return None
    return {**envelope, "stale": True}


def _trim(
    envelope: Optional[Dict[str, Any]],
    field: str,
    limit: int,
    keep: str = "first",
) -> Optional[Dict[str, Any]]:
    """Return a copy of ``envelope`` with ``data[field]`` cut to ``limit`` items."""
    if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), dict):
        return envelope
    items = envelope["data"].get(field)
    if not isinstance(items, list) or len(items) <= limit:
        return envelope
    trimmed = items[-limit:] if keep == "last" else items[:limit]
    return {**envelope, "data": {**envelope["data"], field: trimmed}}
