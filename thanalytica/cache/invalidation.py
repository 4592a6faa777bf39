"""
Cache Invalidation Service

Event-driven cache invalidation with minimal scope.
Principle: Invalidate as narrowly as possible.

Events trigger targeted sub-cache invalidation:
- ASSESSMENT_CREATED: dashboard + lifetime (biological age history changed)
- WEARABLE_READING_CREATED: daily + dashboard
- USER_CREATED: No invalidation, an empty cache record is created
- USER_DELETED: The whole cache record goes
- MANUAL_INVALIDATE_USER: Every sub-cache for the user

Raw-data writes reach the invalidator through SQLAlchemy session hooks
(see install_invalidation_hooks) and are dispatched only after the
triggering transaction has committed.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session, sessionmaker

from thanalytica.database.models import (
    SubCacheName, User, HealthAssessment, WearableReading,
)
from thanalytica.cache.service import CacheService

logger = logging.getLogger(__name__)


class CacheEvent(Enum):
    """Events that trigger cache invalidation."""

    # Raw data writes
    ASSESSMENT_CREATED = "assessment_created"
    WEARABLE_READING_CREATED = "wearable_reading_created"

    # User lifecycle
    USER_CREATED = "user_created"
    USER_DELETED = "user_deleted"

    # Manual invalidation
    MANUAL_INVALIDATE_USER = "manual_invalidate_user"


# Sub-caches removed per event (events not listed here don't invalidate)
INVALIDATION_TARGETS: Dict[CacheEvent, Tuple[SubCacheName, ...]] = {
    CacheEvent.ASSESSMENT_CREATED: (SubCacheName.DASHBOARD, SubCacheName.LIFETIME),
    CacheEvent.WEARABLE_READING_CREATED: (SubCacheName.DAILY, SubCacheName.DASHBOARD),
    CacheEvent.MANUAL_INVALIDATE_USER: tuple(SubCacheName),
}


@dataclass
class InvalidationResult:
    """Result of a cache invalidation operation."""
    event: CacheEvent
    user_id: Optional[str]
    success: bool
    sub_caches_invalidated: List[str] = field(default_factory=list)
    duration_ms: float = 0.0
    errors: List[str] = field(default_factory=list)


class CacheInvalidator:
    """
    Handles cache invalidation based on events.

    handle_event never raises: failures end up in the result and the log,
    so the write that triggered the event is never affected.
    """

    def __init__(self, cache_service: CacheService):
        self.cache_service = cache_service

    def handle_event(
        self,
        event: CacheEvent,
        user_id: Optional[str] = None,
    ) -> InvalidationResult:
        """
        Handle cache invalidation for an event.

        Each event type has specific invalidation logic to minimize
        cache churn while ensuring data consistency.
        """
        start = time.perf_counter()
        errors = []
        invalidated: List[str] = []

        if not user_id:
            logger.warning(f"Cache invalidation event {event.value} without user id, ignoring")
            return InvalidationResult(event=event, user_id=None, success=False,
                                      errors=["missing user id"])

        logger.info(f"Cache invalidation event: {event.value}, user={user_id}")

        try:
            if event == CacheEvent.USER_CREATED:
                # Nothing cached yet - start from an empty record
                self.cache_service.initialize_user_cache(user_id)

            elif event == CacheEvent.USER_DELETED:
                if self.cache_service.delete_user_cache(user_id):
                    invalidated = list(n.value for n in SubCacheName)

            elif event in INVALIDATION_TARGETS:
                invalidated = self.cache_service.invalidate_cache(
                    user_id, INVALIDATION_TARGETS[event]
                )

        except Exception as e:
            errors.append(str(e))
            logger.error(f"Cache invalidation error for {event.value} (user {user_id}): {e}")

        duration = (time.perf_counter() - start) * 1000

        result = InvalidationResult(
            event=event,
            user_id=user_id,
            success=len(errors) == 0,
            sub_caches_invalidated=invalidated,
            duration_ms=duration,
            errors=errors,
        )

        logger.info(
            f"Invalidation complete: {len(invalidated)} sub-caches for {user_id}, "
            f"duration: {duration:.2f}ms"
        )

        return result


# =============================================================================
# SESSION HOOKS
# =============================================================================

_PENDING_EVENTS_KEY = "thanalytica_pending_cache_events"


def _collect_events(session: Session) -> List[Tuple[CacheEvent, str]]:
    found = []
    for obj in session.new:
        if isinstance(obj, HealthAssessment):
            found.append((CacheEvent.ASSESSMENT_CREATED, obj.user_id))
        elif isinstance(obj, WearableReading):
            found.append((CacheEvent.WEARABLE_READING_CREATED, obj.user_id))
        elif isinstance(obj, User):
            found.append((CacheEvent.USER_CREATED, obj.id))
    for obj in session.deleted:
        if isinstance(obj, User):
            found.append((CacheEvent.USER_DELETED, obj.id))
    return found


def install_invalidation_hooks(
    session_factory: sessionmaker,
    invalidator: CacheInvalidator,
):
    """
    Wire raw-data writes made through ``session_factory`` to ``invalidator``.

    New assessments, wearable readings and users (plus deleted users) are
    collected on flush and dispatched after commit, so the raw write is
    always durable before its cache entry goes. A rollback discards them.

    Returns:
        Callable that removes the hooks again
    """

    def after_flush(session, flush_context):
        events = _collect_events(session)
        if events:
            session.info.setdefault(_PENDING_EVENTS_KEY, []).extend(events)

    def after_commit(session):
        pending = session.info.pop(_PENDING_EVENTS_KEY, None)
        if not pending:
            return
        seen = set()
        for cache_event, user_id in pending:
            if (cache_event, user_id) in seen:
                continue
            seen.add((cache_event, user_id))
            invalidator.handle_event(cache_event, user_id)

    def after_rollback(session):
        session.info.pop(_PENDING_EVENTS_KEY, None)

    hooks = (
        ("after_flush", after_flush),
        ("after_commit", after_commit),
        ("after_rollback", after_rollback),
    )
    for name, fn in hooks:
        sa_event.listen(session_factory, name, fn)

    logger.info("Cache invalidation hooks installed")

    def remove():
        for name, fn in hooks:
            sa_event.remove(session_factory, name, fn)

    return remove
