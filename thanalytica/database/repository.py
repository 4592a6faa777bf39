"""
Repository Layer - Raw Data Access

Read and write helpers for the raw data tables (users, assessments,
wearable readings). The metrics engine and the batch jobs only ever read
through this class; all SQLAlchemy handling stays in here.

Rows are returned as plain dicts so callers never hold ORM objects across
session boundaries (background threads, thread pools).
"""

import logging
from datetime import datetime
from typing import List, Dict, Any, Optional

from sqlalchemy import select, func, delete
from sqlalchemy.orm import sessionmaker

from thanalytica.utils.clock import Clock, utcnow
from .models import User, HealthAssessment, WearableReading, ReadingType
from .session import session_scope

logger = logging.getLogger(__name__)

# Upper bound for all-time history reads
MAX_HISTORY_READINGS = 1000


# =============================================================================
# ROW CONVERSION
# =============================================================================

def _user_to_dict(u: User) -> Dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "last_active": u.last_active,
        "total_days_tracked": u.total_days_tracked or 0,
        "created_at": u.created_at,
    }


def _assessment_to_dict(a: HealthAssessment) -> Dict[str, Any]:
    return {
        "id": a.id,
        "user_id": a.user_id,
        "age": a.age,
        "biological_age": a.biological_age,
        "vitality_score": a.vitality_score,
        "answers": a.answers or {},
        "created_at": a.created_at,
    }


def _iso_day(value: str) -> str:
    """Normalize a reading date to YYYY-MM-DD.

    Raises:
        ValueError: If ``value`` is not an ISO calendar day
    """
    try:
        return datetime.strptime(value, "%Y-%m-%d").date().isoformat()
    except (TypeError, ValueError):
        raise ValueError(f"Reading date must be an ISO day (YYYY-MM-DD), got {value!r}") from None


def _reading_to_dict(r: WearableReading) -> Dict[str, Any]:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "device": r.device,
        "date": r.date,
        "data_type": r.data_type,
        "data_json": r.data_json,
        "synced_at": r.synced_at,
        "created_at": r.created_at,
    }


# =============================================================================
# REPOSITORY
# =============================================================================

class RawDataRepository:
    """
    Access to the raw data store.

    Each call opens its own short-lived session from ``session_factory`` so
    the repository can be shared between request handlers and worker threads.
    """

    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def create_user(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        """Create a user row (fires USER_CREATED through the session hooks)."""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            user = User(
                id=user_id,
                email=email,
                last_active=now,
                total_days_tracked=0,
                created_at=now,
                updated_at=now,
            )
            db.add(user)
            db.flush()
            logger.info(f"Created user {user_id}")
            return _user_to_dict(user)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            user = db.get(User, user_id)
            return _user_to_dict(user) if user else None

    def delete_user(self, user_id: str) -> bool:
        """
        Delete a user and all of their raw data.

        Returns:
            True if the user existed
        """
        with session_scope(self.session_factory) as db:
            user = db.get(User, user_id)
            if user is None:
                return False

            # Explicit child deletes; SQLite only cascades with the FK pragma on
            db.execute(delete(WearableReading).where(WearableReading.user_id == user_id))
            db.execute(delete(HealthAssessment).where(HealthAssessment.user_id == user_id))
            db.delete(user)
            logger.info(f"Deleted user {user_id}")
            return True

    def list_active_user_ids(self, since: datetime) -> List[str]:
        """Users whose ``last_active`` is after ``since``."""
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(User.id).where(User.last_active > since).order_by(User.id)
            )
            return [row[0] for row in rows]

    def list_user_ids_with_history(self, min_days: int) -> List[str]:
        """Users with at least ``min_days`` tracked days."""
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(User.id).where(User.total_days_tracked >= min_days).order_by(User.id)
            )
            return [row[0] for row in rows]

    # -------------------------------------------------------------------------
    # Assessments
    # -------------------------------------------------------------------------

    def create_assessment(
        self,
        user_id: str,
        age: int,
        biological_age: Optional[float] = None,
        vitality_score: Optional[float] = None,
        answers: Optional[Dict] = None,
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Store an assessment (fires ASSESSMENT_CREATED after commit)."""
        now = created_at or self.clock()
        with session_scope(self.session_factory) as db:
            assessment = HealthAssessment(
                user_id=user_id,
                age=age,
                biological_age=biological_age,
                vitality_score=vitality_score,
                answers=answers or {},
                created_at=now,
            )
            db.add(assessment)
            self._touch_user(db, user_id, now)
            db.flush()
            return _assessment_to_dict(assessment)

    def get_latest_assessment(self, user_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            assessment = db.execute(
                select(HealthAssessment)
                .where(HealthAssessment.user_id == user_id)
                .order_by(HealthAssessment.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _assessment_to_dict(assessment) if assessment else None

    def get_assessments(self, user_id: str) -> List[Dict[str, Any]]:
        """All assessments for a user, oldest first."""
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(HealthAssessment)
                .where(HealthAssessment.user_id == user_id)
                .order_by(HealthAssessment.created_at.asc())
            ).scalars()
            return [_assessment_to_dict(a) for a in rows]

    # -------------------------------------------------------------------------
    # Wearable readings
    # -------------------------------------------------------------------------

    def record_wearable_reading(
        self,
        user_id: str,
        data_json: Dict[str, Any],
        data_type: str = ReadingType.OTHER.value,
        date: Optional[str] = None,
        device: str = "unknown",
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Store one synced wearable reading.

        Also refreshes the user's ``last_active`` and ``total_days_tracked``
        counters used by the batch jobs. Fires WEARABLE_READING_CREATED
        after commit.

        Raises:
            ValueError: If ``date`` is given and is not an ISO day
        """
        now = created_at or self.clock()
        day = _iso_day(date) if date is not None else now.date().isoformat()
        with session_scope(self.session_factory) as db:
            reading = WearableReading(
                user_id=user_id,
                device=device,
                date=day,
                data_type=data_type,
                data_json=data_json,
                synced_at=now,
                created_at=now,
            )
            db.add(reading)
            db.flush()

            user = self._touch_user(db, user_id, now)
            if user is not None:
                user.total_days_tracked = db.execute(
                    select(func.count(func.distinct(WearableReading.date)))
                    .where(WearableReading.user_id == user_id)
                ).scalar() or 0

            return _reading_to_dict(reading)

    def get_wearable_readings_in_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[Dict[str, Any]]:
        """Readings with ``start <= created_at <= end``, oldest first."""
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(WearableReading)
                .where(
                    WearableReading.user_id == user_id,
                    WearableReading.created_at >= start,
                    WearableReading.created_at <= end,
                )
                .order_by(WearableReading.created_at.asc())
            ).scalars()
            return [_reading_to_dict(r) for r in rows]

    def get_all_wearable_readings(
        self,
        user_id: str,
        limit: int = MAX_HISTORY_READINGS,
    ) -> List[Dict[str, Any]]:
        """Most recent ``limit`` readings for a user, newest first."""
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(WearableReading)
                .where(WearableReading.user_id == user_id)
                .order_by(WearableReading.created_at.desc())
                .limit(limit)
            ).scalars()
            return [_reading_to_dict(r) for r in rows]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _touch_user(db, user_id: str, when: datetime) -> Optional[User]:
        user = db.get(User, user_id)
        if user is not None and (user.last_active is None or user.last_active < when):
            user.last_active = when
        return user
