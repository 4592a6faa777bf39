"""
SQLAlchemy Models for the Thanalytica metrics backend

Two groups of tables:
1. Raw data (users, assessments, wearable readings) - the source of truth
2. Cache records (one row per user holding the five metric sub-caches)

Sub-caches are JSON envelopes so each tier can be replaced with a single
UPDATE statement and evolve its own schema version.
"""

import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, ForeignKey, Index, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from thanalytica.utils.clock import utcnow

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in development).
# None is stored as SQL NULL so cold sub-caches are real NULLs.
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def _new_id() -> str:
    return uuid4().hex


# =============================================================================
# ENUMS
# =============================================================================

class ReadingType(enum.Enum):
    """Kind of wearable reading, as reported by the device sync."""
    SLEEP = "sleep"
    ACTIVITY = "activity"
    STRESS = "stress"
    NUTRITION = "nutrition"
    HEART = "heart"
    OTHER = "other"


class SubCacheName(str, enum.Enum):
    """The five cached views held in a UserCacheRecord."""
    DAILY = "daily_metrics"
    WEEKLY = "weekly_metrics"
    MONTHLY = "monthly_metrics"
    LIFETIME = "lifetime_metrics"
    DASHBOARD = "dashboard_cache"


# =============================================================================
# RAW DATA TABLES
# =============================================================================

class User(Base):
    """Application users (ids come from the auth provider)"""
    __tablename__ = "users"

    id = Column(String(128), primary_key=True)
    email = Column(String(255), nullable=True)

    last_active = Column(DateTime, default=utcnow, index=True)
    total_days_tracked = Column(Integer, default=0, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<User {self.id}>"


class HealthAssessment(Base):
    """Lifestyle assessment submitted by a user"""
    __tablename__ = "health_assessments"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    age = Column(Integer, nullable=False)
    biological_age = Column(Float, nullable=True)
    vitality_score = Column(Float, nullable=True)

    # Raw questionnaire answers (sleep quality, diet pattern, ...)
    answers = Column(JSONType, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_assessment_user_created", "user_id", "created_at"),
    )


class WearableReading(Base):
    """
    One synced wearable record.

    ``data_json`` holds the numeric metrics reported by the device, e.g.
    ``{"sleep_hours": 7.5}`` or ``{"steps": 9500, "active_minutes": 42}``.
    """
    __tablename__ = "wearables_data"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    device = Column(String(50), nullable=False, default="unknown")  # garmin, whoop, ...
    date = Column(String(10), nullable=False)  # ISO day the reading belongs to
    data_type = Column(String(20), nullable=False, default=ReadingType.OTHER.value)
    data_json = Column(JSONType, default=dict)

    synced_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_wearable_user_created", "user_id", "created_at"),
    )


# =============================================================================
# CACHE TABLE
# =============================================================================

class UserCacheRecord(Base):
    """
    Per-user metrics cache.

    Each sub-cache column holds an envelope:
        {"version": 1, "data": {...}, "lastUpdated": iso, "expiresAt": iso|None}

    A NULL column is a cold (or invalidated) sub-cache. Expired envelopes may
    still be physically present until the cleanup job purges them.
    """
    __tablename__ = "user_caches"

    user_id = Column(String(128), primary_key=True)

    daily_metrics = Column(JSONType, nullable=True)
    weekly_metrics = Column(JSONType, nullable=True)
    monthly_metrics = Column(JSONType, nullable=True)
    lifetime_metrics = Column(JSONType, nullable=True)
    dashboard_cache = Column(JSONType, nullable=True)

    # Metadata
    cache_version = Column(String(10), default="1.0")
    total_size = Column(Integer, default=0, index=True)  # Approximate JSON bytes

    # Single-flight marker: a recompute holds the record until this time
    computing_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    def sub_cache(self, name: SubCacheName):
        return getattr(self, SubCacheName(name).value)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            **{name.value: getattr(self, name.value) for name in SubCacheName},
            "cache_version": self.cache_version,
            "total_size": self.total_size,
            "computing_until": self.computing_until.isoformat() if self.computing_until else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<UserCacheRecord {self.user_id} ({self.total_size} bytes)>"
