"""
Database layer for Thanalytica

Models, session management, and the raw data repository.
"""

from .models import (
    Base,
    User,
    HealthAssessment,
    WearableReading,
    UserCacheRecord,
    ReadingType,
    SubCacheName,
)
from .session import (
    get_database_url,
    create_db_engine,
    create_session_factory,
    session_scope,
    init_db,
)
from .repository import RawDataRepository, MAX_HISTORY_READINGS

__all__ = [
    "Base",
    "User",
    "HealthAssessment",
    "WearableReading",
    "UserCacheRecord",
    "ReadingType",
    "SubCacheName",
    "get_database_url",
    "create_db_engine",
    "create_session_factory",
    "session_scope",
    "init_db",
    "RawDataRepository",
    "MAX_HISTORY_READINGS",
]
