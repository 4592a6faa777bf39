"""
Time helpers.

All timestamps in the system are naive UTC datetimes. Services accept a
``clock`` callable so TTL checks can be driven from tests.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(dt: datetime) -> str:
    return dt.isoformat()


def from_iso(value) -> datetime:
    """Parse an ISO timestamp (or pass a datetime through) as naive UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
