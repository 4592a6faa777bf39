"""
Test helpers shared across modules (clock and data builders).
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Tuple

from thanalytica.database.models import WearableReading
from thanalytica.database.session import session_scope


class FakeClock:
    """Controllable time source (naive UTC), shared by every service."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# A Saturday, midday UTC
START_TIME = datetime(2024, 6, 15, 12, 0, 0)


def reading(day: str, data_type: str, **data) -> Dict[str, Any]:
    """Reading dict in the shape the repository returns."""
    return {"date": day, "data_type": data_type, "data_json": data}


def healthy_day(day: str) -> List[Dict[str, Any]]:
    """One day of readings that scores well in every dimension."""
    return [
        reading(day, "sleep", sleep_hours=7.5),
        reading(day, "activity", steps=10500, active_minutes=35),
        reading(day, "nutrition", nutrition_score=80),
        reading(day, "stress", hrv=45),
    ]


def seed_history(raw_data, clock: FakeClock, user_id: str, days: int = 10) -> None:
    """
    Create a user with ``days`` consecutive healthy days ending today.

    Readings are stamped at the clock's current time of day, so the most
    recent day falls inside today's daily window.
    """
    if raw_data.get_user(user_id) is None:
        raw_data.create_user(user_id, email=f"{user_id}@example.com")

    for offset in range(days - 1, -1, -1):
        when = clock() - timedelta(days=offset)
        for item in healthy_day(when.date().isoformat()):
            raw_data.record_wearable_reading(
                user_id,
                item["data_json"],
                data_type=item["data_type"],
                date=item["date"],
                device="garmin",
                created_at=when,
            )


def insert_readings(session_factory, user_id: str,
                    rows: Iterable[Tuple[datetime, str, Dict[str, Any]]]) -> None:
    """
    Bulk insert (created_at, data_type, data) rows in one transaction.

    Skips the repository, so ``users.total_days_tracked`` is not refreshed
    and the date column is stored exactly as derived from created_at.
    """
    with session_scope(session_factory) as db:
        db.add_all([
            WearableReading(
                user_id=user_id,
                device="garmin",
                date=when.date().isoformat(),
                data_type=data_type,
                data_json=data,
                synced_at=when,
                created_at=when,
            )
            for when, data_type, data in rows
        ])


def exercise_streak(first_day: datetime, days: int) -> List[Tuple[datetime, str, Dict[str, Any]]]:
    return [(first_day + timedelta(days=i), "activity", {"active_minutes": 40}) for i in range(days)]


def sleep_log(end: datetime, days: int, per_day: int = 4) -> List[Tuple[datetime, str, Dict[str, Any]]]:
    """``per_day`` sleep readings on each of the ``days`` days before ``end``."""
    return [
        (end - timedelta(days=offset) + timedelta(minutes=n), "sleep", {"sleep_hours": 8})
        for offset in range(days, 0, -1)
        for n in range(per_day)
    ]
