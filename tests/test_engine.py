"""
Tests for the metrics calculation engine.

These tests verify:
- Each sub-calculation writes its envelope with the expected payload
- The dashboard is built from the other sub-caches with safe defaults
- Partial failures don't stop the other sub-calculations
- Lifetime totals never shrink across recomputes
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from thanalytica.database.models import SubCacheName, WearableReading
from thanalytica.database.session import session_scope
from thanalytica.metrics.engine import (
    CalculationResult,
    MetricsCalculationError,
    Timeframe,
)

from helpers import exercise_streak, insert_readings, seed_history, sleep_log


@pytest.fixture
def engine(container):
    return container.metrics


# =============================================================================
# SUB-CALCULATIONS
# =============================================================================

class TestDailyMetrics:
    """Today's scores."""

    def test_no_data_is_neutral(self, engine, raw_data):
        raw_data.create_user("empty")
        data = engine.calculate_daily_metrics("empty")["data"]

        assert data["date"] == "2024-06-15"
        assert data["overallScore"] == 75
        assert data["sleepScore"] == 75
        assert data["stepCount"] == 0
        assert data["heartRateVariability"] is None
        assert data["readingCount"] == 0

    def test_scores_today_only(self, engine, seeded_user):
        data = engine.calculate_daily_metrics(seeded_user)["data"]

        assert data["sleepScore"] == 90
        assert data["activityScore"] == 100
        assert data["nutritionScore"] == 80
        assert data["stressScore"] == 90
        assert data["overallScore"] == 90
        # Only today's four readings, not the whole history
        assert data["readingCount"] == 4
        assert data["stepCount"] == 10500
        assert data["activeMinutes"] == 35
        assert data["heartRateVariability"] == 45.0

    def test_recovery_score(self, engine, raw_data, clock):
        raw_data.create_user("u1")
        raw_data.record_wearable_reading("u1", {"recovery_score": 120}, data_type="heart")
        assert engine.calculate_daily_metrics("u1")["data"]["recoveryScore"] == 100


class TestWeeklyAndMonthly:
    """Window averages, goals and correlations."""

    def test_weekly(self, engine, seeded_user, cache_service):
        envelope = engine.calculate_weekly_metrics(seeded_user)
        data = envelope["data"]

        assert data["averageScores"] == {
            "sleep": 90, "activity": 100, "nutrition": 80, "stress": 90, "overall": 90,
        }
        assert data["trends"] == {
            "sleepTrend": "stable",
            "activityTrend": "stable",
            "nutritionTrend": "stable",
            "stressTrend": "stable",
        }
        assert data["weeklyGoals"]["exerciseMinutes"]["achieved"] is True
        assert data["daysWithData"] == 8
        assert cache_service.get_weekly_metrics(seeded_user) == envelope

    def test_monthly(self, engine, seeded_user):
        data = engine.calculate_monthly_metrics(seeded_user)["data"]

        assert data["monthlyAverages"]["overall"] == 90
        assert [g["name"] for g in data["monthlyGoals"]["fitnessGoals"]] == [
            "Exercise Minutes", "Sleep Hours", "Steps",
        ]
        # Constant scores have no defined correlation
        assert data["correlationInsights"] == []
        assert data["daysWithData"] == 10

    def test_monthly_correlations(self, engine, raw_data, clock):
        raw_data.create_user("u1")
        for offset in range(10):
            when = clock() - timedelta(days=offset)
            good = offset % 2 == 0
            raw_data.record_wearable_reading(
                "u1", {"sleep_hours": 8 if good else 5}, data_type="sleep",
                date=when.date().isoformat(), created_at=when,
            )
            raw_data.record_wearable_reading(
                "u1", {"hrv": 50 if good else 15}, data_type="stress",
                date=when.date().isoformat(), created_at=when,
            )

        insights = engine.calculate_monthly_metrics("u1")["data"]["correlationInsights"]
        assert insights[0]["factor1"] == "Sleep Quality"
        assert insights[0]["factor2"] == "Stress Management"
        assert insights[0]["significance"] == "high"


class TestLifetime:
    """All-time metrics."""

    def test_lifetime(self, engine, seeded_user, raw_data, clock):
        raw_data.create_assessment(seeded_user, age=40, biological_age=36.5,
                                   created_at=clock() - timedelta(days=20))
        data = engine.calculate_lifetime_metrics(seeded_user)["data"]

        assert data["totalDaysTracked"] == 10
        assert data["longestStreaks"]["exercise"] == 10
        assert data["currentStreaks"] == {"exercise": 10}
        assert data["personalBests"]["maxSteps"]["value"] == 10500
        assert data["biologicalAgeHistory"][0]["age"] == 36.5
        ids = {m["id"] for m in data["milestones"]}
        assert {"first-assessment", "days-tracked-7", "streak-exercise-7", "steps-10k"} <= ids

    def test_total_never_shrinks(self, engine, seeded_user, cache_service):
        cache_service.update_lifetime_metrics(seeded_user, {"totalDaysTracked": 400})
        data = engine.calculate_lifetime_metrics(seeded_user)["data"]
        assert data["totalDaysTracked"] == 400

    def test_current_streak_resets(self, engine, seeded_user, clock):
        engine.calculate_lifetime_metrics(seeded_user)
        clock.advance(days=3)
        data = engine.calculate_lifetime_metrics(seeded_user)["data"]

        assert data["currentStreaks"]["exercise"] == 0
        assert data["longestStreaks"]["exercise"] == 10

    def test_days_tracked_beyond_read_window(self, engine, container, raw_data, clock):
        raw_data.create_user("veteran")
        insert_readings(container.session_factory, "veteran",
                        exercise_streak(clock() - timedelta(days=400), 20))
        # 1000 sleep readings over 250 days push the streak out of the window
        insert_readings(container.session_factory, "veteran", sleep_log(clock(), 250))
        raw_data.record_wearable_reading("veteran", {"sleep_hours": 8}, data_type="sleep")

        assert raw_data.get_user("veteran")["total_days_tracked"] == 271

        data = engine.calculate_lifetime_metrics("veteran")["data"]
        assert data["totalDaysTracked"] == 271


class TestMalformedReadings:
    """Bad raw data falls back instead of failing the recompute."""

    def test_unparseable_date_uses_created_at(self, engine, container, seeded_user,
                                              cache_service, clock):
        with session_scope(container.session_factory) as db:
            db.add(WearableReading(
                user_id=seeded_user, date="2024/06/15", data_type="activity",
                data_json={"steps": 12000}, created_at=clock() - timedelta(days=30),
            ))

        result = engine.calculate_and_cache_user_metrics(seeded_user)

        assert result.success
        assert result.errors == {}
        data = cache_service.get_lifetime_metrics(seeded_user)["data"]
        assert data["totalDaysTracked"] == 11
        assert data["personalBests"]["maxSteps"] == {"value": 12000, "date": "2024-05-16"}

    def test_repository_rejects_non_iso_dates(self, raw_data, seeded_user):
        with pytest.raises(ValueError):
            raw_data.record_wearable_reading(seeded_user, {"steps": 1}, data_type="activity",
                                             date="2024/06/15")

        stored = raw_data.record_wearable_reading(seeded_user, {"steps": 1},
                                                  data_type="activity", date="2024-6-5")
        assert stored["date"] == "2024-06-05"


# =============================================================================
# DASHBOARD
# =============================================================================

class TestDashboard:
    """Dashboard summary built from the other sub-caches."""

    def test_defaults_without_sources(self, engine, raw_data):
        raw_data.create_user("empty")
        data = engine.calculate_dashboard_cache("empty")["data"]

        assert data["heroMetrics"] == {
            "currentBiologicalAge": 35,
            "longevityScore": 90,
            "todayScore": 75,
            "weeklyAverage": 75,
        }
        assert data["quickStats"]["streakDays"] == 0
        assert data["quickStats"]["totalGoalsThisWeek"] == 0
        assert data["recentAchievements"] == []
        assert data["nextActions"][0]["id"] == "keep-it-up"
        assert data["sources"] == []

    def test_reads_cached_sources(self, engine, seeded_user, raw_data):
        raw_data.create_assessment(seeded_user, age=40, biological_age=33.2)
        for timeframe in ("daily", "weekly", "lifetime"):
            engine.calculate_timeframe(seeded_user, timeframe)

        data = engine.calculate_dashboard_cache(seeded_user)["data"]

        assert data["heroMetrics"]["currentBiologicalAge"] == 33.2
        assert data["heroMetrics"]["todayScore"] == 90
        assert data["heroMetrics"]["longevityScore"] == 100
        assert data["heroMetrics"]["weeklyAverage"] == 90
        assert data["quickStats"]["streakDays"] == 10
        assert data["quickStats"]["goalsAchievedThisWeek"] == 3
        assert data["quickStats"]["improvementAreas"] == []
        assert data["sources"] == ["daily_metrics", "lifetime_metrics", "weekly_metrics"]
        assert any(a["id"] == "days-tracked-7" for a in data["recentAchievements"])

    def test_improvement_areas_and_actions(self, engine, raw_data):
        raw_data.create_user("tired")
        raw_data.record_wearable_reading("tired", {"sleep_hours": 4.5}, data_type="sleep")
        raw_data.record_wearable_reading("tired", {"steps": 1200}, data_type="activity")
        engine.calculate_timeframe("tired", "weekly")

        data = engine.calculate_dashboard_cache("tired")["data"]
        assert data["quickStats"]["improvementAreas"] == ["Physical Activity", "Sleep Quality"]
        assert [a["id"] for a in data["nextActions"]] == ["daily-movement", "sleep-consistency"]

    def test_source_read_failure_uses_defaults(self, engine, raw_data, cache_service, monkeypatch):
        raw_data.create_user("u1")
        monkeypatch.setattr(cache_service, "get_sub_cache", MagicMock(side_effect=RuntimeError("down")))

        data = engine.calculate_dashboard_cache("u1")["data"]
        assert data["heroMetrics"]["todayScore"] == 75


# =============================================================================
# ORCHESTRATION
# =============================================================================

class TestFullRecompute:
    """calculate_and_cache_user_metrics and calculate_timeframe."""

    def test_computes_all_sub_caches(self, engine, seeded_user, cache_service):
        result = engine.calculate_and_cache_user_metrics(seeded_user)

        assert isinstance(result, CalculationResult)
        assert result.success
        assert sorted(result.computed) == sorted(n.value for n in SubCacheName)
        for name in SubCacheName:
            assert cache_service.get_sub_cache(seeded_user, name) is not None

    def test_partial_failure(self, engine, seeded_user, cache_service):
        engine.calculate_weekly_metrics = MagicMock(side_effect=RuntimeError("weekly broke"))

        result = engine.calculate_and_cache_user_metrics(seeded_user)

        assert not result.success
        assert result.errors == {"weekly_metrics": "weekly broke"}
        assert "dashboard_cache" in result.computed
        assert cache_service.get_daily_metrics(seeded_user) is not None
        assert cache_service.get_weekly_metrics(seeded_user) is None

    def test_total_failure_raises(self, engine, seeded_user):
        for name in ("calculate_daily_metrics", "calculate_weekly_metrics",
                     "calculate_monthly_metrics", "calculate_lifetime_metrics",
                     "calculate_dashboard_cache"):
            setattr(engine, name, MagicMock(side_effect=RuntimeError("down")))

        with pytest.raises(MetricsCalculationError) as exc_info:
            engine.calculate_and_cache_user_metrics(seeded_user)
        assert set(exc_info.value.errors) == {n.value for n in SubCacheName}

    def test_timeframe_recomputes_one_plus_dashboard(self, engine, seeded_user, cache_service):
        result = engine.calculate_timeframe(seeded_user, "monthly")

        assert result.computed == ["monthly_metrics", "dashboard_cache"]
        assert cache_service.get_monthly_metrics(seeded_user) is not None
        assert cache_service.get_dashboard_cache(seeded_user) is not None
        assert cache_service.get_daily_metrics(seeded_user) is None

    def test_unknown_timeframe(self, engine):
        with pytest.raises(ValueError):
            engine.calculate_timeframe("u1", "yearly")

    def test_timeframe_maps_to_sub_cache(self):
        assert Timeframe("weekly").sub_cache is SubCacheName.WEEKLY
        assert Timeframe.LIFETIME.sub_cache is SubCacheName.LIFETIME


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
