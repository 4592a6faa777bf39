"""
Tests for dimension scoring.

These tests verify:
- Per-dimension formulas and their thresholds
- The neutral default when a dimension has no data
- Per-day averaging over multi-day windows
- Trend classification
- Custom scorers plugged into the policy
"""

import logging
import math
from datetime import datetime

import pytest

from thanalytica.metrics.scoring import (
    ActivityScorer,
    DimensionScorer,
    NutritionScorer,
    ScoringPolicy,
    SleepScorer,
    StressScorer,
    bound_score,
    classify_trend,
    extract_metric,
    group_by_day,
    reading_day,
    readings_of_type,
)

from helpers import healthy_day, reading


# =============================================================================
# HELPERS
# =============================================================================

class TestExtractMetric:
    """Metric aggregation over readings."""

    def test_aggregations(self):
        readings = [
            reading("2024-06-01", "activity", steps=1000),
            reading("2024-06-01", "activity", steps=3000),
        ]
        assert extract_metric(readings, "steps", "sum") == 4000
        assert extract_metric(readings, "steps", "average") == 2000
        assert extract_metric(readings, "steps", "max") == 3000
        assert extract_metric(readings, "steps", "min") == 1000

    def test_missing_metric_is_none(self):
        assert extract_metric([reading("2024-06-01", "sleep", sleep_hours=7)], "steps") is None
        assert extract_metric([], "steps") is None

    def test_non_numeric_values_skipped(self):
        readings = [
            reading("2024-06-01", "activity", steps="many"),
            reading("2024-06-01", "activity", steps=True),
            reading("2024-06-01", "activity", steps=math.nan),
            reading("2024-06-01", "activity", steps=500),
            {"date": "2024-06-01", "data_type": "activity", "data_json": None},
        ]
        assert extract_metric(readings, "steps", "sum") == 500

    def test_unknown_aggregation(self):
        with pytest.raises(ValueError):
            extract_metric([reading("2024-06-01", "activity", steps=1)], "steps", "median")

    def test_bound_score(self):
        assert bound_score(-5) == 0.0
        assert bound_score(150) == 100.0
        assert bound_score(42.5) == 42.5

    def test_readings_of_type_matches_subtypes(self):
        readings = [
            reading("2024-06-01", "sleep"),
            reading("2024-06-01", "sleep_stage"),
            reading("2024-06-01", "activity"),
        ]
        assert len(readings_of_type(readings, "sleep")) == 2

    def test_group_by_day_sorted(self):
        grouped = group_by_day([
            reading("2024-06-03", "sleep"),
            reading("2024-06-01", "sleep"),
            reading("2024-06-03", "stress"),
        ])
        assert list(grouped) == ["2024-06-01", "2024-06-03"]
        assert len(grouped["2024-06-03"]) == 2

    def test_group_by_day_malformed_dates(self, caplog):
        slashed = dict(reading("2024/06/03", "sleep"), created_at=datetime(2024, 6, 2, 8, 0))
        undated = reading("someday", "sleep")

        with caplog.at_level(logging.WARNING):
            grouped = group_by_day([reading("2024-06-01", "sleep"), slashed, undated])

        assert list(grouped) == ["2024-06-01", "2024-06-02"]
        assert grouped["2024-06-02"] == [slashed]
        assert "malformed date" in caplog.text

    def test_reading_day(self):
        assert reading_day(reading("2024-06-01", "sleep")) == "2024-06-01"
        assert reading_day({"created_at": datetime(2024, 6, 2, 23, 59)}) == "2024-06-02"
        assert reading_day({"date": None}) is None


# =============================================================================
# DIMENSION SCORERS
# =============================================================================

class TestDimensionScorers:
    """Formula for each dimension on a single day."""

    @pytest.mark.parametrize("hours,expected", [
        (8, 90.0), (7, 90.0), (9, 90.0),
        (6.5, 75.0), (9.5, 75.0),
        (5, 60.0), (11, 60.0),
    ])
    def test_sleep(self, hours, expected):
        assert SleepScorer().score([reading("d", "sleep", sleep_hours=hours)]) == expected

    def test_sleep_averages_readings(self):
        readings = [
            reading("d", "sleep", sleep_hours=6),
            reading("d", "sleep", sleep_hours=8),
        ]
        assert SleepScorer().score(readings) == 90.0

    @pytest.mark.parametrize("steps,minutes,expected", [
        (10000, 30, 100.0),
        (10000, 0, 85.0),
        (8000, 0, 65.0),
        (5000, 45, 75.0),
        (2000, 0, 50.0),
    ])
    def test_activity(self, steps, minutes, expected):
        readings = [reading("d", "activity", steps=steps, active_minutes=minutes)]
        assert ActivityScorer().score(readings) == expected

    def test_activity_sums_readings(self):
        readings = [
            reading("d", "activity", steps=6000),
            reading("d", "activity", steps=4500),
        ]
        assert ActivityScorer().score(readings) == 85.0

    def test_nutrition_bounded(self):
        assert NutritionScorer().score([reading("d", "nutrition", nutrition_score=82)]) == 82.0
        assert NutritionScorer().score([reading("d", "nutrition", nutrition_score=140)]) == 100.0

    @pytest.mark.parametrize("hrv,expected", [
        (55, 90.0), (40, 90.0), (35, 75.0), (25, 60.0), (12, 45.0),
    ])
    def test_stress(self, hrv, expected):
        assert StressScorer().score([reading("d", "stress", hrv=hrv)]) == expected

    def test_no_qualifying_readings(self):
        other = [reading("d", "heart", resting_hr=60)]
        for scorer in (SleepScorer(), ActivityScorer(), NutritionScorer(), StressScorer()):
            assert scorer.score(other) is None


# =============================================================================
# POLICY
# =============================================================================

class TestScoringPolicy:
    """Defaults, windows and custom scorers."""

    def test_no_data_scores_neutral(self):
        policy = ScoringPolicy()
        scores = policy.score_day([])

        assert scores == {"sleep": 75.0, "activity": 75.0, "nutrition": 75.0, "stress": 75.0}
        assert policy.overall(scores) == 75

    def test_overall_is_unweighted_mean(self):
        policy = ScoringPolicy()
        scores = policy.score_day(healthy_day("2024-06-01"))

        assert scores == {"sleep": 90.0, "activity": 100.0, "nutrition": 80.0, "stress": 90.0}
        assert policy.overall(scores) == 90

    def test_missing_dimension_uses_default(self):
        scores = ScoringPolicy().score_day([reading("d", "sleep", sleep_hours=8)])
        assert scores["sleep"] == 90.0
        assert scores["activity"] == 75.0

    def test_average_scores_per_day(self):
        """A week of steps is scored day by day, never summed against a daily threshold."""
        readings = []
        for day in ("2024-06-01", "2024-06-02", "2024-06-03", "2024-06-04"):
            readings.append(reading(day, "activity", steps=3000))

        averages = ScoringPolicy().average_scores(readings)
        assert averages["activity"] == 50
        assert averages["sleep"] == 75
        assert averages["overall"] == round((50 + 75 * 3) / 4)

    def test_daily_series_skips_days_without_data(self):
        readings = [
            reading("2024-06-01", "sleep", sleep_hours=8),
            reading("2024-06-02", "activity", steps=12000),
        ]
        series = ScoringPolicy().daily_series(readings)
        assert series["sleep"] == [("2024-06-01", 90.0)]
        assert series["activity"] == [("2024-06-02", 85.0)]
        assert series["stress"] == []

    def test_custom_scorer(self):
        class FlatSleep(DimensionScorer):
            name = "sleep"

            def score(self, readings):
                return 42

        policy = ScoringPolicy(scorers={"sleep": FlatSleep()})
        assert policy.score_day([])["sleep"] == 42.0

    def test_custom_scorer_out_of_range_is_bounded(self):
        class Wild(DimensionScorer):
            def score(self, readings):
                return 250

        assert ScoringPolicy(scorers={"stress": Wild()}).score_day([])["stress"] == 100.0

    def test_custom_scorer_non_numeric_falls_back(self):
        class Broken(DimensionScorer):
            def score(self, readings):
                return "great"

        assert ScoringPolicy(scorers={"nutrition": Broken()}).score_day([])["nutrition"] == 75.0

    def test_unknown_dimension_rejected(self):
        with pytest.raises(ValueError):
            ScoringPolicy(scorers={"hydration": SleepScorer()})

    def test_custom_default(self):
        assert ScoringPolicy(default_score=60).score_day([])["sleep"] == 60.0


# =============================================================================
# TRENDS
# =============================================================================

class TestTrends:
    """First half vs second half of a daily series."""

    def test_up(self):
        assert classify_trend([50, 50, 60, 60]) == "up"

    def test_down(self):
        assert classify_trend([60, 60, 50, 50]) == "down"

    def test_stable_within_threshold(self):
        assert classify_trend([70, 72, 71, 74]) == "stable"

    def test_short_series_stable(self):
        assert classify_trend([]) == "stable"
        assert classify_trend([80]) == "stable"

    def test_from_zero(self):
        assert classify_trend([0, 0, 5]) == "up"
        assert classify_trend([0, 0]) == "stable"

    def test_policy_trends(self):
        readings = [
            reading("2024-06-01", "stress", hrv=20),
            reading("2024-06-02", "stress", hrv=22),
            reading("2024-06-03", "stress", hrv=45),
            reading("2024-06-04", "stress", hrv=50),
        ]
        trends = ScoringPolicy().trends(readings)
        assert trends["stress"] == "up"
        assert trends["sleep"] == "stable"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
