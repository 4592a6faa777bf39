"""
Dimension Scoring

Turns raw wearable readings into 0-100 scores for four dimensions:
sleep, activity, nutrition and stress.

Rules shared by every scorer:
    - Scores are bounded to [0, 100].
    - A dimension with no qualifying readings scores the neutral default
      (75). With no data at all, every dimension and the overall are 75.
    - Overall = unweighted mean of the four dimension scores, rounded.
    - Non-numeric values and readings without data_json are skipped.

Per-dimension formulas (one day of readings):
    Sleep:     average sleep_hours; 7-9 h -> 90, 6-10 h -> 75, else 60
    Activity:  50 + 20 (steps >= 10k) + 15 (steps >= 8k) + 25 (active >= 30 min)
    Nutrition: average nutrition_score as reported by the food log
    Stress:    average hrv; >= 40 -> 90, >= 30 -> 75, >= 20 -> 60, else 45

Windows longer than a day are scored per day and averaged, so a week of
steps is never compared against a daily threshold.

Trend:
    Mean of the first half of a daily series vs the second half.
    Relative change > +10% -> "up", < -10% -> "down", else "stable".
"""

import logging
import math
from collections import defaultdict
from datetime import date, datetime
from typing import Dict, Any, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 75.0
TREND_THRESHOLD = 0.10

DIMENSIONS = ("sleep", "activity", "nutrition", "stress")

Reading = Dict[str, Any]


# =============================================================================
# HELPERS
# =============================================================================

def bound_score(value: float) -> float:
    """Clamp a score to [0, 100]."""
    return max(0.0, min(100.0, float(value)))


def _numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return float(value)


def metric_values(readings: Iterable[Reading], metric: str) -> List[float]:
    """Numeric values of ``metric`` across readings (malformed ones skipped)."""
    values = []
    for reading in readings:
        data = reading.get("data_json")
        if not isinstance(data, dict):
            continue
        value = _numeric(data.get(metric))
        if value is not None:
            values.append(value)
    return values


def extract_metric(
    readings: Iterable[Reading],
    metric: str,
    aggregation: str = "sum",
) -> Optional[float]:
    """
    Aggregate one metric across readings.

    Args:
        readings: Reading dicts with a ``data_json`` payload
        metric: Key inside data_json (steps, hrv, sleep_hours, ...)
        aggregation: sum, average, max or min

    Returns:
        Aggregated value, or None when no reading carries the metric
    """
    values = metric_values(readings, metric)
    if not values:
        return None

    if aggregation == "sum":
        return sum(values)
    if aggregation == "average":
        return sum(values) / len(values)
    if aggregation == "max":
        return max(values)
    if aggregation == "min":
        return min(values)
    raise ValueError(f"Unknown aggregation: {aggregation}")


def readings_of_type(readings: Iterable[Reading], data_type: str) -> List[Reading]:
    """Readings whose data_type mentions ``data_type`` (e.g. sleep, sleep_stage)."""
    return [r for r in readings if data_type in (r.get("data_type") or "")]


def reading_day(reading: Reading) -> Optional[str]:
    """
    ISO day a reading belongs to.

    A ``date`` that isn't an ISO day falls back to ``created_at``; readings
    with neither are dropped (None).
    """
    day = reading.get("date")
    if day:
        try:
            return date.fromisoformat(str(day)).isoformat()
        except ValueError:
            logger.warning(f"Reading {reading.get('id')} has malformed date {day!r}")
    created_at = reading.get("created_at")
    if isinstance(created_at, datetime):
        return created_at.date().isoformat()
    return None


def group_by_day(readings: Iterable[Reading]) -> Dict[str, List[Reading]]:
    """Readings keyed by their ISO day, in date order."""
    days: Dict[str, List[Reading]] = defaultdict(list)
    for reading in readings:
        day = reading_day(reading)
        if day:
            days[day].append(reading)
    return dict(sorted(days.items()))


# =============================================================================
# DIMENSION SCORERS
# =============================================================================

class DimensionScorer:
    """
    Scores one dimension from a day's readings.

    Subclasses implement ``score`` and return None when no reading
    qualifies; the policy substitutes the neutral default.
    """

    name: str = ""

    def score(self, readings: List[Reading]) -> Optional[float]:
        raise NotImplementedError


class SleepScorer(DimensionScorer):
    name = "sleep"

    def score(self, readings: List[Reading]) -> Optional[float]:
        hours = extract_metric(readings_of_type(readings, "sleep"), "sleep_hours", "average")
        if hours is None:
            return None
        if 7 <= hours <= 9:
            return 90.0
        if 6 <= hours <= 10:
            return 75.0
        return 60.0


class ActivityScorer(DimensionScorer):
    name = "activity"

    def score(self, readings: List[Reading]) -> Optional[float]:
        activity = readings_of_type(readings, "activity")
        steps = extract_metric(activity, "steps", "sum")
        active_minutes = extract_metric(activity, "active_minutes", "sum")
        if steps is None and active_minutes is None:
            return None

        score = 50.0
        if (steps or 0) >= 10000:
            score += 20
        if (steps or 0) >= 8000:
            score += 15
        if (active_minutes or 0) >= 30:
            score += 25
        return min(score, 100.0)


class NutritionScorer(DimensionScorer):
    name = "nutrition"

    def score(self, readings: List[Reading]) -> Optional[float]:
        value = extract_metric(readings_of_type(readings, "nutrition"), "nutrition_score", "average")
        return None if value is None else bound_score(value)


class StressScorer(DimensionScorer):
    name = "stress"

    def score(self, readings: List[Reading]) -> Optional[float]:
        hrv = extract_metric(readings_of_type(readings, "stress"), "hrv", "average")
        if hrv is None:
            return None
        # Higher HRV generally indicates better stress management
        if hrv >= 40:
            return 90.0
        if hrv >= 30:
            return 75.0
        if hrv >= 20:
            return 60.0
        return 45.0


# =============================================================================
# POLICY
# =============================================================================

class ScoringPolicy:
    """
    Bundles the four dimension scorers and the neutral default.

    Pass custom scorers to swap a formula without touching the engine:
        policy = ScoringPolicy(scorers={"sleep": MySleepScorer()})
    """

    def __init__(
        self,
        scorers: Optional[Dict[str, DimensionScorer]] = None,
        default_score: float = NEUTRAL_SCORE,
        trend_threshold: float = TREND_THRESHOLD,
    ):
        self.scorers: Dict[str, DimensionScorer] = {
            "sleep": SleepScorer(),
            "activity": ActivityScorer(),
            "nutrition": NutritionScorer(),
            "stress": StressScorer(),
        }
        if scorers:
            unknown = set(scorers) - set(DIMENSIONS)
            if unknown:
                raise ValueError(f"Unknown dimensions: {sorted(unknown)}")
            self.scorers.update(scorers)
        self.default_score = bound_score(default_score)
        self.trend_threshold = trend_threshold

    def _raw_score(self, dimension: str, readings: List[Reading]) -> Optional[float]:
        value = self.scorers[dimension].score(readings)
        if value is None:
            return None
        value = _numeric(value)
        if value is None:
            logger.warning(f"Scorer for {dimension} returned a non-numeric score, ignoring")
            return None
        return bound_score(value)

    def score_day(self, readings: List[Reading]) -> Dict[str, float]:
        """Dimension scores for one day of readings, defaults applied."""
        scores = {}
        for dimension in DIMENSIONS:
            value = self._raw_score(dimension, readings)
            scores[dimension] = self.default_score if value is None else value
        return scores

    def daily_series(self, readings: List[Reading]) -> Dict[str, List[Tuple[str, float]]]:
        """
        Per-day scores for each dimension over a window.

        Days without qualifying readings for a dimension are left out of
        that dimension's series (no defaults are inserted).
        """
        series: Dict[str, List[Tuple[str, float]]] = {d: [] for d in DIMENSIONS}
        for day, day_readings in group_by_day(readings).items():
            for dimension in DIMENSIONS:
                value = self._raw_score(dimension, day_readings)
                if value is not None:
                    series[dimension].append((day, value))
        return series

    def average_scores(self, readings: List[Reading]) -> Dict[str, float]:
        """
        Mean of the per-day scores for each dimension, plus ``overall``.

        A dimension without any scored day gets the neutral default.
        """
        series = self.daily_series(readings)
        averages = {}
        for dimension in DIMENSIONS:
            values = [v for _, v in series[dimension]]
            averages[dimension] = round(sum(values) / len(values)) if values else round(self.default_score)
        averages["overall"] = self.overall(averages)
        return averages

    def overall(self, scores: Dict[str, float]) -> int:
        """Unweighted mean of the dimension scores, rounded."""
        values = [scores.get(d, self.default_score) for d in DIMENSIONS]
        return round(sum(values) / len(values))

    def trends(self, readings: List[Reading]) -> Dict[str, str]:
        """Trend per dimension across the window's daily scores."""
        series = self.daily_series(readings)
        return {
            dimension: classify_trend([v for _, v in series[dimension]], self.trend_threshold)
            for dimension in DIMENSIONS
        }


def classify_trend(values: List[float], threshold: float = TREND_THRESHOLD) -> str:
    """
    Classify a series as "up", "down" or "stable".

    Compares the mean of the first half with the mean of the second half
    (an odd middle element belongs to the second half). Fewer than two
    values is always "stable".
    """
    values = [v for v in (_numeric(x) for x in values) if v is not None]
    if len(values) < 2:
        return "stable"

    half = len(values) // 2
    first = sum(values[:half]) / half
    second = sum(values[half:]) / (len(values) - half)

    if first == 0:
        return "up" if second > 0 else "stable"

    change = (second - first) / abs(first)
    if change > threshold:
        return "up"
    if change < -threshold:
        return "down"
    return "stable"
