"""
Metrics Calculation

Scoring policy, derived content (goals, correlations, streaks, milestones)
and the engine that turns raw readings into cached sub-caches.

Usage:
    engine = MetricsCalculationEngine(cache_service, raw_data)
    result = engine.calculate_and_cache_user_metrics(user_id)
"""

from .scoring import (
    NEUTRAL_SCORE,
    DIMENSIONS,
    DimensionScorer,
    SleepScorer,
    ActivityScorer,
    NutritionScorer,
    StressScorer,
    ScoringPolicy,
    classify_trend,
    extract_metric,
)
from .engine import (
    MetricsCalculationEngine,
    MetricsCalculationError,
    CalculationResult,
    Timeframe,
)

__all__ = [
    "NEUTRAL_SCORE",
    "DIMENSIONS",
    "DimensionScorer",
    "SleepScorer",
    "ActivityScorer",
    "NutritionScorer",
    "StressScorer",
    "ScoringPolicy",
    "classify_trend",
    "extract_metric",
    "MetricsCalculationEngine",
    "MetricsCalculationError",
    "CalculationResult",
    "Timeframe",
]
