"""
Metrics Calculation Engine

Reads raw data, scores it, and writes the five sub-caches through the
Cache Service:

1. daily, weekly, monthly and lifetime are computed in parallel, each
   isolated so one failure never blocks the others
2. the dashboard is computed last from the envelopes just written, falling
   back to cache reads (and finally to defaults) for anything missing

Called from the background recompute dispatcher and the batch jobs, never
on the request path.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Any, List, Optional

from thanalytica.cache.service import CacheService
from thanalytica.database.models import SubCacheName
from thanalytica.database.repository import RawDataRepository, MAX_HISTORY_READINGS
from thanalytica.utils.clock import Clock, utcnow

from . import insights
from .scoring import DIMENSIONS, ScoringPolicy, extract_metric, bound_score

logger = logging.getLogger(__name__)

DEFAULT_BIOLOGICAL_AGE = 35
LONGEVITY_SCALE = 1.2


class Timeframe(str, Enum):
    """Timeframes served by the metrics endpoint."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    LIFETIME = "lifetime"

    @property
    def sub_cache(self) -> SubCacheName:
        return {
            Timeframe.DAILY: SubCacheName.DAILY,
            Timeframe.WEEKLY: SubCacheName.WEEKLY,
            Timeframe.MONTHLY: SubCacheName.MONTHLY,
            Timeframe.LIFETIME: SubCacheName.LIFETIME,
        }[self]


class MetricsCalculationError(Exception):
    """Every sub-calculation for a user failed."""

    def __init__(self, user_id: str, errors: Dict[str, str]):
        self.user_id = user_id
        self.errors = errors
        super().__init__(f"All metric calculations failed for {user_id}: {errors}")


@dataclass
class CalculationResult:
    """Outcome of a (partial or full) recompute for one user."""
    user_id: str
    computed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors


class MetricsCalculationEngine:
    """
    Computes and caches all metric tiers for a user.

    Args:
        cache_service: Where envelopes are written
        raw_data: Source of readings and assessments
        scoring: Dimension scoring policy (default formulas if omitted)
        clock: Time source for windows and expiry stamps
        max_workers: Parallel sub-calculations per user
    """

    def __init__(
        self,
        cache_service: CacheService,
        raw_data: RawDataRepository,
        scoring: Optional[ScoringPolicy] = None,
        clock: Clock = utcnow,
        max_workers: int = 4,
    ):
        self.cache = cache_service
        self.raw_data = raw_data
        self.scoring = scoring or ScoringPolicy()
        self.clock = clock
        self.max_workers = max_workers
        self.limits = cache_service.limits

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def calculate_and_cache_user_metrics(self, user_id: str) -> CalculationResult:
        """
        Recompute every sub-cache for a user.

        Raises:
            MetricsCalculationError: Only if every sub-calculation failed
        """
        logger.info(f"Calculating metrics for user {user_id}")
        start = time.perf_counter()
        result = CalculationResult(user_id=user_id)

        try:
            self.cache.initialize_user_cache(user_id)
        except Exception as e:
            logger.warning(f"Could not initialize cache for {user_id}: {e}")

        calculations = {
            SubCacheName.DAILY: self.calculate_daily_metrics,
            SubCacheName.WEEKLY: self.calculate_weekly_metrics,
            SubCacheName.MONTHLY: self.calculate_monthly_metrics,
            SubCacheName.LIFETIME: self.calculate_lifetime_metrics,
        }

        envelopes: Dict[SubCacheName, Dict[str, Any]] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="metrics") as pool:
            futures = {name: pool.submit(fn, user_id) for name, fn in calculations.items()}
            for name, future in futures.items():
                try:
                    envelopes[name] = future.result()
                    result.computed.append(name.value)
                except Exception as e:
                    result.errors[name.value] = str(e)
                    logger.error(f"Failed to calculate {name.value} for {user_id}: {e}")

        try:
            self.calculate_dashboard_cache(user_id, sources=envelopes)
            result.computed.append(SubCacheName.DASHBOARD.value)
        except Exception as e:
            result.errors[SubCacheName.DASHBOARD.value] = str(e)
            logger.error(f"Failed to calculate dashboard_cache for {user_id}: {e}")

        result.duration_seconds = time.perf_counter() - start

        if not result.computed:
            raise MetricsCalculationError(user_id, result.errors)

        logger.info(
            f"Calculated metrics for {user_id} in {result.duration_seconds:.2f}s"
            + (f" with {len(result.errors)} errors" if result.errors else "")
        )
        return result

    def calculate_timeframe(self, user_id: str, timeframe: str) -> CalculationResult:
        """
        Recompute one timeframe, then refresh the dashboard from it.

        Raises:
            ValueError: Unknown timeframe
            Exception: Whatever the timeframe calculation raised
        """
        timeframe = Timeframe(timeframe)
        start = time.perf_counter()
        result = CalculationResult(user_id=user_id)

        calculate = {
            Timeframe.DAILY: self.calculate_daily_metrics,
            Timeframe.WEEKLY: self.calculate_weekly_metrics,
            Timeframe.MONTHLY: self.calculate_monthly_metrics,
            Timeframe.LIFETIME: self.calculate_lifetime_metrics,
        }[timeframe]

        envelope = calculate(user_id)
        result.computed.append(timeframe.sub_cache.value)

        try:
            self.calculate_dashboard_cache(user_id, sources={timeframe.sub_cache: envelope})
            result.computed.append(SubCacheName.DASHBOARD.value)
        except Exception as e:
            result.errors[SubCacheName.DASHBOARD.value] = str(e)
            logger.error(f"Failed to refresh dashboard for {user_id}: {e}")

        result.duration_seconds = time.perf_counter() - start
        return result

    # =========================================================================
    # WINDOWS
    # =========================================================================

    def _today_bounds(self):
        now = self.clock()
        start = datetime(now.year, now.month, now.day)
        return start, start + timedelta(days=1) - timedelta(microseconds=1)

    # =========================================================================
    # SUB-CALCULATIONS
    # =========================================================================

    def calculate_daily_metrics(self, user_id: str) -> Dict[str, Any]:
        """Today's scores and key metrics (24h TTL)."""
        start, end = self._today_bounds()
        readings = self.raw_data.get_wearable_readings_in_range(user_id, start, end)

        scores = self.scoring.score_day(readings)
        recovery = extract_metric(readings, "recovery_score", "average")
        hrv = extract_metric(readings, "hrv", "average")

        data = {
            "date": start.date().isoformat(),
            "sleepScore": round(scores["sleep"]),
            "activityScore": round(scores["activity"]),
            "nutritionScore": round(scores["nutrition"]),
            "stressScore": round(scores["stress"]),
            "overallScore": self.scoring.overall(scores),
            "stepCount": int(extract_metric(readings, "steps", "sum") or 0),
            "activeMinutes": int(extract_metric(readings, "active_minutes", "sum") or 0),
            "heartRateVariability": round(hrv, 1) if hrv is not None else None,
            "recoveryScore": round(bound_score(recovery)) if recovery is not None else None,
            "readingCount": len(readings),
        }
        return self.cache.update_daily_metrics(user_id, data)

    def calculate_weekly_metrics(self, user_id: str) -> Dict[str, Any]:
        """Seven-day averages, trends, goals and insights (7d TTL)."""
        now = self.clock()
        readings = self.raw_data.get_wearable_readings_in_range(user_id, now - timedelta(days=7), now)

        averages = self.scoring.average_scores(readings)
        trends = self.scoring.trends(readings)
        goals = insights.weekly_goals(readings)

        data = {
            "averageScores": averages,
            "trends": {f"{d}Trend": trends[d] for d in DIMENSIONS},
            "weeklyGoals": goals,
            "topInsights": insights.weekly_insights(
                averages, trends, goals, limit=self.limits.MAX_INSIGHTS_PER_SECTION
            ),
            "daysWithData": len(insights.days_tracked(readings)),
        }
        return self.cache.update_weekly_metrics(user_id, data)

    def calculate_monthly_metrics(self, user_id: str) -> Dict[str, Any]:
        """Thirty-day averages, goals, correlations and achievements (30d TTL)."""
        now = self.clock()
        readings = self.raw_data.get_wearable_readings_in_range(user_id, now - timedelta(days=30), now)

        goals = insights.monthly_goals(readings)
        data = {
            "monthlyAverages": self.scoring.average_scores(readings),
            "monthlyGoals": goals,
            "correlationInsights": insights.correlation_insights(
                self.scoring.daily_series(readings),
                limit=self.limits.MAX_CORRELATION_INSIGHTS,
            ),
            "achievements": insights.monthly_achievements(
                goals, limit=self.limits.MAX_ACHIEVEMENTS_CACHE
            ),
            "daysWithData": len(insights.days_tracked(readings)),
        }
        return self.cache.update_monthly_metrics(user_id, data)

    def calculate_lifetime_metrics(self, user_id: str) -> Dict[str, Any]:
        """
        All-time totals, streaks, bests and milestones (no expiry).

        Reads at most MAX_HISTORY_READINGS readings; the merge with the
        stored payload keeps anything older that was seen before.
        """
        readings = self.raw_data.get_all_wearable_readings(user_id, limit=MAX_HISTORY_READINGS)
        assessments = self.raw_data.get_assessments(user_id)
        user = self.raw_data.get_user(user_id) or {}
        today = self.clock().date()

        # The users row counts every day ever logged, beyond the read window
        days_tracked = max(
            len(insights.days_tracked(readings)), user.get("total_days_tracked") or 0
        )

        data = {
            "totalDaysTracked": days_tracked,
            "longestStreaks": insights.longest_streaks(readings),
            "currentStreaks": {
                "exercise": insights.current_streak(readings, today, "exercise"),
            },
            "personalBests": insights.personal_bests(readings, self.scoring),
            "biologicalAgeHistory": insights.biological_age_history(assessments),
            "milestones": insights.milestones(readings, assessments),
        }
        return self.cache.update_lifetime_metrics(user_id, data)

    def calculate_dashboard_cache(
        self,
        user_id: str,
        sources: Optional[Dict[SubCacheName, Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Dashboard summary (1h TTL).

        Built only from the other sub-caches and the latest assessment.
        Missing sources fall back to defaults; they never fail the dashboard.
        """
        sources = dict(sources or {})
        for name in (SubCacheName.DAILY, SubCacheName.WEEKLY,
                     SubCacheName.MONTHLY, SubCacheName.LIFETIME):
            if name not in sources:
                sources[name] = self._read_source(user_id, name)

        daily = (sources[SubCacheName.DAILY] or {}).get("data") or {}
        weekly = (sources[SubCacheName.WEEKLY] or {}).get("data") or {}
        monthly = (sources[SubCacheName.MONTHLY] or {}).get("data") or {}
        lifetime = (sources[SubCacheName.LIFETIME] or {}).get("data") or {}

        try:
            assessment = self.raw_data.get_latest_assessment(user_id)
        except Exception as e:
            logger.warning(f"Latest assessment unavailable for {user_id}: {e}")
            assessment = None

        default = round(self.scoring.default_score)
        today_score = daily.get("overallScore", default)
        weekly_scores = weekly.get("averageScores") or {}

        if assessment:
            biological_age = assessment.get("biological_age") or assessment.get("age") or DEFAULT_BIOLOGICAL_AGE
        else:
            biological_age = DEFAULT_BIOLOGICAL_AGE

        # Improvement areas from the week, or today when the week is missing
        area_scores = weekly_scores or {
            d: daily[f"{d}Score"] for d in DIMENSIONS if f"{d}Score" in daily
        }
        areas = insights.improvement_areas(area_scores)

        goals = weekly.get("weeklyGoals") or {}

        data = {
            "heroMetrics": {
                "currentBiologicalAge": biological_age,
                "longevityScore": min(100, round(today_score * LONGEVITY_SCALE)),
                "todayScore": today_score,
                "weeklyAverage": weekly_scores.get("overall", default),
            },
            "quickStats": {
                "streakDays": (lifetime.get("currentStreaks") or {}).get("exercise", 0),
                "goalsAchievedThisWeek": sum(1 for g in goals.values() if g.get("achieved")),
                "totalGoalsThisWeek": len(goals),
                "improvementAreas": [insights.DIMENSION_LABELS[a] for a in areas],
            },
            "recentAchievements": insights.recent_achievements(
                lifetime.get("milestones") or [],
                self.clock().date(),
                limit=self.limits.MAX_ACHIEVEMENTS_CACHE,
            ),
            "nextActions": insights.next_actions(areas),
            "correlationHighlights": insights.correlation_highlights(
                monthly.get("correlationInsights") or []
            ),
            "sources": sorted(name.value for name, env in sources.items() if env),
        }
        return self.cache.update_dashboard_cache(user_id, data)

    def _read_source(self, user_id: str, name: SubCacheName) -> Optional[Dict[str, Any]]:
        try:
            return self.cache.get_sub_cache(user_id, name)
        except Exception as e:
            logger.warning(f"Could not read {name.value} for dashboard of {user_id}: {e}")
            return None
