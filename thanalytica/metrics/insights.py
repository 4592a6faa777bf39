"""
Derived Metric Content

Goals, insights, correlations, streaks, personal bests and milestones
computed from raw readings and assessments. Pure functions: no database
access, no clock reads (callers pass ``now`` where it matters).
"""

import math
from datetime import date, datetime, timedelta
from typing import Dict, Any, List, Optional, Tuple

from .scoring import (
    DIMENSIONS,
    Reading,
    ScoringPolicy,
    extract_metric,
    group_by_day,
    readings_of_type,
)

# Weekly targets
WEEKLY_EXERCISE_MINUTES = 150
WEEKLY_SLEEP_HOURS = 56
WEEKLY_STEPS = 70000

# Monthly targets (30-day window)
MONTHLY_EXERCISE_MINUTES = 600
MONTHLY_SLEEP_HOURS = 210
MONTHLY_STEPS = 300000

# Correlation analysis
MIN_CORRELATION_DAYS = 7
HIGH_SIGNIFICANCE = 0.7
MEDIUM_SIGNIFICANCE = 0.4

# Score below which a dimension is listed as an improvement area
IMPROVEMENT_THRESHOLD = 70

DIMENSION_LABELS = {
    "sleep": "Sleep Quality",
    "activity": "Physical Activity",
    "nutrition": "Nutrition",
    "stress": "Stress Management",
}

CATEGORY_ICONS = {
    "fitness": "🏃",
    "nutrition": "🥗",
    "sleep": "🌙",
    "stress": "🧘",
    "longevity": "⭐",
}


# =============================================================================
# DAILY AGGREGATES
# =============================================================================

def _day_totals(
    readings: List[Reading],
    data_type: Optional[str],
    metric: str,
    aggregation: str,
) -> Dict[str, float]:
    """Per-day aggregate of one metric, only for days that report it."""
    if data_type is not None:
        readings = readings_of_type(readings, data_type)
    totals = {}
    for day, day_readings in group_by_day(readings).items():
        value = extract_metric(day_readings, metric, aggregation)
        if value is not None:
            totals[day] = value
    return totals


def _goal(target: float, actual: float) -> Dict[str, Any]:
    actual = round(actual, 1)
    return {"target": target, "actual": actual, "achieved": actual >= target}


# =============================================================================
# WEEKLY
# =============================================================================

def weekly_goals(readings: List[Reading]) -> Dict[str, Dict[str, Any]]:
    """Exercise minutes, sleep hours and steps for the week vs targets."""
    exercise = sum(_day_totals(readings, "activity", "active_minutes", "sum").values())
    sleep = sum(_day_totals(readings, "sleep", "sleep_hours", "average").values())
    steps = sum(_day_totals(readings, "activity", "steps", "sum").values())
    return {
        "exerciseMinutes": _goal(WEEKLY_EXERCISE_MINUTES, exercise),
        "sleepHours": _goal(WEEKLY_SLEEP_HOURS, sleep),
        "stepsGoal": _goal(WEEKLY_STEPS, steps),
    }


def weekly_insights(
    averages: Dict[str, float],
    trends: Dict[str, str],
    goals: Dict[str, Dict[str, Any]],
    limit: int = 10,
) -> List[str]:
    """Short human-readable observations about the week."""
    insights = []

    for dimension in DIMENSIONS:
        label = DIMENSION_LABELS[dimension]
        if trends.get(dimension) == "up":
            insights.append(f"Your {label.lower()} improved this week")
        elif trends.get(dimension) == "down":
            insights.append(f"Your {label.lower()} declined this week")

    goal_names = {
        "exerciseMinutes": "exercise",
        "sleepHours": "sleep",
        "stepsGoal": "steps",
    }
    for key, goal in goals.items():
        name = goal_names.get(key, key)
        if goal["achieved"]:
            insights.append(f"You reached your weekly {name} goal")
        elif goal["target"] and goal["actual"] >= goal["target"] * 0.8:
            insights.append(f"You are close to your weekly {name} goal")

    weakest = min(DIMENSIONS, key=lambda d: averages.get(d, 100))
    if averages.get(weakest, 100) < IMPROVEMENT_THRESHOLD:
        insights.append(f"Focus on {DIMENSION_LABELS[weakest].lower()} next week")

    return insights[:limit]


# =============================================================================
# MONTHLY
# =============================================================================

def monthly_goals(readings: List[Reading]) -> Dict[str, Any]:
    exercise = sum(_day_totals(readings, "activity", "active_minutes", "sum").values())
    sleep = sum(_day_totals(readings, "sleep", "sleep_hours", "average").values())
    steps = sum(_day_totals(readings, "activity", "steps", "sum").values())
    goals = [
        {"name": "Exercise Minutes", **_goal(MONTHLY_EXERCISE_MINUTES, exercise)},
        {"name": "Sleep Hours", **_goal(MONTHLY_SLEEP_HOURS, sleep)},
        {"name": "Steps", **_goal(MONTHLY_STEPS, steps)},
    ]
    return {"fitnessGoals": goals}


def monthly_achievements(goals: Dict[str, Any], limit: int = 20) -> List[str]:
    achieved = [
        f"Reached the monthly {g['name'].lower()} goal"
        for g in goals.get("fitnessGoals", []) if g.get("achieved")
    ]
    return achieved[:limit]


def pearson(xs: List[float], ys: List[float]) -> Optional[float]:
    """Pearson correlation coefficient; None when undefined (constant series)."""
    n = len(xs)
    if n != len(ys) or n < 2:
        return None
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    cov = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    var_x = sum((x - mean_x) ** 2 for x in xs)
    var_y = sum((y - mean_y) ** 2 for y in ys)
    if var_x == 0 or var_y == 0:
        return None
    r = cov / math.sqrt(var_x * var_y)
    return max(-1.0, min(1.0, r))


def significance(correlation: float) -> str:
    strength = abs(correlation)
    if strength >= HIGH_SIGNIFICANCE:
        return "high"
    if strength >= MEDIUM_SIGNIFICANCE:
        return "medium"
    return "low"


def correlation_insights(
    series: Dict[str, List[Tuple[str, float]]],
    limit: int = 15,
    min_days: int = MIN_CORRELATION_DAYS,
) -> List[Dict[str, Any]]:
    """
    Correlations between pairs of daily dimension scores.

    Only pairs with at least ``min_days`` days scored in both dimensions
    are reported, strongest first.
    """
    insights = []
    for i, first in enumerate(DIMENSIONS):
        for second in DIMENSIONS[i + 1:]:
            a = dict(series.get(first, []))
            b = dict(series.get(second, []))
            days = sorted(set(a) & set(b))
            if len(days) < min_days:
                continue
            r = pearson([a[d] for d in days], [b[d] for d in days])
            if r is None:
                continue

            label_a, label_b = DIMENSION_LABELS[first], DIMENSION_LABELS[second]
            direction = "better" if r > 0 else "worse"
            insights.append({
                "factor1": label_a,
                "factor2": label_b,
                "correlation": round(r, 2),
                "insight": f"Days with better {label_a.lower()} tend to have {direction} {label_b.lower()}",
                "significance": significance(r),
                "days": len(days),
            })

    insights.sort(key=lambda c: abs(c["correlation"]), reverse=True)
    return insights[:limit]


# =============================================================================
# LIFETIME
# =============================================================================

def days_tracked(readings: List[Reading]) -> List[str]:
    """Distinct ISO days with at least one reading, oldest first."""
    return list(group_by_day(readings).keys())


def _streak_days(readings: List[Reading]) -> Dict[str, List[str]]:
    """Days meeting each streak condition."""
    exercise = _day_totals(readings, "activity", "active_minutes", "sum")
    # Meditation is logged by several device types
    meditation = _day_totals(readings, None, "meditation_minutes", "sum")
    eating = _day_totals(readings, "nutrition", "nutrition_score", "average")
    sleep = _day_totals(readings, "sleep", "sleep_hours", "average")
    return {
        "exercise": sorted(d for d, v in exercise.items() if v >= 30),
        "meditation": sorted(d for d, v in meditation.items() if v > 0),
        "healthyEating": sorted(d for d, v in eating.items() if v >= 70),
        "qualitySleep": sorted(d for d, v in sleep.items() if 7 <= v <= 9),
    }


def _runs(days: List[str]) -> List[Tuple[str, str, int]]:
    """Consecutive-day runs as (first_day, last_day, length)."""
    runs = []
    start = prev = None
    length = 0
    for day in days:
        current = date.fromisoformat(day)
        if prev is not None and current - prev == timedelta(days=1):
            length += 1
        else:
            if start is not None:
                runs.append((start.isoformat(), prev.isoformat(), length))
            start, length = current, 1
        prev = current
    if start is not None:
        runs.append((start.isoformat(), prev.isoformat(), length))
    return runs


def longest_streaks(readings: List[Reading]) -> Dict[str, int]:
    return {
        name: max((length for _, _, length in _runs(days)), default=0)
        for name, days in _streak_days(readings).items()
    }


def current_streak(readings: List[Reading], today: date, name: str = "exercise") -> int:
    """Length of the run ending today or yesterday (0 if broken)."""
    runs = _runs(_streak_days(readings)[name])
    if not runs:
        return 0
    _, last_day, length = runs[-1]
    if today - date.fromisoformat(last_day) <= timedelta(days=1):
        return length
    return 0


def _best(totals: Dict[str, float]) -> Optional[Dict[str, Any]]:
    if not totals:
        return None
    # Earliest day wins ties
    day = min(totals, key=lambda d: (-totals[d], d))
    return {"value": round(totals[day], 1), "date": day}


def personal_bests(readings: List[Reading], policy: ScoringPolicy) -> Dict[str, Dict[str, Any]]:
    sleep_scores = dict(policy.daily_series(readings_of_type(readings, "sleep"))["sleep"])
    candidates = {
        "maxSteps": _best(_day_totals(readings, "activity", "steps", "sum")),
        "bestSleepScore": _best(sleep_scores),
        "longestWorkout": _best(_day_totals(readings, "activity", "workout_minutes", "max")),
        "bestHRV": _best(_day_totals(readings, "stress", "hrv", "max")),
    }
    return {key: value for key, value in candidates.items() if value is not None}


def _iso_day(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return str(value)[:10]


def biological_age_history(assessments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    history = []
    for a in assessments:
        if a.get("biological_age") is None:
            continue
        bio_age = round(float(a["biological_age"]), 1)
        history.append({
            "date": _iso_day(a["created_at"]),
            "age": bio_age,
            "chronologicalAge": a["age"],
            "difference": round(a["age"] - bio_age, 1),
        })
    return history


def _milestone(milestone_id: str, title: str, description: str, achieved_at: str, category: str) -> Dict[str, Any]:
    return {
        "id": milestone_id,
        "title": title,
        "description": description,
        "achievedAt": achieved_at,
        "category": category,
    }


def milestones(
    readings: List[Reading],
    assessments: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Milestones derivable from the data.

    ``achievedAt`` is the day the milestone was first reached, so repeated
    recomputes produce identical entries.
    """
    found = []

    if assessments:
        found.append(_milestone(
            "first-assessment", "First Assessment Complete",
            "Completed your initial health assessment",
            _iso_day(assessments[0]["created_at"]), "longevity",
        ))

    tracked = days_tracked(readings)
    for n in (7, 30, 100, 365):
        if len(tracked) >= n:
            found.append(_milestone(
                f"days-tracked-{n}", f"{n} Days Tracked",
                f"Logged health data on {n} different days",
                tracked[n - 1], "longevity",
            ))

    categories = {
        "exercise": ("fitness", "Exercise"),
        "meditation": ("stress", "Meditation"),
        "healthyEating": ("nutrition", "Healthy Eating"),
        "qualitySleep": ("sleep", "Sleep"),
    }
    for name, days in _streak_days(readings).items():
        category, label = categories[name]
        for first_day, _, length in _runs(days):
            if length >= 7:
                reached = (date.fromisoformat(first_day) + timedelta(days=6)).isoformat()
                found.append(_milestone(
                    f"streak-{name}-7", f"7-Day {label} Streak",
                    f"Kept up {label.lower()} for a full week",
                    reached, category,
                ))
                break

    step_days = _day_totals(readings, "activity", "steps", "sum")
    big_days = sorted(d for d, v in step_days.items() if v >= 10000)
    if big_days:
        found.append(_milestone(
            "steps-10k", "10,000 Steps",
            "Walked 10,000 steps in a single day",
            big_days[0], "fitness",
        ))

    found.sort(key=lambda m: (m["achievedAt"], m["id"]))
    return found


# =============================================================================
# DASHBOARD
# =============================================================================

NEXT_ACTION_CATALOGUE = {
    "sleep": {
        "id": "sleep-consistency",
        "title": "Improve Sleep Consistency",
        "description": "Go to bed at the same time each night",
        "priority": "high",
        "estimatedImpact": 2.5,
        "timeRequired": "21 days",
        "category": "Sleep",
    },
    "activity": {
        "id": "daily-movement",
        "title": "Add a Daily Walk",
        "description": "Take a 30 minute brisk walk every day",
        "priority": "high",
        "estimatedImpact": 3.0,
        "timeRequired": "30 minutes/day",
        "category": "Fitness",
    },
    "nutrition": {
        "id": "whole-foods",
        "title": "Eat More Whole Foods",
        "description": "Replace one processed meal a day with vegetables and protein",
        "priority": "medium",
        "estimatedImpact": 1.5,
        "timeRequired": "14 days",
        "category": "Nutrition",
    },
    "stress": {
        "id": "breathing-practice",
        "title": "Start a Breathing Practice",
        "description": "Spend 10 minutes on guided breathing before bed",
        "priority": "medium",
        "estimatedImpact": 1.0,
        "timeRequired": "10 minutes/day",
        "category": "Stress",
    },
}

MAINTENANCE_ACTION = {
    "id": "keep-it-up",
    "title": "Keep Your Routine",
    "description": "All areas look good - keep logging to track progress",
    "priority": "low",
    "estimatedImpact": 0.5,
    "timeRequired": "ongoing",
    "category": "Longevity",
}


def improvement_areas(scores: Dict[str, float]) -> List[str]:
    """Dimensions scoring below the threshold, weakest first."""
    weak = [d for d in DIMENSIONS if scores.get(d, 100) < IMPROVEMENT_THRESHOLD]
    return sorted(weak, key=lambda d: scores[d])


def next_actions(areas: List[str], limit: int = 3) -> List[Dict[str, Any]]:
    actions = [dict(NEXT_ACTION_CATALOGUE[a]) for a in areas if a in NEXT_ACTION_CATALOGUE]
    return actions[:limit] if actions else [dict(MAINTENANCE_ACTION)]


def recent_achievements(
    all_milestones: List[Dict[str, Any]],
    today: date,
    days: int = 7,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    cutoff = (today - timedelta(days=days)).isoformat()
    recent = [m for m in all_milestones if (m.get("achievedAt") or "") >= cutoff]
    recent.sort(key=lambda m: m["achievedAt"], reverse=True)
    return [
        {
            "id": m["id"],
            "title": m["title"],
            "date": m["achievedAt"],
            "icon": CATEGORY_ICONS.get(m.get("category"), "⭐"),
        }
        for m in recent[:limit]
    ]


def correlation_highlights(insights: List[Dict[str, Any]], limit: int = 3) -> List[Dict[str, Any]]:
    return [
        {
            "insight": c["insight"],
            "correlation": c["correlation"],
            "actionable": c.get("significance") != "low",
        }
        for c in insights[:limit]
    ]
