"""
Tests for the lifetime metrics merge.

These tests verify:
- Monotonic counters and streaks only grow
- Personal bests keep the greater value
- History lists accumulate (union by date / id)
- Fields without a merge rule take the new value
"""

import copy

import pytest

from thanalytica.cache.lifetime import merge_lifetime_metrics


def _milestone(milestone_id, achieved_at):
    return {"id": milestone_id, "title": milestone_id, "achievedAt": achieved_at, "category": "fitness"}


@pytest.fixture
def stored():
    return {
        "totalDaysTracked": 120,
        "longestStreaks": {"exercise": 14, "meditation": 3},
        "currentStreaks": {"exercise": 2},
        "personalBests": {
            "maxSteps": {"value": 18000, "date": "2024-01-10"},
            "bestHRV": {"value": 60, "date": "2024-02-01"},
        },
        "biologicalAgeHistory": [
            {"date": "2024-01-01", "age": 34.0},
            {"date": "2024-03-01", "age": 33.5},
        ],
        "milestones": [
            _milestone("first-assessment", "2024-01-01"),
            _milestone("steps-10k", "2024-01-05"),
        ],
    }


# =============================================================================
# MONOTONIC FIELDS
# =============================================================================

class TestMonotonicFields:
    """Counters and streaks never decrease through a merge."""

    def test_total_days_keeps_larger(self, stored):
        """A recompute over capped history must not shrink the total."""
        merged = merge_lifetime_metrics(stored, {"totalDaysTracked": 90})
        assert merged["totalDaysTracked"] == 120

        merged = merge_lifetime_metrics(stored, {"totalDaysTracked": 121})
        assert merged["totalDaysTracked"] == 121

    def test_longest_streaks_max_per_key(self, stored):
        merged = merge_lifetime_metrics(stored, {
            "longestStreaks": {"exercise": 10, "meditation": 5, "qualitySleep": 8},
        })
        assert merged["longestStreaks"] == {"exercise": 14, "meditation": 5, "qualitySleep": 8}

    def test_personal_best_greater_wins(self, stored):
        merged = merge_lifetime_metrics(stored, {
            "personalBests": {
                "maxSteps": {"value": 20000, "date": "2024-05-01"},
                "bestHRV": {"value": 50, "date": "2024-05-02"},
            },
        })
        assert merged["personalBests"]["maxSteps"] == {"value": 20000, "date": "2024-05-01"}
        assert merged["personalBests"]["bestHRV"] == {"value": 60, "date": "2024-02-01"}

    def test_personal_best_tie_keeps_existing(self, stored):
        merged = merge_lifetime_metrics(stored, {
            "personalBests": {"maxSteps": {"value": 18000, "date": "2024-06-01"}},
        })
        assert merged["personalBests"]["maxSteps"]["date"] == "2024-01-10"

    def test_malformed_personal_best_ignored(self, stored):
        merged = merge_lifetime_metrics(stored, {
            "personalBests": {"maxSteps": {"value": "lots"}, "longestWorkout": None},
        })
        assert merged["personalBests"]["maxSteps"]["value"] == 18000
        assert "longestWorkout" not in merged["personalBests"]

    def test_commutative_for_monotonic_fields(self, stored):
        """Two concurrent recomputes end in the same state whichever lands first."""
        other = {
            "totalDaysTracked": 130,
            "longestStreaks": {"exercise": 9, "healthyEating": 4},
            "personalBests": {"maxSteps": {"value": 25000, "date": "2024-06-01"}},
        }
        a = merge_lifetime_metrics(stored, other)
        b = merge_lifetime_metrics(other, stored)

        for key in ("totalDaysTracked", "longestStreaks", "personalBests"):
            assert a[key] == b[key]


# =============================================================================
# HISTORY LISTS
# =============================================================================

class TestHistoryLists:
    """Age history and milestones accumulate."""

    def test_age_history_union_incoming_wins(self, stored):
        merged = merge_lifetime_metrics(stored, {
            "biologicalAgeHistory": [
                {"date": "2024-03-01", "age": 33.0},
                {"date": "2024-05-01", "age": 32.8},
            ],
        })
        history = merged["biologicalAgeHistory"]
        assert [h["date"] for h in history] == ["2024-01-01", "2024-03-01", "2024-05-01"]
        assert history[1]["age"] == 33.0

    def test_milestones_union_earliest_wins(self, stored):
        merged = merge_lifetime_metrics(stored, {
            "milestones": [
                _milestone("steps-10k", "2024-04-01"),
                _milestone("days-tracked-100", "2024-04-10"),
            ],
        })
        by_id = {m["id"]: m for m in merged["milestones"]}
        assert set(by_id) == {"first-assessment", "steps-10k", "days-tracked-100"}
        assert by_id["steps-10k"]["achievedAt"] == "2024-01-05"
        assert [m["achievedAt"] for m in merged["milestones"]] == sorted(
            m["achievedAt"] for m in merged["milestones"]
        )

    def test_milestones_capped_keeps_most_recent(self, stored):
        incoming = {"milestones": [_milestone(f"m-{i}", f"2024-05-{i + 10:02d}") for i in range(5)]}
        merged = merge_lifetime_metrics(stored, incoming, max_milestones=3)

        assert [m["id"] for m in merged["milestones"]] == ["m-2", "m-3", "m-4"]

    def test_milestones_without_id_skipped(self, stored):
        merged = merge_lifetime_metrics(stored, {"milestones": [{"title": "no id"}]})
        assert len(merged["milestones"]) == 2


# =============================================================================
# GENERAL
# =============================================================================

class TestMergeGeneral:
    """Cold start, replaced fields and input safety."""

    def test_cold_cache_takes_incoming(self):
        incoming = {"totalDaysTracked": 5, "milestones": [_milestone("steps-10k", "2024-06-01")]}
        merged = merge_lifetime_metrics(None, incoming)

        assert merged["totalDaysTracked"] == 5
        assert merged["milestones"][0]["id"] == "steps-10k"

    def test_current_streak_replaced(self, stored):
        """Current streaks can legitimately drop back to zero."""
        merged = merge_lifetime_metrics(stored, {"currentStreaks": {"exercise": 0}})
        assert merged["currentStreaks"] == {"exercise": 0}

    def test_missing_incoming_fields_keep_existing(self, stored):
        merged = merge_lifetime_metrics(stored, {"totalDaysTracked": 1})
        assert merged["personalBests"] == stored["personalBests"]
        assert merged["currentStreaks"] == stored["currentStreaks"]

    def test_inputs_not_modified(self, stored):
        before = copy.deepcopy(stored)
        incoming = {"totalDaysTracked": 200, "milestones": [_milestone("x", "2024-06-01")]}
        incoming_before = copy.deepcopy(incoming)

        merge_lifetime_metrics(stored, incoming)

        assert stored == before
        assert incoming == incoming_before


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
