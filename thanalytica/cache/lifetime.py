"""
Lifetime Metrics Merge

Lifetime metrics never expire and are never overwritten wholesale by a
normal recompute. A freshly computed lifetime payload is merged into the
stored one field by field, so monotonic counters can only grow and
history lists only accumulate.

The merge is commutative for the monotonic fields, which keeps two concurrent
recomputes from losing each other's contributions.
"""

import copy
from typing import Any, Dict, List, Optional

# Fields with a merge rule; all other fields are replaced
MERGED_FIELDS = (
    "totalDaysTracked",
    "longestStreaks",
    "personalBests",
    "biologicalAgeHistory",
    "milestones",
)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def _merge_counter(existing: Any, incoming: Any) -> Any:
    a, b = _as_number(existing), _as_number(incoming)
    if a is None:
        return incoming if b is not None else existing
    if b is None:
        return existing
    return max(a, b)


def _merge_streaks(existing: Dict, incoming: Dict) -> Dict:
    merged = dict(existing or {})
    for key, value in (incoming or {}).items():
        merged[key] = _merge_counter(merged.get(key), value)
    return merged


def _merge_personal_bests(existing: Dict, incoming: Dict) -> Dict:
    """Keep the entry with the greater value; ties keep the existing date."""
    merged = dict(existing or {})
    for key, entry in (incoming or {}).items():
        current = merged.get(key)
        if not isinstance(entry, dict) or _as_number(entry.get("value")) is None:
            continue
        if not isinstance(current, dict) or _as_number(current.get("value")) is None:
            merged[key] = entry
        elif entry["value"] > current["value"]:
            merged[key] = entry
    return merged


def _merge_age_history(existing: List[Dict], incoming: List[Dict]) -> List[Dict]:
    by_date: Dict[str, Dict] = {}
    for entry in list(existing or []) + list(incoming or []):
        if isinstance(entry, dict) and entry.get("date"):
            by_date[entry["date"]] = entry  # incoming is applied last and wins
    return [by_date[d] for d in sorted(by_date)]


def _merge_milestones(existing: List[Dict], incoming: List[Dict], limit: int) -> List[Dict]:
    by_id: Dict[str, Dict] = {}
    for entry in list(existing or []) + list(incoming or []):
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        current = by_id.get(entry["id"])
        if current is None or (entry.get("achievedAt") or "") < (current.get("achievedAt") or ""):
            by_id[entry["id"]] = entry

    ordered = sorted(by_id.values(), key=lambda m: (m.get("achievedAt") or "", m["id"]))
    return ordered[-limit:] if limit else ordered


def merge_lifetime_metrics(
    existing: Optional[Dict[str, Any]],
    incoming: Dict[str, Any],
    max_milestones: int = 50,
) -> Dict[str, Any]:
    """
    Merge a freshly computed lifetime payload into the stored one.

    Args:
        existing: Stored ``data`` payload (None when cold)
        incoming: Newly computed ``data`` payload
        max_milestones: Keep only this many most recent milestones

    Returns:
        New merged payload (inputs are not modified)
    """
    if not existing:
        merged = copy.deepcopy(incoming)
        merged["milestones"] = _merge_milestones([], incoming.get("milestones", []), max_milestones)
        return merged

    merged = copy.deepcopy(existing)
    # Fields without a merge rule (current streaks, ...) take the new value
    for key, value in incoming.items():
        if key not in MERGED_FIELDS:
            merged[key] = copy.deepcopy(value)

    merged["totalDaysTracked"] = _merge_counter(
        existing.get("totalDaysTracked"), incoming.get("totalDaysTracked")
    )
    merged["longestStreaks"] = _merge_streaks(
        existing.get("longestStreaks"), incoming.get("longestStreaks")
    )
    merged["personalBests"] = _merge_personal_bests(
        existing.get("personalBests"), incoming.get("personalBests")
    )
    merged["biologicalAgeHistory"] = _merge_age_history(
        existing.get("biologicalAgeHistory"), incoming.get("biologicalAgeHistory")
    )
    merged["milestones"] = _merge_milestones(
        existing.get("milestones"), incoming.get("milestones"), max_milestones
    )
    return merged
