"""Change detection between consecutive analyses of the same entity.

Pure functions: no I/O. Result payloads come from the model and vary in shape by
entity type, so every lookup is defensive.
"""

import copy
import re
from typing import Any

from app.core.schemas_intelligence_jobs import (
    AnalysisJob,
    AnalysisSnapshot,
    ChangeDetectionResult,
    SnapshotChanges,
    utc_now,
)

INITIAL_SUMMARY = "Initial analysis — no previous data to compare."
NO_CHANGES_SUMMARY = "No significant changes detected since the last analysis."

# Word-set overlap above this ratio marks two items as the same finding
SIMILARITY_THRESHOLD = 0.6

# Checked in order; first numeric hit wins
SCORE_FIELD_PRIORITY: tuple[tuple[str, ...], ...] = (
    ("dealScore",),
    ("healthScore",),
    ("engagementScore",),
    ("intelligence", "dealScore"),
    ("intelligence", "healthScore"),
    ("intelligence", "engagementScore"),
    ("dealScoreData", "totalScore"),
    ("score",),
)

# Canonical list field -> accepted keys, canonical first
LIST_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "insights": ("insights",),
    "riskFactors": ("riskFactors", "risks"),
    "opportunitySignals": ("opportunitySignals", "opportunities"),
    "recommendedActions": ("recommendedActions", "actions"),
}

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def _lookup(payload: Any, path: tuple[str, ...]) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def extract_score(result: dict[str, Any] | None) -> float | None:
    """
    Extract the primary score from a result payload.

    Args:
        result: Analysis result payload (any shape)

    Returns:
        First numeric value found along SCORE_FIELD_PRIORITY, or None
    """
    if not result:
        return None

    for path in SCORE_FIELD_PRIORITY:
        value = _lookup(result, path)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return value
    return None


def extract_list(result: dict[str, Any] | None, field: str) -> list[str]:
    """Read a string list from `intelligence.<field>` or `<field>`, skipping junk."""
    if not result:
        return []

    items = None
    for key in LIST_FIELD_ALIASES.get(field, (field,)):
        items = _lookup(result, ("intelligence", key)) or result.get(key)
        if items:
            break
    if not isinstance(items, list):
        return []

    return [item for item in items if isinstance(item, str) and item.strip()]


def _normalize(text: str) -> str:
    return " ".join(_NON_ALNUM.sub("", text.lower()).split())


def is_similar(a: str, b: str) -> bool:
    """
    Near-duplicate check for two findings.

    Same after normalization, one contains the other, or more than 60% of
    the smaller word set appears in the other.
    """
    norm_a = _normalize(a)
    norm_b = _normalize(b)

    if norm_a == norm_b:
        return True
    # An empty normalized item is contained in anything
    if norm_a in norm_b or norm_b in norm_a:
        return True

    words_a = set(norm_a.split())
    words_b = set(norm_b.split())
    overlap = len(words_a & words_b) / min(len(words_a), len(words_b))
    return overlap > SIMILARITY_THRESHOLD


def find_new_items(current: list[str] | None, previous: list[str] | None) -> list[str]:
    """Items in `current` with no exact or near-duplicate match in `previous`."""
    current = current or []
    previous = previous or []
    seen = {p.lower().strip() for p in previous}

    return [
        item
        for item in current
        if item.lower().strip() not in seen and not any(is_similar(p, item) for p in previous)
    ]


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def _format_number(value: float | None) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def generate_change_summary(changes: ChangeDetectionResult) -> str:
    """Deterministic human-readable summary of a change set."""
    if not changes.has_changes:
        return NO_CHANGES_SUMMARY

    parts: list[str] = []

    if changes.score_change:
        direction = "improved" if changes.score_change > 0 else "declined"
        parts.append(
            f"Score {direction} by {_format_number(abs(changes.score_change))} points "
            f"({_format_number(changes.previous_score)} → {_format_number(changes.current_score)})"
        )

    n = len(changes.new_insights)
    if n:
        parts.append(f"{n} new {_plural(n, 'insight', 'insights')} discovered")

    n = len(changes.new_risks)
    if n:
        parts.append(f"{n} new {_plural(n, 'risk', 'risks')} identified")
    n = len(changes.resolved_risks)
    if n:
        parts.append(f"{n} {_plural(n, 'risk', 'risks')} resolved")

    n = len(changes.new_opportunities)
    if n:
        parts.append(f"{n} new {_plural(n, 'opportunity', 'opportunities')} found")
    n = len(changes.resolved_opportunities)
    if n:
        parts.append(f"{n} {_plural(n, 'opportunity', 'opportunities')} addressed")

    if not parts:
        # Only recommended actions moved
        return "Recommended actions updated."

    return ". ".join(parts) + "."


def detect_changes(
    current: dict[str, Any] | None,
    previous: dict[str, Any] | None,
) -> ChangeDetectionResult:
    """
    Compare an analysis result with its predecessor.

    Args:
        current: Result payload of the run that just completed
        previous: Result payload of the prior completed run, if any

    Returns:
        ChangeDetectionResult with score delta, new/resolved findings and summary
    """
    changes = ChangeDetectionResult()

    if not previous:
        changes.summary = INITIAL_SUMMARY
        return changes

    current_score = extract_score(current)
    previous_score = extract_score(previous)
    if current_score is not None and previous_score is not None:
        diff = current_score - previous_score
        if diff != 0:
            changes.has_changes = True
            changes.score_change = diff
            changes.previous_score = previous_score
            changes.current_score = current_score
            changes.changed_fields.append("score")

    changes.new_insights = find_new_items(
        extract_list(current, "insights"), extract_list(previous, "insights")
    )
    if changes.new_insights:
        changes.has_changes = True
        changes.changed_fields.append("insights")

    current_risks = extract_list(current, "riskFactors")
    previous_risks = extract_list(previous, "riskFactors")
    changes.new_risks = find_new_items(current_risks, previous_risks)
    changes.resolved_risks = find_new_items(previous_risks, current_risks)
    if changes.new_risks or changes.resolved_risks:
        changes.has_changes = True
        changes.changed_fields.append("riskFactors")

    current_opps = extract_list(current, "opportunitySignals")
    previous_opps = extract_list(previous, "opportunitySignals")
    changes.new_opportunities = find_new_items(current_opps, previous_opps)
    changes.resolved_opportunities = find_new_items(previous_opps, current_opps)
    if changes.new_opportunities or changes.resolved_opportunities:
        changes.has_changes = True
        changes.changed_fields.append("opportunitySignals")

    current_actions = extract_list(current, "recommendedActions")
    previous_actions = extract_list(previous, "recommendedActions")
    if find_new_items(current_actions, previous_actions) or find_new_items(
        previous_actions, current_actions
    ):
        changes.has_changes = True
        changes.changed_fields.append("recommendedActions")

    changes.summary = generate_change_summary(changes)
    return changes


def create_history_snapshot(job: AnalysisJob) -> AnalysisSnapshot:
    """Build an immutable history snapshot from a completed job."""
    changes = None
    if job.change_detection:
        cd = job.change_detection
        changes = SnapshotChanges(
            score_change=cd.score_change,
            new_insights=list(cd.new_insights),
            resolved_risks=list(cd.resolved_risks),
            new_risks=list(cd.new_risks),
            summary=cd.summary,
        )

    return AnalysisSnapshot(
        analysis_id=job.analysis_id,
        result=copy.deepcopy(job.result),
        stats=job.stats.model_copy() if job.stats else None,
        completed_at=job.completed_at or utc_now(),
        user_id=job.user_id,
        changes=changes,
    )
