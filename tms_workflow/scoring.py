"""Quality scoring and edit-distance helpers used at review time."""
from __future__ import annotations

from typing import Dict, Iterable, Tuple

from rapidfuzz.distance import Levenshtein

from .models import Issue, IssueSeverity, IssueStatus

# severity -> (resolved penalty, rejected or unresolved penalty)
QUALITY_PENALTIES: Dict[IssueSeverity, Tuple[int, int]] = {
    IssueSeverity.LOW: (1, 2),
    IssueSeverity.MEDIUM: (3, 5),
    IssueSeverity.HIGH: (5, 10),
    IssueSeverity.CRITICAL: (10, 20),
}

MAX_QUALITY_SCORE = 100


def issue_penalty(issue: Issue) -> int:
    """Penalty for one issue at finalization time.

    Resolved issues cost the lower rate. Rejected issues mean the flagged
    text was kept as is, so they cost the higher rate, as does anything still
    open, in progress or deferred.
    """

    resolved_penalty, unresolved_penalty = QUALITY_PENALTIES[issue.severity]
    if issue.status == IssueStatus.RESOLVED:
        return resolved_penalty
    return unresolved_penalty


def calculate_quality_score(issues: Iterable[Issue]) -> int:
    score = MAX_QUALITY_SCORE - sum(issue_penalty(issue) for issue in issues)
    return int(round(max(0, min(MAX_QUALITY_SCORE, score))))


def edit_distance(original: str, edited: str) -> float:
    """Normalised Levenshtein distance in ``[0, 1]``."""

    original = original or ""
    edited = edited or ""
    if original == edited:
        return 0.0
    longest = max(len(original), len(edited))
    distance = Levenshtein.distance(original, edited)
    return min(1.0, distance / longest)
