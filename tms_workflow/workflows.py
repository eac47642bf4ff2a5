"""Table-driven transition guard for the segment state machine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from .errors import PreconditionError
from .models import SegmentStatus


@dataclass(frozen=True)
class Transition:
    """Legal source states and resulting states for one operation."""

    allowed_from: FrozenSet[SegmentStatus]
    success: SegmentStatus
    in_flight: Optional[SegmentStatus] = None
    failure: Optional[SegmentStatus] = None


SEGMENT_TRANSITIONS: Dict[str, Transition] = {
    "translate": Transition(
        allowed_from=frozenset({SegmentStatus.PENDING, SegmentStatus.TRANSLATION_FAILED}),
        in_flight=SegmentStatus.TRANSLATING,
        success=SegmentStatus.TRANSLATED,
        failure=SegmentStatus.TRANSLATION_FAILED,
    ),
    "start_review": Transition(
        allowed_from=frozenset(
            {
                SegmentStatus.TRANSLATED,
                SegmentStatus.TRANSLATED_TM,
                SegmentStatus.TRANSLATION_FAILED,
                SegmentStatus.REVIEW_FAILED,
                SegmentStatus.NEEDS_MANUAL_REVIEW,
            }
        ),
        in_flight=SegmentStatus.REVIEWING,
        success=SegmentStatus.REVIEW_PENDING,
        failure=SegmentStatus.REVIEW_FAILED,
    ),
    "complete_review": Transition(
        allowed_from=frozenset(
            {
                SegmentStatus.REVIEW_PENDING,
                SegmentStatus.NEEDS_MANUAL_REVIEW,
                SegmentStatus.TRANSLATION_FAILED,
                # Safety net for a review whose provider step never reported back.
                SegmentStatus.REVIEWING,
            }
        ),
        success=SegmentStatus.REVIEW_COMPLETED,
    ),
    "finalize": Transition(
        allowed_from=frozenset({SegmentStatus.REVIEW_COMPLETED}),
        success=SegmentStatus.CONFIRMED,
    ),
    "reopen": Transition(
        allowed_from=frozenset({SegmentStatus.REVIEW_COMPLETED, SegmentStatus.CONFIRMED}),
        success=SegmentStatus.REVIEW_PENDING,
    ),
}

TRANSLATED_STATUSES: FrozenSet[SegmentStatus] = frozenset(
    {
        SegmentStatus.TRANSLATED,
        SegmentStatus.TRANSLATED_TM,
        SegmentStatus.REVIEWING,
        SegmentStatus.REVIEW_PENDING,
        SegmentStatus.REVIEW_FAILED,
        SegmentStatus.NEEDS_MANUAL_REVIEW,
        SegmentStatus.REVIEW_COMPLETED,
        SegmentStatus.CONFIRMED,
    }
)

REVIEW_STAGE_STATUSES: FrozenSet[SegmentStatus] = frozenset(
    {
        SegmentStatus.REVIEWING,
        SegmentStatus.REVIEW_PENDING,
        SegmentStatus.REVIEW_FAILED,
        SegmentStatus.NEEDS_MANUAL_REVIEW,
        SegmentStatus.REVIEW_COMPLETED,
    }
)


def get_transition(operation: str) -> Transition:
    try:
        return SEGMENT_TRANSITIONS[operation]
    except KeyError:
        raise ValueError(f"Unknown segment operation: {operation}") from None


def can_transition(operation: str, current: SegmentStatus) -> bool:
    """Return whether ``operation`` may run on a segment in ``current`` status."""

    return current in get_transition(operation).allowed_from


def ensure_transition(operation: str, current: SegmentStatus) -> Transition:
    """Return the transition or raise :class:`PreconditionError`."""

    transition = get_transition(operation)
    if current not in transition.allowed_from:
        allowed = ", ".join(sorted(status.value for status in transition.allowed_from))
        raise PreconditionError(
            f"Cannot {operation.replace('_', ' ')} a segment in status '{current.value}'"
            f" (allowed: {allowed})",
            current_status=current.value,
        )
    return transition
