"""Issue lifecycle management, including file-wide batch resolution."""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog

from .access import ProjectAccess
from .errors import PreconditionError, ValidationError
from .models import (
    BatchResolution,
    BatchResolveResult,
    Issue,
    IssueCreate,
    IssueFilter,
    IssueResolution,
    IssueResolutionRequest,
    IssueStatus,
    ResolutionAction,
    Segment,
)
from .progress import ProgressAggregator
from .state import State
from .workflows import can_transition, get_transition

logger = structlog.get_logger(__name__)

_MANUAL_STATUSES = {IssueStatus.OPEN, IssueStatus.IN_PROGRESS, IssueStatus.DEFERRED}


def issue_at(segment: Segment, issue_index: int) -> Issue:
    if not 0 <= issue_index < len(segment.issues):
        raise ValidationError(
            f"Issue index {issue_index} out of range for segment {segment.id}"
            f" ({len(segment.issues)} issues)"
        )
    return segment.issues[issue_index]


def settle_issue(
    issue: Issue,
    action: ResolutionAction,
    actor_id: str,
    modified_text: Optional[str] = None,
    comment: Optional[str] = None,
) -> Issue:
    """Resolve or reject an open or in-progress issue in place."""

    if not issue.is_actionable:
        raise PreconditionError(
            f"Issue {issue.id} is {issue.status.value}; only open or in-progress issues can be resolved",
            current_status=issue.status.value,
        )
    if action == ResolutionAction.MODIFY and not modified_text:
        raise ValidationError("modified_text is required for a modify resolution")
    issue.status = IssueStatus.REJECTED if action == ResolutionAction.REJECT else IssueStatus.RESOLVED
    issue.resolution = IssueResolution(
        action=action,
        modified_text=modified_text if action == ResolutionAction.MODIFY else None,
        comment=comment,
        resolved_by=actor_id,
        resolved_at=datetime.utcnow(),
    )
    return issue


def apply_resolution_request(segment: Segment, request: IssueResolutionRequest, actor_id: str) -> Issue:
    return settle_issue(
        issue_at(segment, request.issue_index),
        request.action,
        actor_id,
        modified_text=request.modified_text,
        comment=request.comment,
    )


class IssueTracker:
    """Single and batch issue operations on stored segments."""

    def __init__(self, state: State, progress: ProgressAggregator) -> None:
        self._state = state
        self._access = ProjectAccess(state)
        self._progress = progress

    def add_issue(self, segment_id: str, actor_id: str, payload: IssueCreate) -> Issue:
        segment = self._access.segment(segment_id)
        _, project = self._access.parents(segment)
        self._access.require_reviewer(project, actor_id, "add issues to this segment")

        with self._state.segment_lock(segment_id):
            segment = self._state.get_segment(segment_id)
            if not segment.translation and not segment.final_text:
                raise PreconditionError(
                    "Issues can only be raised against a translated segment",
                    current_status=segment.status.value,
                )
            issue = Issue(
                id=str(uuid4()),
                type=payload.type,
                severity=payload.severity,
                description=payload.description,
                position=payload.position,
                suggestion=payload.suggestion,
                created_by=actor_id,
            )
            segment.issues.append(issue)
            self._state.save_segment(segment)

        logger.info("Issue added", segment_id=segment_id, issue_id=issue.id, actor_id=actor_id)
        return issue

    def resolve_issue(
        self,
        segment_id: str,
        issue_index: int,
        actor_id: str,
        action: ResolutionAction,
        modified_text: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> Segment:
        segment = self._access.segment(segment_id)
        _, project = self._access.parents(segment)
        self._access.require_reviewer(project, actor_id, "resolve issues on this segment")

        with self._state.segment_lock(segment_id):
            segment = self._state.get_segment(segment_id)
            issue = settle_issue(
                issue_at(segment, issue_index), action, actor_id, modified_text=modified_text, comment=comment
            )
            self._state.save_segment(segment)

        logger.info(
            "Issue resolved",
            segment_id=segment_id,
            issue_id=issue.id,
            action=action.value,
            status=issue.status.value,
            actor_id=actor_id,
        )
        return segment

    def set_issue_status(self, segment_id: str, issue_index: int, actor_id: str, status: IssueStatus) -> Segment:
        """Move an unsettled issue between open, in progress and deferred."""

        if status not in _MANUAL_STATUSES:
            raise ValidationError("Use resolve to settle an issue")
        segment = self._access.segment(segment_id)
        _, project = self._access.parents(segment)
        self._access.require_reviewer(project, actor_id, "update issues on this segment")

        with self._state.segment_lock(segment_id):
            segment = self._state.get_segment(segment_id)
            issue = issue_at(segment, issue_index)
            if issue.is_settled:
                raise PreconditionError(
                    f"Issue {issue.id} is {issue.status.value}; reopen it first",
                    current_status=issue.status.value,
                )
            issue.status = status
            self._state.save_segment(segment)
        return segment

    def reopen_issue(self, segment_id: str, issue_index: int, actor_id: str) -> Segment:
        """Reopen a settled issue, sending a finished segment back to review."""

        segment = self._access.segment(segment_id)
        _, project = self._access.parents(segment)
        self._access.require_reviewer(project, actor_id, "reopen issues on this segment")

        with self._state.segment_lock(segment_id):
            segment = self._state.get_segment(segment_id)
            issue = issue_at(segment, issue_index)
            if not issue.is_settled:
                raise PreconditionError(
                    f"Issue {issue.id} is {issue.status.value}; only settled issues can be reopened",
                    current_status=issue.status.value,
                )
            issue.status = IssueStatus.OPEN
            issue.resolution = None
            previous_status = segment.status
            if can_transition("reopen", segment.status):
                segment.status = get_transition("reopen").success
                segment.quality_score = None
                segment.confirmed_at = None
            self._state.save_segment(segment)

        logger.info(
            "Issue reopened",
            segment_id=segment_id,
            issue_id=issue.id,
            previous_status=previous_status.value,
            status=segment.status.value,
        )
        if segment.status != previous_status:
            self._progress.safe_refresh(segment.file_id)
        return segment

    def batch_resolve(
        self,
        file_id: str,
        actor_id: str,
        issue_filter: IssueFilter,
        resolution: BatchResolution,
    ) -> BatchResolveResult:
        """Settle every open issue in the file that matches the filter.

        Each segment is updated under its own lock; a failing segment is
        reported and does not undo segments already written.
        """

        if resolution.action == ResolutionAction.MODIFY:
            raise ValidationError("Batch resolution supports only accept or reject")
        file = self._access.file(file_id)
        project = self._access.project(file.project_id)
        self._access.require_reviewer(project, actor_id, "batch resolve issues in this file")

        result = BatchResolveResult()
        for snapshot in self._state.list_segments(file_id):
            if not any(self._selects(issue, issue_filter) for issue in snapshot.issues):
                continue
            try:
                resolved = self._resolve_segment_issues(snapshot.id, actor_id, issue_filter, resolution)
            except Exception:
                logger.exception("Batch resolution failed for segment", segment_id=snapshot.id, file_id=file_id)
                result.failed_segments.append(snapshot.id)
                continue
            if resolved:
                result.modified_segments += 1
                result.resolved_issues += resolved

        logger.info(
            "Batch issue resolution finished",
            file_id=file_id,
            action=resolution.action.value,
            modified_segments=result.modified_segments,
            resolved_issues=result.resolved_issues,
            failed_segments=len(result.failed_segments),
        )
        return result

    def _resolve_segment_issues(
        self,
        segment_id: str,
        actor_id: str,
        issue_filter: IssueFilter,
        resolution: BatchResolution,
    ) -> int:
        with self._state.segment_lock(segment_id):
            segment = self._state.get_segment(segment_id)
            resolved = 0
            for issue in segment.issues:
                if self._selects(issue, issue_filter):
                    settle_issue(issue, resolution.action, actor_id, comment=resolution.comment)
                    resolved += 1
            if resolved:
                self._state.save_segment(segment)
            return resolved

    @staticmethod
    def _selects(issue: Issue, issue_filter: IssueFilter) -> bool:
        return issue.status == IssueStatus.OPEN and issue_filter.matches(issue)
