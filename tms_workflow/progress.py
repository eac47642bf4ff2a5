"""File- and project-level progress aggregation."""
from __future__ import annotations

from collections import Counter
from typing import Iterable, List, Optional, Tuple

import structlog

from .models import (
    FileProgress,
    FileRecord,
    FileStatus,
    ProjectProgress,
    ProjectRecord,
    ProjectStatus,
    Segment,
    SegmentStatus,
)
from .state import State
from .workflows import REVIEW_STAGE_STATUSES, TRANSLATED_STATUSES

logger = structlog.get_logger(__name__)

# File statuses that only make sense while the matching segments exist
_DERIVED_FILE_STATUSES = {
    FileStatus.TRANSLATING,
    FileStatus.TRANSLATED,
    FileStatus.REVIEWING,
    FileStatus.COMPLETED,
}


def compute_file_progress(segments: Iterable[Segment]) -> Tuple[FileProgress, Counter]:
    counts: Counter = Counter(segment.status for segment in segments)
    total = sum(counts.values())
    translated = sum(count for status, count in counts.items() if status in TRANSLATED_STATUSES)
    completed = counts.get(SegmentStatus.CONFIRMED, 0)
    percentage = int(round(completed / total * 100)) if total else 0
    return FileProgress(total=total, completed=completed, translated=translated, percentage=percentage), counts


def derive_file_status(progress: FileProgress, counts: Counter, current: FileStatus) -> FileStatus:
    """Map segment population counts onto a coarse file status.

    A previously derived status that the counts no longer support is demoted
    to pending; ``error`` and ``pending`` are left alone when nothing applies.
    """

    if progress.total and progress.completed == progress.total:
        return FileStatus.COMPLETED
    if progress.completed or any(counts.get(status) for status in REVIEW_STAGE_STATUSES):
        return FileStatus.REVIEWING
    if progress.translated:
        return FileStatus.TRANSLATED
    if counts.get(SegmentStatus.TRANSLATING):
        return FileStatus.TRANSLATING
    if current in _DERIVED_FILE_STATUSES:
        return FileStatus.PENDING
    return current


def derive_project_status(files: List[FileRecord], progress: ProjectProgress) -> ProjectStatus:
    if files and all(file.status == FileStatus.COMPLETED for file in files):
        return ProjectStatus.COMPLETED
    started = progress.translated_segments > 0 or any(
        file.status != FileStatus.PENDING for file in files
    )
    return ProjectStatus.IN_PROGRESS if started else ProjectStatus.PENDING


class ProgressAggregator:
    """Recomputes file and project counters from fresh segment snapshots."""

    def __init__(self, state: State) -> None:
        self._state = state

    def refresh_file(self, file_id: str) -> FileRecord:
        file = self._state.get_file(file_id)
        segments = self._state.list_segments(file_id)
        progress, counts = compute_file_progress(segments)
        # An error flag set by a failed job holds while failed segments remain
        if file.status == FileStatus.ERROR and counts.get(SegmentStatus.TRANSLATION_FAILED):
            status, clear_error = FileStatus.ERROR, False
        else:
            current = FileStatus.PENDING if file.status == FileStatus.ERROR else file.status
            status, clear_error = derive_file_status(progress, counts, current), True
        updated = self._state.update_file_progress(
            file_id, progress=progress, status=status, clear_error=clear_error
        )
        if updated.status != file.status:
            logger.info(
                "File status changed",
                file_id=file_id,
                previous=file.status.value,
                status=updated.status.value,
                completed=progress.completed,
                total=progress.total,
            )
        return updated

    def refresh_project(self, project_id: str) -> ProjectRecord:
        project = self._state.get_project(project_id)
        files = self._state.list_files(project_id)
        total_words = translated_words = 0
        total_segments = translated_segments = completed_segments = 0
        for file in files:
            for segment in self._state.list_segments(file.id):
                words = segment.word_count()
                total_words += words
                total_segments += 1
                if segment.status in TRANSLATED_STATUSES:
                    translated_words += words
                    translated_segments += 1
                if segment.status == SegmentStatus.CONFIRMED:
                    completed_segments += 1
        percentage = round(translated_words / total_words * 100, 2) if total_words else 0.0
        progress = ProjectProgress(
            completion_percentage=percentage,
            translated_words=translated_words,
            total_words=total_words,
            total_segments=total_segments,
            translated_segments=translated_segments,
            completed_segments=completed_segments,
        )
        status = derive_project_status(files, progress)
        updated = self._state.update_project_progress(project_id, progress, status)
        if updated.status != project.status:
            logger.info(
                "Project status changed",
                project_id=project_id,
                previous=project.status.value,
                status=updated.status.value,
            )
        return updated

    def refresh(self, file_id: str) -> Tuple[FileRecord, ProjectRecord]:
        file = self.refresh_file(file_id)
        return file, self.refresh_project(file.project_id)

    def safe_refresh(self, file_id: str) -> Optional[FileRecord]:
        """Refresh without propagating failures; the next event self-heals."""

        try:
            file, _ = self.refresh(file_id)
            return file
        except Exception:
            logger.exception("Progress aggregation failed", file_id=file_id)
            return None
