"""Write-through SQLAlchemy persistence for the in-memory workflow state."""
from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, List

import structlog
from sqlalchemy.orm import Session

from .db_models import (
    File as ORMFile,
    Project as ORMProject,
    Segment as ORMSegment,
    SegmentIssue as ORMSegmentIssue,
    TermEntry as ORMTermEntry,
    TranslationMemory as ORMTranslationMemory,
)
from .models import (
    FileProgress,
    FileRecord,
    FileStatus,
    Issue,
    ProjectProgress,
    ProjectRecord,
    ProjectStatus,
    ReviewMetadata,
    Segment,
    SegmentStatus,
    TermEntry,
    TranslationMemoryEntry,
    TranslationMetadata,
)

if TYPE_CHECKING:
    from .state import State

logger = structlog.get_logger(__name__)


class SqlStore:
    """Mirrors state mutations into relational tables and reloads them."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session_scope(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Writes ---------------------------------------------------------------
    def persist_project(self, project: ProjectRecord) -> None:
        with self._session_scope() as session:
            session.merge(
                ORMProject(
                    id=project.id,
                    name=project.name,
                    source_language=project.source_language,
                    target_language=project.target_language,
                    domain=project.domain,
                    manager_id=project.manager_id,
                    reviewer_ids=list(project.reviewer_ids),
                    translator_ids=list(project.translator_ids),
                    status=project.status.value,
                    progress=project.progress.model_dump(mode="json"),
                    created_at=project.created_at,
                    updated_at=project.updated_at,
                )
            )

    def persist_file(self, file: FileRecord) -> None:
        with self._session_scope() as session:
            session.merge(
                ORMFile(
                    id=file.id,
                    project_id=file.project_id,
                    name=file.name,
                    source_language=file.source_language,
                    target_language=file.target_language,
                    status=file.status.value,
                    progress=file.progress.model_dump(mode="json"),
                    error_details=file.error_details,
                    created_at=file.created_at,
                    updated_at=file.updated_at,
                )
            )

    def persist_segment(self, segment: Segment) -> None:
        with self._session_scope() as session:
            session.merge(
                ORMSegment(
                    id=segment.id,
                    file_id=segment.file_id,
                    project_id=segment.project_id,
                    index=segment.index,
                    source_text=segment.source_text,
                    translation=segment.translation,
                    translated_length=segment.translated_length,
                    final_text=segment.final_text,
                    status=segment.status.value,
                    translation_metadata=(
                        segment.translation_metadata.model_dump(mode="json")
                        if segment.translation_metadata
                        else None
                    ),
                    review_metadata=(
                        segment.review_metadata.model_dump(mode="json")
                        if segment.review_metadata
                        else None
                    ),
                    quality_score=segment.quality_score,
                    reviewer_id=segment.reviewer_id,
                    translator_id=segment.translator_id,
                    error=segment.error,
                    translation_completed_at=segment.translation_completed_at,
                    review_completed_at=segment.review_completed_at,
                    confirmed_at=segment.confirmed_at,
                    created_at=segment.created_at,
                    updated_at=segment.updated_at,
                )
            )
            session.flush()
            session.query(ORMSegmentIssue).filter(
                ORMSegmentIssue.segment_id == segment.id
            ).delete(synchronize_session=False)
            for position_index, issue in enumerate(segment.issues):
                session.add(
                    ORMSegmentIssue(
                        id=issue.id,
                        segment_id=segment.id,
                        position_index=position_index,
                        type=issue.type.value,
                        severity=issue.severity.value,
                        description=issue.description,
                        span=issue.position.model_dump() if issue.position else None,
                        suggestion=issue.suggestion,
                        status=issue.status.value,
                        resolution=issue.resolution.model_dump(mode="json") if issue.resolution else None,
                        ai_generated=issue.ai_generated,
                        created_by=issue.created_by,
                        created_at=issue.created_at,
                    )
                )

    def persist_tm_entry(self, entry: TranslationMemoryEntry) -> None:
        with self._session_scope() as session:
            session.merge(
                ORMTranslationMemory(
                    id=entry.id,
                    project_id=entry.project_id,
                    source_language=entry.source_language,
                    target_language=entry.target_language,
                    source_text=entry.source_text,
                    target_text=entry.target_text,
                    usage_count=entry.usage_count,
                    created_by=entry.created_by,
                    created_at=entry.created_at,
                    last_used_at=entry.last_used_at,
                )
            )

    def persist_term_entry(self, entry: TermEntry) -> None:
        with self._session_scope() as session:
            session.merge(
                ORMTermEntry(
                    id=entry.id,
                    project_id=entry.project_id,
                    source=entry.source,
                    target=entry.target,
                    notes=entry.notes,
                )
            )

    # Reads ----------------------------------------------------------------
    def load_into(self, state: "State") -> None:
        """Populate ``state`` with every persisted record.

        ``state`` must not have this store attached yet, otherwise every loaded
        record would be written straight back.
        """

        session = self._session_factory()
        try:
            projects = session.query(ORMProject).all()
            for project in projects:
                state.add_project(self._project_from_orm(project))
                for file in project.files:
                    segments = [self._segment_from_orm(segment) for segment in file.segments]
                    state.add_file(self._file_from_orm(file), segments)
            for record in session.query(ORMTranslationMemory).all():
                state.add_translation_memory_entry(
                    TranslationMemoryEntry(
                        id=record.id,
                        project_id=record.project_id,
                        source_language=record.source_language,
                        target_language=record.target_language,
                        source_text=record.source_text,
                        target_text=record.target_text,
                        usage_count=record.usage_count or 0,
                        created_by=record.created_by,
                        created_at=record.created_at,
                        last_used_at=record.last_used_at,
                    )
                )
            for record in session.query(ORMTermEntry).all():
                state.add_term_entry(
                    TermEntry(
                        id=record.id,
                        project_id=record.project_id,
                        source=record.source,
                        target=record.target,
                        notes=record.notes,
                    )
                )
            logger.info("State loaded from database", projects=len(projects))
        finally:
            session.close()

    @staticmethod
    def _project_from_orm(project: ORMProject) -> ProjectRecord:
        return ProjectRecord(
            id=project.id,
            name=project.name,
            source_language=project.source_language,
            target_language=project.target_language,
            domain=project.domain,
            manager_id=project.manager_id,
            reviewer_ids=project.reviewer_ids or [],
            translator_ids=project.translator_ids or [],
            status=ProjectStatus(project.status or ProjectStatus.PENDING.value),
            progress=ProjectProgress(**(project.progress or {})),
            created_at=project.created_at,
            updated_at=project.updated_at or project.created_at,
        )

    @staticmethod
    def _file_from_orm(file: ORMFile) -> FileRecord:
        return FileRecord(
            id=file.id,
            project_id=file.project_id,
            name=file.name,
            source_language=file.source_language,
            target_language=file.target_language,
            status=FileStatus(file.status or FileStatus.PENDING.value),
            progress=FileProgress(**(file.progress or {})),
            error_details=file.error_details,
            created_at=file.created_at,
            updated_at=file.updated_at or file.created_at,
        )

    @staticmethod
    def _segment_from_orm(segment: ORMSegment) -> Segment:
        issues: List[Issue] = [
            Issue(
                id=issue.id,
                type=issue.type,
                severity=issue.severity,
                description=issue.description,
                position=issue.span,
                suggestion=issue.suggestion,
                status=issue.status,
                resolution=issue.resolution,
                ai_generated=bool(issue.ai_generated),
                created_by=issue.created_by,
                created_at=issue.created_at,
            )
            for issue in segment.issues
        ]
        return Segment(
            id=segment.id,
            file_id=segment.file_id,
            project_id=segment.project_id,
            index=segment.index,
            source_text=segment.source_text,
            translation=segment.translation,
            translated_length=segment.translated_length,
            final_text=segment.final_text,
            status=SegmentStatus(segment.status or SegmentStatus.PENDING.value),
            issues=issues,
            translation_metadata=(
                TranslationMetadata(**segment.translation_metadata)
                if segment.translation_metadata
                else None
            ),
            review_metadata=ReviewMetadata(**segment.review_metadata) if segment.review_metadata else None,
            quality_score=segment.quality_score,
            reviewer_id=segment.reviewer_id,
            translator_id=segment.translator_id,
            error=segment.error,
            translation_completed_at=segment.translation_completed_at,
            review_completed_at=segment.review_completed_at,
            confirmed_at=segment.confirmed_at,
            created_at=segment.created_at,
            updated_at=segment.updated_at or segment.created_at,
        )
