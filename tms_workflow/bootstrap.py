"""Composition root: wires the workflow services and registers incoming work."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

import structlog

from .access import ProjectAccess
from .errors import ValidationError
from .issues import IssueTracker
from .jobs import TranslationJobQueue
from .llm_service import LLMService, ReviewProvider, TranslationProvider
from .models import FileCreate, FileRecord, ProjectCreate, ProjectRecord, Segment
from .progress import ProgressAggregator
from .segments import ManualReviewPolicy, SegmentWorkflow, SegmentNotifier, never_require_manual_review
from .services import TermBaseService, TranslationMemoryService
from .state import State
from .storage import SqlStore
from .websocket_manager import ConnectionManager, WebSocketHandler

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    state: State
    access: ProjectAccess
    tm_service: TranslationMemoryService
    term_service: TermBaseService
    progress: ProgressAggregator
    workflow: SegmentWorkflow
    issues: IssueTracker
    jobs: TranslationJobQueue
    connections: ConnectionManager
    websocket_handler: WebSocketHandler


def build_services(
    state: Optional[State] = None,
    translation_provider: Optional[TranslationProvider] = None,
    review_provider: Optional[ReviewProvider] = None,
    store: Optional[SqlStore] = None,
    manual_review_policy: Optional[ManualReviewPolicy] = None,
    notifier: Optional[SegmentNotifier] = None,
) -> ServiceContainer:
    """Build the service graph.

    Providers default to :class:`LLMService`. When ``store`` is given its
    rows are loaded first and every later write is mirrored into it. Segment
    events go to the WebSocket rooms unless another ``notifier`` is passed.
    """

    state = state or State()
    if store is not None:
        store.load_into(state)
        state.attach_store(store)
    if translation_provider is None or review_provider is None:
        llm_service = LLMService()
        translation_provider = translation_provider or llm_service
        review_provider = review_provider or llm_service

    connections = ConnectionManager()
    tm_service = TranslationMemoryService(state)
    term_service = TermBaseService(state)
    progress = ProgressAggregator(state)
    workflow = SegmentWorkflow(
        state,
        tm_service,
        term_service,
        translation_provider,
        review_provider,
        progress,
        manual_review_policy=manual_review_policy or never_require_manual_review,
        notifier=notifier or connections.broadcast_segment_update,
    )
    return ServiceContainer(
        state=state,
        access=ProjectAccess(state),
        tm_service=tm_service,
        term_service=term_service,
        progress=progress,
        workflow=workflow,
        issues=IssueTracker(state, progress),
        jobs=TranslationJobQueue(state, workflow, progress),
        connections=connections,
        websocket_handler=WebSocketHandler(connections, state),
    )


def register_project(services: ServiceContainer, payload: ProjectCreate) -> ProjectRecord:
    project_id = payload.id or str(uuid4())
    try:
        services.state.get_project(project_id)
    except KeyError:
        pass
    else:
        raise ValidationError(f"Project {project_id} already exists")

    project = ProjectRecord(
        id=project_id,
        name=payload.name,
        source_language=payload.source_language,
        target_language=payload.target_language,
        domain=payload.domain,
        manager_id=payload.manager_id,
        reviewer_ids=list(payload.reviewer_ids),
        translator_ids=list(payload.translator_ids),
    )
    services.state.add_project(project)
    logger.info("Project registered", project_id=project.id, manager_id=project.manager_id)
    return project


def register_file(
    services: ServiceContainer,
    project_id: str,
    payload: FileCreate,
    actor_id: str,
) -> FileRecord:
    """Register a parsed file; each raw text becomes a pending segment in order."""

    project = services.access.project(project_id)
    services.access.require_manager(project, actor_id, "add files to this project")
    if not payload.segments:
        raise ValidationError("A file needs at least one segment")
    for position, text in enumerate(payload.segments):
        if not text or not text.strip():
            raise ValidationError(f"Segment {position} is empty")
    file_id = payload.id or str(uuid4())
    try:
        services.state.get_file(file_id)
    except KeyError:
        pass
    else:
        raise ValidationError(f"File {file_id} already exists")

    file = FileRecord(
        id=file_id,
        project_id=project_id,
        name=payload.name,
        source_language=payload.source_language or project.source_language,
        target_language=payload.target_language or project.target_language,
    )
    segments = [
        Segment(
            id=str(uuid4()),
            file_id=file_id,
            project_id=project_id,
            index=position,
            source_text=text,
        )
        for position, text in enumerate(payload.segments)
    ]
    services.state.add_file(file, segments)
    logger.info("File registered", file_id=file_id, project_id=project_id, segments=len(segments))
    updated, _ = services.progress.refresh(file_id)
    return updated
