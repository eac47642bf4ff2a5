"""FastAPI application exposing the segment translation and review workflow."""
from __future__ import annotations

import json
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .bootstrap import ServiceContainer, build_services, register_file, register_project
from .database import SessionLocal, create_tables
from .errors import TMSError, ValidationError
from .models import (
    BatchResolveRequest,
    BatchResolveResult,
    CompleteReviewRequest,
    FileCreate,
    FileRecord,
    Issue,
    IssueCreate,
    IssueResolutionRequest,
    IssueStatusUpdate,
    JobStatusReport,
    ProjectCreate,
    ProjectRecord,
    ReviewOptions,
    Segment,
    TermEntry,
    TermEntryCreate,
    TMMatch,
    TranslationMemoryCreate,
    TranslationMemoryEntry,
    TranslationOptions,
)
from .storage import SqlStore


# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_actor_id(x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id")) -> str:
    """Caller identity as supplied by the authenticating gateway."""
    if not x_actor_id:
        raise ValidationError("X-Actor-Id header is required")
    return x_actor_id


def _default_services() -> ServiceContainer:
    create_tables()
    return build_services(store=SqlStore(SessionLocal))


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Translation Workflow Core",
        description=(
            "Segment lifecycle service: machine translation, translation memory, "
            "AI-assisted review, issue resolution and confirmation."
        ),
        version="0.4.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services or _default_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TMSError)
    async def handle_domain_error(request: Request, exc: TMSError) -> JSONResponse:
        logger.info(
            "Request rejected",
            path=request.url.path,
            error=exc.error_code,
            detail=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health", summary="Service health check")
    def health() -> dict:
        return {"status": "ok"}

    # Projects and files ---------------------------------------------------
    @app.post("/projects", response_model=ProjectRecord, status_code=201, summary="Register a project")
    def create_project(payload: ProjectCreate, services: ServiceContainer = Depends(get_services)):
        return register_project(services, payload)

    @app.get("/projects/{project_id}", response_model=ProjectRecord, summary="Project progress")
    def get_project(
        project_id: str,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        project = services.access.project(project_id)
        services.access.require_member(project, actor_id, "view this project")
        return project

    @app.post(
        "/projects/{project_id}/files",
        response_model=FileRecord,
        status_code=201,
        summary="Register a parsed file",
    )
    def create_file(
        project_id: str,
        payload: FileCreate,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return register_file(services, project_id, payload, actor_id)

    @app.get("/files/{file_id}", response_model=FileRecord, summary="File progress")
    def get_file(
        file_id: str,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        file = services.access.file(file_id)
        services.access.require_member(services.access.project(file.project_id), actor_id, "view this file")
        return file

    @app.get("/files/{file_id}/segments", response_model=List[Segment], summary="Segments in document order")
    def list_segments(
        file_id: str,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return services.workflow.list_file_segments(file_id, actor_id)

    # Segment lifecycle ----------------------------------------------------
    @app.get("/segments/{segment_id}", response_model=Segment)
    def get_segment(
        segment_id: str,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return services.workflow.get_segment(segment_id, actor_id)

    @app.post("/segments/{segment_id}/translate", response_model=Segment, summary="Translate one segment")
    async def translate_segment(
        segment_id: str,
        options: Optional[TranslationOptions] = None,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.workflow.translate_segment(segment_id, actor_id, options)

    @app.post("/segments/{segment_id}/review", response_model=Segment, summary="Start AI review")
    async def start_review(
        segment_id: str,
        options: Optional[ReviewOptions] = None,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.workflow.start_review(segment_id, actor_id, options)

    @app.post("/segments/{segment_id}/review/complete", response_model=Segment, summary="Complete review")
    async def complete_review(
        segment_id: str,
        payload: CompleteReviewRequest,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.workflow.complete_review(
            segment_id,
            actor_id,
            payload.final_text,
            resolutions=payload.resolutions,
            accept_all=payload.accept_all,
        )

    @app.post("/segments/{segment_id}/finalize", response_model=Segment, summary="Confirm a reviewed segment")
    async def finalize_segment(
        segment_id: str,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.workflow.finalize_segment(segment_id, actor_id)

    # Issues ---------------------------------------------------------------
    @app.post("/segments/{segment_id}/issues", response_model=Issue, status_code=201, summary="Raise an issue")
    def add_issue(
        segment_id: str,
        payload: IssueCreate,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return services.issues.add_issue(segment_id, actor_id, payload)

    @app.post("/segments/{segment_id}/issues/resolve", response_model=Segment, summary="Resolve one issue")
    def resolve_issue(
        segment_id: str,
        payload: IssueResolutionRequest,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return services.issues.resolve_issue(
            segment_id,
            payload.issue_index,
            actor_id,
            payload.action,
            modified_text=payload.modified_text,
            comment=payload.comment,
        )

    @app.post("/segments/{segment_id}/issues/{issue_index}/status", response_model=Segment)
    def set_issue_status(
        segment_id: str,
        issue_index: int,
        payload: IssueStatusUpdate,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return services.issues.set_issue_status(segment_id, issue_index, actor_id, payload.status)

    @app.post("/segments/{segment_id}/issues/{issue_index}/reopen", response_model=Segment)
    def reopen_issue(
        segment_id: str,
        issue_index: int,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return services.issues.reopen_issue(segment_id, issue_index, actor_id)

    @app.post(
        "/files/{file_id}/issues/batch-resolve",
        response_model=BatchResolveResult,
        summary="Resolve matching open issues across a file",
    )
    def batch_resolve(
        file_id: str,
        payload: BatchResolveRequest,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return services.issues.batch_resolve(file_id, actor_id, payload.filter, payload.resolution)

    # Jobs -----------------------------------------------------------------
    @app.post(
        "/projects/{project_id}/files/{file_id}/translate",
        response_model=JobStatusReport,
        status_code=202,
        summary="Queue translation of a file",
    )
    async def translate_file(
        project_id: str,
        file_id: str,
        options: Optional[TranslationOptions] = None,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.jobs.submit_file(project_id, file_id, actor_id, options)

    @app.post(
        "/projects/{project_id}/translate",
        response_model=JobStatusReport,
        status_code=202,
        summary="Queue translation of every file in a project",
    )
    async def translate_project(
        project_id: str,
        options: Optional[TranslationOptions] = None,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        return await services.jobs.submit_project(project_id, actor_id, options)

    @app.get("/jobs/{job_id}", response_model=JobStatusReport)
    def get_job(job_id: str, services: ServiceContainer = Depends(get_services)):
        return services.jobs.get_status(job_id)

    @app.post("/jobs/{job_id}/cancel", response_model=JobStatusReport)
    def cancel_job(job_id: str, services: ServiceContainer = Depends(get_services)):
        return services.jobs.cancel(job_id)

    # Translation memory and terminology -----------------------------------
    @app.post("/translation-memory", response_model=TranslationMemoryEntry, status_code=201)
    def add_translation_memory(
        payload: TranslationMemoryCreate,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        if payload.project_id:
            project = services.access.project(payload.project_id)
            services.access.require_member(project, actor_id, "add translation memory to this project")
        return services.tm_service.add_entry(
            payload.source_language,
            payload.target_language,
            payload.source_text,
            payload.target_text,
            project_id=payload.project_id,
            created_by=actor_id,
        )

    @app.get("/translation-memory/matches", response_model=List[TMMatch])
    def find_translation_memory_matches(
        source_text: str = Query(..., min_length=1),
        source_language: str = Query(...),
        target_language: str = Query(...),
        project_id: Optional[str] = Query(None),
        services: ServiceContainer = Depends(get_services),
    ):
        return services.tm_service.find_matches(source_text, source_language, target_language, project_id)

    @app.post("/projects/{project_id}/terminology", response_model=TermEntry, status_code=201)
    def add_term(
        project_id: str,
        payload: TermEntryCreate,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        project = services.access.project(project_id)
        services.access.require_reviewer(project, actor_id, "edit the terminology of this project")
        return services.term_service.add_entry(project_id, payload.source, payload.target, payload.notes)

    @app.get("/projects/{project_id}/terminology", response_model=List[TermEntry])
    def list_terms(
        project_id: str,
        actor_id: str = Depends(get_actor_id),
        services: ServiceContainer = Depends(get_services),
    ):
        project = services.access.project(project_id)
        services.access.require_member(project, actor_id, "view the terminology of this project")
        return services.term_service.lookup(project_id)

    # WebSocket endpoint
    @app.websocket("/ws/{user_id}")
    async def websocket_endpoint(websocket: WebSocket, user_id: str):
        """Live segment events for the projects the user has joined."""
        services: ServiceContainer = websocket.app.state.services
        await services.connections.connect(websocket, user_id)
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    message = None
                if not isinstance(message, dict):
                    await services.connections.send_personal_message(
                        {"type": "error", "message": "Messages must be JSON objects"}, user_id
                    )
                    continue
                await services.websocket_handler.handle_message(user_id, message)
        except WebSocketDisconnect:
            services.connections.disconnect(user_id)
            logger.info("WebSocket disconnected", user_id=user_id)

    return app


app = create_app()
