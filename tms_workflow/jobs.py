"""Asynchronous file and project translation jobs."""
from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

import structlog

from .access import ProjectAccess
from .errors import NotFoundError, ValidationError
from .models import (
    FileStatus,
    JobState,
    JobStatusReport,
    SegmentStatus,
    TranslationOptions,
)
from .progress import ProgressAggregator
from .segments import SegmentWorkflow
from .state import State

logger = structlog.get_logger(__name__)


@dataclass
class _Job:
    report: JobStatusReport
    actor_id: str
    options: TranslationOptions
    # file id -> ids of the segments selected at submission, in document order
    plan: Dict[str, List[str]]
    cancel_requested: bool = False
    task: Optional[asyncio.Task] = None
    file_failures: Dict[str, int] = field(default_factory=dict)


class TranslationJobQueue:
    """Runs file- and project-scope translation as background asyncio tasks.

    Per-segment failures never abort a job; at most ``max_concurrency``
    segments are with the provider at any time.
    """

    def __init__(
        self,
        state: State,
        workflow: SegmentWorkflow,
        progress: ProgressAggregator,
        max_concurrency: Optional[int] = None,
        retention_seconds: Optional[float] = None,
    ) -> None:
        self._state = state
        self._access = ProjectAccess(state)
        self._workflow = workflow
        self._progress = progress
        if max_concurrency is None:
            max_concurrency = int(os.getenv("TMS_MAX_CONCURRENT_SEGMENTS", "4"))
        self._max_concurrency = max(1, max_concurrency)
        if retention_seconds is None:
            retention_seconds = float(os.getenv("TMS_JOB_RETENTION_SECONDS", "3600"))
        self._retention = timedelta(seconds=max(0.0, retention_seconds))
        self._jobs: Dict[str, _Job] = {}

    async def submit_file(
        self,
        project_id: str,
        file_id: str,
        actor_id: str,
        options: Optional[TranslationOptions] = None,
    ) -> JobStatusReport:
        project = self._access.project(project_id)
        self._access.require_member(project, actor_id, "translate files in this project")
        self._access.file_in_project(project_id, file_id)
        return self._enqueue("file", project_id, [file_id], actor_id, options, file_id=file_id)

    async def submit_project(
        self,
        project_id: str,
        actor_id: str,
        options: Optional[TranslationOptions] = None,
    ) -> JobStatusReport:
        project = self._access.project(project_id)
        self._access.require_member(project, actor_id, "translate this project")
        files = self._state.list_files(project_id)
        if not files:
            raise ValidationError(f"Project {project_id} has no files to translate")
        ordered = sorted(files, key=lambda item: item.created_at)
        return self._enqueue("project", project_id, [file.id for file in ordered], actor_id, options)

    def get_status(self, job_id: str) -> JobStatusReport:
        return self._job(job_id).report.model_copy(deep=True)

    def cancel(self, job_id: str) -> JobStatusReport:
        """Stop dispatching further segments; in-flight ones are left to finish."""

        job = self._job(job_id)
        if job.report.status in (JobState.QUEUED, JobState.RUNNING):
            job.cancel_requested = True
            job.report.cancelled = True
            logger.info("Job cancellation requested", job_id=job_id)
        return job.report.model_copy(deep=True)

    async def wait(self, job_id: str) -> JobStatusReport:
        job = self._job(job_id)
        if job.task is not None:
            await job.task
        return self.get_status(job_id)

    def _job(self, job_id: str) -> _Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _enqueue(
        self,
        kind: str,
        project_id: str,
        file_ids: List[str],
        actor_id: str,
        options: Optional[TranslationOptions],
        file_id: Optional[str] = None,
    ) -> JobStatusReport:
        self._prune_finished()
        options = options or TranslationOptions()
        eligible = {SegmentStatus.PENDING}
        if options.retranslate_failed:
            eligible.add(SegmentStatus.TRANSLATION_FAILED)
        plan = {
            target: [segment.id for segment in self._state.list_segments(target) if segment.status in eligible]
            for target in file_ids
        }
        report = JobStatusReport(
            job_id=str(uuid4()),
            kind=kind,
            project_id=project_id,
            file_id=file_id,
            total_segments=sum(len(ids) for ids in plan.values()),
        )
        job = _Job(report=report, actor_id=actor_id, options=options, plan=plan)
        self._jobs[report.job_id] = job
        job.task = asyncio.create_task(self._run(job))
        logger.info(
            "Translation job queued",
            job_id=report.job_id,
            kind=kind,
            project_id=project_id,
            files=len(file_ids),
            segments=report.total_segments,
        )
        return report.model_copy(deep=True)

    async def _run(self, job: _Job) -> None:
        report = job.report
        report.status = JobState.RUNNING
        semaphore = asyncio.Semaphore(self._max_concurrency)
        try:
            for file_id, segment_ids in job.plan.items():
                if job.cancel_requested:
                    break
                await self._run_file(job, file_id, segment_ids, semaphore)
        except Exception as exc:
            logger.exception("Translation job aborted", job_id=report.job_id)
            report.errors.append(f"Job aborted: {exc}")
            report.status = JobState.FAILED
        else:
            report.status = JobState.FAILED if report.failed_segments else JobState.COMPLETED
        report.finished_at = datetime.utcnow()
        logger.info(
            "Translation job finished",
            job_id=report.job_id,
            status=report.status.value,
            processed=report.processed_segments,
            failed=report.failed_segments,
            cancelled=report.cancelled,
        )

    async def _run_file(self, job: _Job, file_id: str, segment_ids: List[str], semaphore: asyncio.Semaphore) -> None:
        if segment_ids:
            self._state.update_file_progress(file_id, status=FileStatus.TRANSLATING)
        await asyncio.gather(*(self._run_segment(job, file_id, segment_id, semaphore) for segment_id in segment_ids))

        self._progress.safe_refresh(file_id)
        failures = job.file_failures.get(file_id, 0)
        if failures:
            self._state.update_file_progress(
                file_id,
                status=FileStatus.ERROR,
                error_details=f"{failures} segment(s) failed to translate",
            )
            logger.warning("File translated with failures", file_id=file_id, failed=failures)

    async def _run_segment(self, job: _Job, file_id: str, segment_id: str, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            if job.cancel_requested:
                return
            try:
                segment = await self._workflow.translate_segment(segment_id, job.actor_id, job.options)
            except Exception as exc:
                job.report.failed_segments += 1
                job.report.errors.append(f"Segment {segment_id}: {exc}")
                job.file_failures[file_id] = job.file_failures.get(file_id, 0) + 1
            else:
                if job.options.auto_review and segment.status == SegmentStatus.TRANSLATED:
                    await self._auto_review(job, segment_id)
            finally:
                self._advance(job.report)

    async def _auto_review(self, job: _Job, segment_id: str) -> None:
        try:
            await self._workflow.start_review(segment_id, job.actor_id)
        except Exception as exc:
            logger.warning("Automatic review failed", job_id=job.report.job_id, segment_id=segment_id, error=str(exc))
            job.report.errors.append(f"Review of segment {segment_id}: {exc}")

    def _prune_finished(self) -> None:
        """Forget finished jobs once their retention window has passed."""

        cutoff = datetime.utcnow() - self._retention
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.report.finished_at is not None and job.report.finished_at <= cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Pruned finished jobs", count=len(expired))

    @staticmethod
    def _advance(report: JobStatusReport) -> None:
        report.processed_segments += 1
        if report.total_segments:
            report.progress = min(100, int(report.processed_segments / report.total_segments * 100))
