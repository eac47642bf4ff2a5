"""Segment state machine: translation, AI review, review completion and confirmation.

Every operation follows the same shape: validate the actor, then take the
segment lock for a short read-check-write section that claims the segment.
Provider calls run with no lock held, and the result is committed under the
lock again only if the claim is still in place.
"""
from __future__ import annotations

import os
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

import structlog

from .access import ProjectAccess
from .errors import PreconditionError, ProviderError, ValidationError
from .issues import apply_resolution_request, settle_issue
from .llm_service import ReviewProvider, TranslationProvider
from .models import (
    FileRecord,
    IssueResolutionRequest,
    ProjectRecord,
    ProviderReview,
    ResolutionAction,
    ReviewMetadata,
    ReviewOptions,
    Segment,
    SegmentStatus,
    TranslationContext,
    TranslationMetadata,
    TranslationOptions,
)
from .progress import ProgressAggregator
from .scoring import calculate_quality_score, edit_distance
from .services import EXACT_MATCH_SCORE, TermBaseService, TranslationMemoryService
from .state import State
from .workflows import Transition, can_transition, ensure_transition, get_transition

logger = structlog.get_logger(__name__)

TM_MODEL_NAME = "translation-memory"

ManualReviewPolicy = Callable[[Segment, ProviderReview], bool]
SegmentNotifier = Callable[[str, Segment], Awaitable[None]]


def never_require_manual_review(segment: Segment, review: ProviderReview) -> bool:
    return False


class SegmentWorkflow:
    """Drives single segments through the translation and review lifecycle."""

    def __init__(
        self,
        state: State,
        tm_service: TranslationMemoryService,
        term_service: TermBaseService,
        translator: TranslationProvider,
        reviewer: ReviewProvider,
        progress: ProgressAggregator,
        manual_review_policy: ManualReviewPolicy = never_require_manual_review,
        notifier: Optional[SegmentNotifier] = None,
        context_window: Optional[int] = None,
    ) -> None:
        self._state = state
        self._access = ProjectAccess(state)
        self._tm = tm_service
        self._terms = term_service
        self._translator = translator
        self._reviewer = reviewer
        self._progress = progress
        self._manual_review_policy = manual_review_policy
        self._notifier = notifier
        if context_window is None:
            context_window = int(os.getenv("TMS_CONTEXT_WINDOW", "2"))
        self._context_window = context_window

    # Reads ------------------------------------------------------------------
    def get_segment(self, segment_id: str, actor_id: str) -> Segment:
        segment = self._access.segment(segment_id)
        _, project = self._access.parents(segment)
        self._access.require_member(project, actor_id, "view this segment")
        return segment

    def list_file_segments(self, file_id: str, actor_id: str) -> List[Segment]:
        file = self._access.file(file_id)
        project = self._access.project(file.project_id)
        self._access.require_member(project, actor_id, "view this file")
        return self._state.list_segments(file_id)

    # Translation ------------------------------------------------------------
    async def translate_segment(
        self,
        segment_id: str,
        actor_id: str,
        options: Optional[TranslationOptions] = None,
    ) -> Segment:
        """Translate one segment from the TM or the translation provider.

        A segment that is not pending or failed is returned unchanged, which
        also covers a concurrent call finding the ``translating`` claim.
        """

        options = options or TranslationOptions()
        segment = self._access.segment(segment_id)
        file, project = self._access.parents(segment)
        self._access.require_member(project, actor_id, "translate this segment")
        transition = get_transition("translate")
        source_language = options.source_language or file.source_language or project.source_language
        target_language = options.target_language or file.target_language or project.target_language

        claimed = False
        try:
            with self._state.segment_lock(segment_id):
                segment = self._state.get_segment(segment_id)
                if not can_transition("translate", segment.status):
                    logger.warning(
                        "Translate request ignored",
                        segment_id=segment_id,
                        status=segment.status.value,
                    )
                    return segment
                claimed = True
                segment.status = transition.in_flight
                segment.error = None
                segment.translator_id = actor_id
                self._state.save_segment(segment)

            text, metadata, status = await self._produce_translation(
                segment, project, source_language, target_language, options, transition
            )

            with self._state.segment_lock(segment_id):
                segment = self._state.get_segment(segment_id)
                if segment.status != transition.in_flight:
                    logger.warning(
                        "Discarding translation for a segment that left translating",
                        segment_id=segment_id,
                        status=segment.status.value,
                    )
                    return segment
                segment.translation = text
                segment.translated_length = len(text)
                segment.translation_metadata = metadata
                segment.status = status
                segment.error = None
                segment.translation_completed_at = datetime.utcnow()
                self._state.save_segment(segment)
        except BaseException as exc:
            # Cancellation and storage errors must release the claim too
            if claimed:
                failed = self._record_failure(segment_id, transition, exc)
                if isinstance(exc, Exception):
                    await self._notify("segment_translation_failed", failed)
            raise

        logger.info(
            "Segment translated",
            segment_id=segment_id,
            status=status.value,
            model=metadata.ai_model,
            tokens=metadata.token_count,
        )
        self._progress.safe_refresh(segment.file_id)
        await self._notify("segment_translated", segment)
        return segment

    async def _produce_translation(
        self,
        segment: Segment,
        project: ProjectRecord,
        source_language: str,
        target_language: str,
        options: TranslationOptions,
        transition: Transition,
    ) -> Tuple[str, TranslationMetadata, SegmentStatus]:
        best_fuzzy_score = None
        if options.use_translation_memory:
            matches = self._tm.find_matches(
                segment.source_text, source_language, target_language, project_id=project.id
            )
            if matches and matches[0].score >= EXACT_MATCH_SCORE:
                metadata = TranslationMetadata(
                    ai_model=TM_MODEL_NAME,
                    from_translation_memory=True,
                    tm_score=matches[0].score,
                )
                return matches[0].target_text, metadata, SegmentStatus.TRANSLATED_TM
            if matches:
                best_fuzzy_score = matches[0].score

        context = self._build_context(
            segment,
            project,
            domain=options.domain,
            ai_provider=options.ai_provider,
            ai_model=options.ai_model,
            prompt_template_id=options.prompt_template_id,
            window=options.context_window,
        )
        started = time.monotonic()
        result = await self._translator.translate(segment.source_text, source_language, target_language, context)
        if not result.translated_text or not result.translated_text.strip():
            raise ProviderError("Provider returned an empty translation", provider=options.ai_provider)
        metadata = TranslationMetadata(
            ai_model=result.model,
            prompt_template_id=options.prompt_template_id,
            token_count=result.token_count,
            processing_time_ms=result.latency_ms or (time.monotonic() - started) * 1000,
            tm_score=best_fuzzy_score,
        )
        return result.translated_text, metadata, transition.success

    # Review -----------------------------------------------------------------
    async def start_review(
        self,
        segment_id: str,
        actor_id: str,
        options: Optional[ReviewOptions] = None,
    ) -> Segment:
        """Run the AI review and replace the segment's issue list with its findings."""

        options = options or ReviewOptions()
        segment = self._access.segment(segment_id)
        _, project = self._access.parents(segment)
        self._access.require_reviewer(project, actor_id, "review this segment")
        transition = get_transition("start_review")

        claimed = False
        try:
            with self._state.segment_lock(segment_id):
                segment = self._state.get_segment(segment_id)
                ensure_transition("start_review", segment.status)
                if not segment.translation:
                    raise PreconditionError(
                        f"Segment {segment_id} has no translation to review",
                        current_status=segment.status.value,
                    )
                claimed = True
                segment.status = transition.in_flight
                segment.error = None
                segment.reviewer_id = options.reviewer_id or actor_id
                segment.review_metadata = ReviewMetadata(
                    original_translation=segment.translation,
                    prompt_template_id=options.prompt_template_id,
                )
                self._state.save_segment(segment)

            self._progress.safe_refresh(segment.file_id)
            context = self._build_context(
                segment,
                project,
                domain=project.domain,
                ai_provider=options.ai_provider,
                ai_model=options.ai_model,
                prompt_template_id=options.prompt_template_id,
                window=options.context_window,
                include_terminology=options.include_terminology,
            )
            review = await self._reviewer.review(segment.source_text, segment.translation, context)

            with self._state.segment_lock(segment_id):
                segment = self._state.get_segment(segment_id)
                if segment.status != transition.in_flight:
                    logger.warning(
                        "Discarding review result for a segment that left reviewing",
                        segment_id=segment_id,
                        status=segment.status.value,
                    )
                    return segment
                metadata = segment.review_metadata or ReviewMetadata(original_translation=segment.translation)
                metadata.ai_model = review.model
                metadata.token_count = review.token_count
                metadata.processing_time_ms = review.latency_ms
                metadata.suggested_translation = review.suggested_translation
                metadata.scores = list(review.scores)
                metadata.reviewed_at = datetime.utcnow()
                segment.review_metadata = metadata
                segment.issues = list(review.issues)
                if self._manual_review_policy(segment, review):
                    segment.status = SegmentStatus.NEEDS_MANUAL_REVIEW
                else:
                    segment.status = transition.success
                self._state.save_segment(segment)
        except BaseException as exc:
            if claimed:
                failed = self._record_failure(segment_id, transition, exc)
                if isinstance(exc, Exception):
                    await self._notify("segment_review_failed", failed)
            raise

        logger.info(
            "Segment reviewed",
            segment_id=segment_id,
            status=segment.status.value,
            issues=len(segment.issues),
            model=review.model,
        )
        self._progress.safe_refresh(segment.file_id)
        await self._notify("segment_reviewed", segment)
        return segment

    async def complete_review(
        self,
        segment_id: str,
        actor_id: str,
        final_text: str,
        resolutions: Optional[List[IssueResolutionRequest]] = None,
        accept_all: bool = False,
    ) -> Segment:
        if not final_text or not final_text.strip():
            raise ValidationError("final_text is required to complete a review")
        segment = self._access.segment(segment_id)
        _, project = self._access.parents(segment)
        self._access.require_reviewer(project, actor_id, "complete the review of this segment")
        transition = get_transition("complete_review")

        with self._state.segment_lock(segment_id):
            segment = self._state.get_segment(segment_id)
            ensure_transition("complete_review", segment.status)
            if segment.status == SegmentStatus.REVIEWING:
                logger.warning("Completing review while the AI review is still in flight", segment_id=segment_id)
            # Applied to a private copy, so a bad resolution leaves the stored segment untouched
            for request in resolutions or []:
                apply_resolution_request(segment, request, actor_id)
            if accept_all:
                for issue in segment.issues:
                    if issue.is_actionable:
                        settle_issue(issue, ResolutionAction.ACCEPT, actor_id)

            metadata = segment.review_metadata or ReviewMetadata(original_translation=segment.translation)
            original = metadata.original_translation or segment.translation or ""
            metadata.modification_degree = round(edit_distance(original, final_text), 4)
            metadata.accepted_changes = accept_all or (
                metadata.suggested_translation is not None and final_text == metadata.suggested_translation
            )
            segment.review_metadata = metadata
            segment.final_text = final_text
            segment.reviewer_id = segment.reviewer_id or actor_id
            segment.status = transition.success
            segment.error = None
            segment.review_completed_at = datetime.utcnow()
            self._state.save_segment(segment)

        logger.info(
            "Segment review completed",
            segment_id=segment_id,
            modification_degree=metadata.modification_degree,
            accepted_changes=metadata.accepted_changes,
        )
        self._progress.safe_refresh(segment.file_id)
        await self._notify("segment_review_completed", segment)
        return segment

    # Confirmation -----------------------------------------------------------
    async def finalize_segment(self, segment_id: str, actor_id: str) -> Segment:
        """Confirm a reviewed segment, score it and feed the pair back into the TM."""

        segment = self._access.segment(segment_id)
        file, project = self._access.parents(segment)
        self._access.require_manager(project, actor_id, "finalize segments")
        transition = get_transition("finalize")

        with self._state.segment_lock(segment_id):
            segment = self._state.get_segment(segment_id)
            ensure_transition("finalize", segment.status)
            segment.quality_score = calculate_quality_score(segment.issues)
            segment.status = transition.success
            segment.confirmed_at = datetime.utcnow()
            self._state.save_segment(segment)

        logger.info("Segment confirmed", segment_id=segment_id, quality_score=segment.quality_score)
        self._remember_confirmed(segment, file, project, actor_id)
        self._progress.safe_refresh(segment.file_id)
        await self._notify("segment_confirmed", segment)
        return segment

    def _remember_confirmed(
        self, segment: Segment, file: FileRecord, project: ProjectRecord, actor_id: str
    ) -> None:
        target_text = segment.final_text or segment.translation
        try:
            self._tm.add_entry(
                source_language=file.source_language or project.source_language,
                target_language=file.target_language or project.target_language,
                source_text=segment.source_text,
                target_text=target_text,
                project_id=project.id,
                created_by=actor_id,
            )
        except Exception:
            logger.exception("Failed to record confirmed segment in translation memory", segment_id=segment.id)

    # Internal utilities -----------------------------------------------------
    def _build_context(
        self,
        segment: Segment,
        project: ProjectRecord,
        domain: Optional[str],
        ai_provider: Optional[str],
        ai_model: Optional[str],
        prompt_template_id: Optional[str],
        window: Optional[int],
        include_terminology: bool = True,
    ) -> TranslationContext:
        preceding, following = self._state.neighbor_segments(
            segment, self._context_window if window is None else window
        )
        terminology = self._terms.lookup_in_text(project.id, segment.source_text) if include_terminology else []
        return TranslationContext(
            project_id=project.id,
            domain=domain or project.domain,
            terminology=terminology,
            preceding=[item.source_text for item in preceding],
            following=[item.source_text for item in following],
            prompt_template_id=prompt_template_id,
            ai_provider=ai_provider,
            ai_model=ai_model,
        )

    def _record_failure(self, segment_id: str, transition: Transition, exc: Exception) -> Segment:
        """Move a still-claimed segment to the operation's failure status."""

        with self._state.segment_lock(segment_id):
            segment = self._state.get_segment(segment_id)
            if segment.status != transition.in_flight:
                return segment
            segment.status = transition.failure
            segment.error = str(exc) or exc.__class__.__name__
            self._state.save_segment(segment)
        logger.error(
            "Segment provider call failed",
            segment_id=segment_id,
            status=segment.status.value,
            error=segment.error,
        )
        self._progress.safe_refresh(segment.file_id)
        return segment

    async def _notify(self, event: str, segment: Segment) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier(event, segment)
        except Exception:
            logger.exception("Segment notification failed", event=event, segment_id=segment.id)
