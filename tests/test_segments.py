"""Segment lifecycle: translation, review, completion and confirmation."""
from __future__ import annotations

import asyncio

import pytest
from conftest import MANAGER, OUTSIDER, REVIEWER, TRANSLATOR, run

from tms_workflow import segments as segment_module
from tms_workflow.bootstrap import build_services, register_file, register_project
from tms_workflow.errors import ForbiddenError, NotFoundError, PreconditionError, ProviderError, ValidationError
from tms_workflow.models import (
    FileCreate,
    FileStatus,
    IssueResolutionRequest,
    IssueStatus,
    ProjectCreate,
    ResolutionAction,
    ReviewOptions,
    SegmentStatus,
    TranslationOptions,
)


def _first_segment(services, file):
    return services.state.list_segments(file.id)[0]


def test_translate_segment_uses_provider_with_context(services, translator, make_file, events) -> None:
    file = make_file(["Intro", "Hello world", "Outro"])
    services.term_service.add_entry("proj-1", "world", "monde")
    segment = services.state.list_segments(file.id)[1]

    result = run(services.workflow.translate_segment(segment.id, TRANSLATOR, TranslationOptions(context_window=1)))

    assert result.status == SegmentStatus.TRANSLATED
    assert result.translation == "[fr] Hello world"
    assert result.translated_length == len("[fr] Hello world")
    assert result.translator_id == TRANSLATOR
    assert result.translation_metadata.ai_model == "fake-mt"
    assert result.translation_metadata.token_count == 7
    assert result.translation_metadata.from_translation_memory is False
    assert result.translation_completed_at is not None
    context = translator.contexts[0]
    assert context.preceding == ["Intro"]
    assert context.following == ["Outro"]
    assert [term.target for term in context.terminology] == ["monde"]
    assert services.state.get_file(file.id).status == FileStatus.TRANSLATED
    assert events[-1][0] == "segment_translated"


def test_exact_tm_match_skips_the_provider(services, translator, make_file) -> None:
    services.tm_service.add_entry("en", "fr", "Hello", "Bonjour", project_id="proj-1")
    segment = _first_segment(services, make_file(["Hello"]))

    result = run(services.workflow.translate_segment(segment.id, TRANSLATOR))

    assert result.status == SegmentStatus.TRANSLATED_TM
    assert result.translation == "Bonjour"
    assert result.translation_metadata.from_translation_memory is True
    assert result.translation_metadata.tm_score == 100
    assert translator.calls == []


def test_tm_can_be_bypassed(services, translator, make_file) -> None:
    services.tm_service.add_entry("en", "fr", "Hello", "Bonjour", project_id="proj-1")
    segment = _first_segment(services, make_file(["Hello"]))

    result = run(
        services.workflow.translate_segment(segment.id, TRANSLATOR, TranslationOptions(use_translation_memory=False))
    )

    assert result.status == SegmentStatus.TRANSLATED
    assert translator.calls == ["Hello"]


def test_second_translate_while_in_flight_makes_no_provider_call(services, translator, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello world"]))

    async def scenario():
        translator.gate = asyncio.Event()
        first = asyncio.create_task(services.workflow.translate_segment(segment.id, TRANSLATOR))
        await asyncio.sleep(0)
        second = await services.workflow.translate_segment(segment.id, TRANSLATOR)
        assert second.status == SegmentStatus.TRANSLATING
        translator.gate.set()
        return await first

    result = run(scenario())

    assert translator.calls == ["Hello world"]
    assert result.status == SegmentStatus.TRANSLATED


def test_provider_failure_is_recorded_and_surfaced(services, translator, make_file, events) -> None:
    translator.fail_on.add("Broken")
    segment = _first_segment(services, make_file(["Broken"]))

    with pytest.raises(ProviderError):
        run(services.workflow.translate_segment(segment.id, TRANSLATOR))

    stored = services.state.get_segment(segment.id)
    assert stored.status == SegmentStatus.TRANSLATION_FAILED
    assert "fake outage" in stored.error
    assert stored.translation is None
    assert events[-1][0] == "segment_translation_failed"

    translator.fail_on.clear()
    retried = run(services.workflow.translate_segment(segment.id, TRANSLATOR))
    assert retried.status == SegmentStatus.TRANSLATED
    assert retried.error is None


def test_cancelled_translation_releases_the_claim(services, translator, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello"]))

    async def scenario():
        translator.gate = asyncio.Event()
        task = asyncio.create_task(services.workflow.translate_segment(segment.id, TRANSLATOR))
        for _ in range(10):
            await asyncio.sleep(0)
        assert translator.in_flight == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        interrupted = services.state.get_segment(segment.id)
        translator.gate = None
        retried = await services.workflow.translate_segment(segment.id, TRANSLATOR)
        return interrupted, retried

    interrupted, retried = run(scenario())

    assert interrupted.status == SegmentStatus.TRANSLATION_FAILED
    assert interrupted.error == "CancelledError"
    assert retried.status == SegmentStatus.TRANSLATED
    assert translator.calls == ["Hello", "Hello"]


class FlakyStore:
    """Write-through store that fails segment writes in one status."""

    def __init__(self, fail_status) -> None:
        self.fail_status = fail_status

    def persist_segment(self, segment) -> None:
        if segment.status == self.fail_status:
            raise RuntimeError("database unavailable")

    def persist_file(self, file) -> None:
        return None

    def persist_project(self, project) -> None:
        return None


def test_storage_failure_on_commit_releases_the_claim(services, translator, make_file, events) -> None:
    segment = _first_segment(services, make_file(["Hello"]))
    store = FlakyStore(SegmentStatus.TRANSLATED)
    services.state.attach_store(store)

    with pytest.raises(RuntimeError):
        run(services.workflow.translate_segment(segment.id, TRANSLATOR))

    stored = services.state.get_segment(segment.id)
    assert stored.status == SegmentStatus.TRANSLATION_FAILED
    assert stored.error == "database unavailable"
    assert events[-1][0] == "segment_translation_failed"

    store.fail_status = None
    assert run(services.workflow.translate_segment(segment.id, TRANSLATOR)).status == SegmentStatus.TRANSLATED


def test_cancelled_review_releases_the_claim(services, reviewer, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello"]))

    async def scenario():
        await services.workflow.translate_segment(segment.id, TRANSLATOR)
        reviewer.gate = asyncio.Event()
        task = asyncio.create_task(services.workflow.start_review(segment.id, REVIEWER))
        for _ in range(10):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    run(scenario())

    assert services.state.get_segment(segment.id).status == SegmentStatus.REVIEW_FAILED


def test_translate_on_translated_segment_is_a_noop(services, translator, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello"]))
    run(services.workflow.translate_segment(segment.id, TRANSLATOR))

    again = run(services.workflow.translate_segment(segment.id, TRANSLATOR))

    assert again.status == SegmentStatus.TRANSLATED
    assert len(translator.calls) == 1


def test_translate_requires_membership(services, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello"]))
    with pytest.raises(ForbiddenError):
        run(services.workflow.translate_segment(segment.id, OUTSIDER))
    with pytest.raises(NotFoundError):
        run(services.workflow.translate_segment("missing", TRANSLATOR))


def test_review_stores_mapped_findings(services, reviewer, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello world"]))
    run(services.workflow.translate_segment(segment.id, TRANSLATOR))
    reviewer.payload = {
        "issues": [{"type": "style", "severity": "low", "description": "Too literal"}],
        "suggestedTranslation": "Bonjour le monde",
        "scores": [{"type": "overall", "score": 88}],
    }

    result = run(services.workflow.start_review(segment.id, REVIEWER, ReviewOptions(prompt_template_id="tpl-1")))

    assert result.status == SegmentStatus.REVIEW_PENDING
    assert result.reviewer_id == REVIEWER
    assert [issue.description for issue in result.issues] == ["Too literal"]
    assert result.issues[0].ai_generated
    metadata = result.review_metadata
    assert metadata.original_translation == "[fr] Hello world"
    assert metadata.suggested_translation == "Bonjour le monde"
    assert metadata.scores[0].score == 88
    assert metadata.ai_model == "fake-review"
    assert metadata.prompt_template_id == "tpl-1"
    assert services.state.get_file(segment.file_id).status == FileStatus.REVIEWING


@pytest.fixture
def parking_services(translator, reviewer):
    def needs_human(segment, review):
        return any(issue.severity.value == "critical" for issue in review.issues)

    services = build_services(translation_provider=translator, review_provider=reviewer, manual_review_policy=needs_human)
    project = register_project(
        services,
        ProjectCreate(name="Legal", source_language="en", target_language="de", manager_id=MANAGER, reviewer_ids=[REVIEWER]),
    )
    file = register_file(services, project.id, FileCreate(name="terms.txt", segments=["Liability"]), MANAGER)
    return services, services.state.list_segments(file.id)[0]


def test_manual_review_policy_parks_segment(parking_services, reviewer) -> None:
    services, segment = parking_services
    run(services.workflow.translate_segment(segment.id, MANAGER))
    reviewer.payload = {"issues": [{"type": "accuracy", "severity": "critical", "description": "Meaning inverted"}]}

    result = run(services.workflow.start_review(segment.id, REVIEWER))

    assert result.status == SegmentStatus.NEEDS_MANUAL_REVIEW


def test_review_failure_keeps_prior_issues(parking_services, reviewer) -> None:
    services, segment = parking_services
    run(services.workflow.translate_segment(segment.id, MANAGER))
    reviewer.payload = {"issues": [{"type": "accuracy", "severity": "critical", "description": "Meaning inverted"}]}
    run(services.workflow.start_review(segment.id, REVIEWER))
    reviewer.error = ProviderError("review backend down", provider="fake")

    with pytest.raises(ProviderError):
        run(services.workflow.start_review(segment.id, REVIEWER))

    failed = services.state.get_segment(segment.id)
    assert failed.status == SegmentStatus.REVIEW_FAILED
    assert failed.error == "review backend down"
    assert [issue.description for issue in failed.issues] == ["Meaning inverted"]

    reviewer.error = None
    reviewer.payload = {"issues": []}
    retried = run(services.workflow.start_review(segment.id, REVIEWER))
    assert retried.status == SegmentStatus.REVIEW_PENDING
    assert retried.issues == []
    assert retried.error is None


def test_start_review_rules(services, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello"]))
    with pytest.raises(PreconditionError) as exc_info:
        run(services.workflow.start_review(segment.id, REVIEWER))
    assert exc_info.value.current_status == "pending"

    run(services.workflow.translate_segment(segment.id, TRANSLATOR))
    with pytest.raises(ForbiddenError):
        run(services.workflow.start_review(segment.id, TRANSLATOR))


def test_complete_review_applies_resolutions(services, reviewer, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello world"]))
    run(services.workflow.translate_segment(segment.id, TRANSLATOR))
    reviewer.payload = {
        "issues": [
            {"type": "accuracy", "severity": "critical", "description": "Wrong meaning"},
            {"type": "style", "severity": "low", "description": "Too literal"},
        ],
        "suggestedTranslation": "Bonjour le monde",
    }
    run(services.workflow.start_review(segment.id, REVIEWER))

    result = run(
        services.workflow.complete_review(
            segment.id,
            REVIEWER,
            "Bonjour le monde",
            resolutions=[IssueResolutionRequest(issue_index=1, action=ResolutionAction.ACCEPT, comment="ok")],
        )
    )

    assert result.status == SegmentStatus.REVIEW_COMPLETED
    assert result.final_text == "Bonjour le monde"
    assert result.review_completed_at is not None
    assert [issue.status for issue in result.issues] == [IssueStatus.OPEN, IssueStatus.RESOLVED]
    assert result.issues[1].resolution.resolved_by == REVIEWER
    assert result.review_metadata.accepted_changes is True
    assert 0 < result.review_metadata.modification_degree <= 1

    confirmed = run(services.workflow.finalize_segment(segment.id, MANAGER))
    assert confirmed.quality_score == 79


def test_complete_review_accept_all(services, reviewer, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello"]))
    run(services.workflow.translate_segment(segment.id, TRANSLATOR))
    reviewer.payload = {"issues": ["Missing accent", "Wrong register"]}
    run(services.workflow.start_review(segment.id, REVIEWER))

    result = run(services.workflow.complete_review(segment.id, MANAGER, "[fr] Hello", accept_all=True))

    assert all(issue.status == IssueStatus.RESOLVED for issue in result.issues)
    assert all(issue.resolution.action == ResolutionAction.ACCEPT for issue in result.issues)
    assert result.review_metadata.modification_degree == 0
    assert result.review_metadata.accepted_changes is True


def test_complete_review_validation(services, reviewer, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello"]))
    with pytest.raises(ValidationError):
        run(services.workflow.complete_review(segment.id, REVIEWER, "  "))
    with pytest.raises(PreconditionError):
        run(services.workflow.complete_review(segment.id, REVIEWER, "Bonjour"))

    run(services.workflow.translate_segment(segment.id, TRANSLATOR))
    reviewer.payload = {"issues": ["Missing accent"]}
    run(services.workflow.start_review(segment.id, REVIEWER))
    with pytest.raises(ValidationError):
        run(
            services.workflow.complete_review(
                segment.id,
                REVIEWER,
                "Bonjour",
                resolutions=[IssueResolutionRequest(issue_index=3, action=ResolutionAction.ACCEPT)],
            )
        )
    with pytest.raises(ValidationError):
        run(
            services.workflow.complete_review(
                segment.id,
                REVIEWER,
                "Bonjour",
                resolutions=[IssueResolutionRequest(issue_index=0, action=ResolutionAction.MODIFY)],
            )
        )
    stored = services.state.get_segment(segment.id)
    assert stored.status == SegmentStatus.REVIEW_PENDING
    assert stored.issues[0].status == IssueStatus.OPEN


class RecordingLogger:
    def __init__(self) -> None:
        self.records = []

    def __getattr__(self, level):
        def record(event, **fields):
            self.records.append((level, event))

        return record


def test_complete_review_while_ai_review_in_flight(services, reviewer, make_file, monkeypatch) -> None:
    segment = _first_segment(services, make_file(["Hello"]))
    log = RecordingLogger()
    monkeypatch.setattr(segment_module, "logger", log)

    async def scenario():
        await services.workflow.translate_segment(segment.id, TRANSLATOR)
        reviewer.gate = asyncio.Event()
        reviewer.payload = {"issues": ["Late finding"]}
        review = asyncio.create_task(services.workflow.start_review(segment.id, REVIEWER))
        for _ in range(10):
            await asyncio.sleep(0)
        assert services.state.get_segment(segment.id).status == SegmentStatus.REVIEWING
        completed = await services.workflow.complete_review(segment.id, REVIEWER, "Bonjour")
        reviewer.gate.set()
        late = await review
        return completed, late

    completed, late = run(scenario())

    assert completed.status == SegmentStatus.REVIEW_COMPLETED
    assert late.status == SegmentStatus.REVIEW_COMPLETED
    stored = services.state.get_segment(segment.id)
    assert stored.status == SegmentStatus.REVIEW_COMPLETED
    assert stored.final_text == "Bonjour"
    assert stored.issues == []
    assert stored.review_metadata.ai_model is None
    assert ("warning", "Completing review while the AI review is still in flight") in log.records
    assert ("warning", "Discarding review result for a segment that left reviewing") in log.records


def test_complete_review_after_failed_translation(services, translator, make_file) -> None:
    translator.fail_on.add("Broken")
    segment = _first_segment(services, make_file(["Broken"]))
    with pytest.raises(ProviderError):
        run(services.workflow.translate_segment(segment.id, TRANSLATOR))

    result = run(services.workflow.complete_review(segment.id, REVIEWER, "Traduction manuelle"))

    assert result.status == SegmentStatus.REVIEW_COMPLETED
    assert result.final_text == "Traduction manuelle"
    assert result.review_metadata.original_translation is None
    assert result.review_metadata.modification_degree == 1
    assert result.review_metadata.accepted_changes is False

    confirmed = run(services.workflow.finalize_segment(segment.id, MANAGER))
    assert confirmed.quality_score == 100
    matches = services.tm_service.find_matches("Broken", "en", "fr", project_id="proj-1")
    assert matches[0].target_text == "Traduction manuelle"


def test_finalize_requires_manager_and_review_completed(services, make_file) -> None:
    segment = _first_segment(services, make_file(["Hello"]))
    run(services.workflow.translate_segment(segment.id, TRANSLATOR))

    with pytest.raises(PreconditionError):
        run(services.workflow.finalize_segment(segment.id, MANAGER))

    run(services.workflow.start_review(segment.id, REVIEWER))
    run(services.workflow.complete_review(segment.id, REVIEWER, "Bonjour"))
    with pytest.raises(ForbiddenError):
        run(services.workflow.finalize_segment(segment.id, REVIEWER))

    confirmed = run(services.workflow.finalize_segment(segment.id, MANAGER))

    assert confirmed.status == SegmentStatus.CONFIRMED
    assert confirmed.quality_score == 100
    assert confirmed.confirmed_at is not None
    assert services.state.get_file(segment.file_id).status == FileStatus.COMPLETED
    memory = services.tm_service.find_matches("Hello", "en", "fr", project_id="proj-1")
    assert memory[0].target_text == "Bonjour"


def test_confirming_every_segment_completes_the_file(services, reviewer, make_file) -> None:
    file = make_file([f"Sentence number {position}" for position in range(10)])
    reviewer.payload = {"issues": [{"type": "style", "severity": "medium", "description": "Tone"}]}
    segments = services.state.list_segments(file.id)

    for position, segment in enumerate(segments):
        run(services.workflow.translate_segment(segment.id, TRANSLATOR))
        run(services.workflow.start_review(segment.id, REVIEWER))
        run(services.workflow.complete_review(segment.id, REVIEWER, f"Phrase {position}", accept_all=True))
        run(services.workflow.finalize_segment(segment.id, MANAGER))
        current = services.state.get_file(file.id)
        if position < 9:
            assert current.status == FileStatus.REVIEWING

    completed = services.state.get_file(file.id)
    assert completed.status == FileStatus.COMPLETED
    assert completed.progress.completed == 10
    assert completed.progress.percentage == 100
    project = services.state.get_project("proj-1")
    assert project.status.value == "completed"
    assert project.progress.completion_percentage == 100

    reopened = services.issues.reopen_issue(segments[4].id, 0, REVIEWER)

    assert reopened.status == SegmentStatus.REVIEW_PENDING
    assert reopened.quality_score is None
    assert reopened.issues[0].status == IssueStatus.OPEN
    assert reopened.issues[0].resolution is None
    demoted = services.state.get_file(file.id)
    assert demoted.status == FileStatus.REVIEWING
    assert demoted.progress.percentage == 90
    assert services.state.get_project("proj-1").status.value == "in_progress"


def test_segment_reads_check_membership(services, make_file) -> None:
    file = make_file(["One", "Two"])
    listed = services.workflow.list_file_segments(file.id, TRANSLATOR)
    assert [segment.source_text for segment in listed] == ["One", "Two"]
    assert services.workflow.get_segment(listed[0].id, REVIEWER).index == 0
    with pytest.raises(ForbiddenError):
        services.workflow.list_file_segments(file.id, OUTSIDER)
