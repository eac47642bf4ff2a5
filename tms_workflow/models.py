"""Domain and API models for the segment workflow core."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class SegmentStatus(str, Enum):
    """Lifecycle states for a translatable segment."""

    PENDING = "pending"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    TRANSLATED_TM = "translated_tm"
    TRANSLATION_FAILED = "translation_failed"
    REVIEWING = "reviewing"
    REVIEW_PENDING = "review_pending"
    REVIEW_FAILED = "review_failed"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"
    REVIEW_COMPLETED = "review_completed"
    CONFIRMED = "confirmed"


class IssueType(str, Enum):
    """Categories of findings raised against a translation."""

    TERMINOLOGY = "terminology"
    GRAMMAR = "grammar"
    STYLE = "style"
    ACCURACY = "accuracy"
    FORMATTING = "formatting"
    CONSISTENCY = "consistency"
    OMISSION = "omission"
    ADDITION = "addition"
    OTHER = "other"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueStatus(str, Enum):
    """Resolution lifecycle of a single issue."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    DEFERRED = "deferred"


class ResolutionAction(str, Enum):
    ACCEPT = "accept"
    MODIFY = "modify"
    REJECT = "reject"


class ReviewScoreType(str, Enum):
    ACCURACY = "accuracy"
    FLUENCY = "fluency"
    TERMINOLOGY = "terminology"
    STYLE = "style"
    OVERALL = "overall"


class FileStatus(str, Enum):
    """Coarse file status derived from its segment population."""

    PENDING = "pending"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    ERROR = "error"


class ProjectStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class JobState(str, Enum):
    """States reported for queued file and project translation jobs."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Issues ------------------------------------------------------------------


class IssuePosition(BaseModel):
    """Character span into the source or translated text."""

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    @field_validator("end")
    @classmethod
    def _end_after_start(cls, value: int, info) -> int:
        start = info.data.get("start")
        if start is not None and value < start:
            raise ValueError("end must not precede start")
        return value


class IssueResolution(BaseModel):
    """Record of how and by whom an issue was settled."""

    action: ResolutionAction
    modified_text: Optional[str] = None
    comment: Optional[str] = None
    resolved_by: str
    resolved_at: datetime = Field(default_factory=datetime.utcnow)


class Issue(BaseModel):
    """A finding attached to one segment."""

    id: str
    type: IssueType
    severity: IssueSeverity = IssueSeverity.MEDIUM
    description: str
    position: Optional[IssuePosition] = None
    suggestion: Optional[str] = None
    status: IssueStatus = IssueStatus.OPEN
    resolution: Optional[IssueResolution] = None
    ai_generated: bool = False
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_settled(self) -> bool:
        return self.status in (IssueStatus.RESOLVED, IssueStatus.REJECTED)

    @property
    def is_actionable(self) -> bool:
        return self.status in (IssueStatus.OPEN, IssueStatus.IN_PROGRESS)


class IssueCreate(BaseModel):
    """Payload for an issue raised by a human collaborator."""

    type: IssueType
    description: str = Field(..., min_length=1)
    severity: IssueSeverity = IssueSeverity.MEDIUM
    position: Optional[IssuePosition] = None
    suggestion: Optional[str] = None


class IssueResolutionRequest(BaseModel):
    """Resolution applied to a single issue, addressed by its index."""

    issue_index: int
    action: ResolutionAction
    modified_text: Optional[str] = None
    comment: Optional[str] = None


class IssueStatusUpdate(BaseModel):
    status: IssueStatus


class IssueFilter(BaseModel):
    """Per-issue filter used by batch resolution. Empty lists match nothing."""

    types: Optional[List[IssueType]] = None
    severities: Optional[List[IssueSeverity]] = None

    def matches(self, issue: Issue) -> bool:
        if self.types is not None and issue.type not in self.types:
            return False
        if self.severities is not None and issue.severity not in self.severities:
            return False
        return True


class BatchResolution(BaseModel):
    action: ResolutionAction
    comment: Optional[str] = None


class BatchResolveRequest(BaseModel):
    filter: IssueFilter = Field(default_factory=IssueFilter)
    resolution: BatchResolution


class BatchResolveResult(BaseModel):
    modified_segments: int = 0
    resolved_issues: int = 0
    failed_segments: List[str] = Field(default_factory=list)


# Segments ----------------------------------------------------------------


class TranslationMetadata(BaseModel):
    ai_model: Optional[str] = None
    prompt_template_id: Optional[str] = None
    token_count: int = 0
    processing_time_ms: float = 0.0
    from_translation_memory: bool = False
    tm_score: Optional[float] = None


class ReviewScore(BaseModel):
    type: ReviewScoreType
    score: float = Field(..., ge=0, le=100)
    details: Optional[str] = None


class ReviewMetadata(BaseModel):
    ai_model: Optional[str] = None
    prompt_template_id: Optional[str] = None
    token_count: int = 0
    processing_time_ms: float = 0.0
    original_translation: Optional[str] = None
    suggested_translation: Optional[str] = None
    scores: List[ReviewScore] = Field(default_factory=list)
    modification_degree: Optional[float] = Field(default=None, ge=0, le=1)
    accepted_changes: Optional[bool] = None
    reviewed_at: Optional[datetime] = None


class Segment(BaseModel):
    """Smallest unit of translatable and reviewable text."""

    id: str
    file_id: str
    project_id: str
    index: int = Field(..., ge=0)
    source_text: str
    translation: Optional[str] = None
    translated_length: Optional[int] = None
    final_text: Optional[str] = None
    status: SegmentStatus = SegmentStatus.PENDING
    issues: List[Issue] = Field(default_factory=list)
    translation_metadata: Optional[TranslationMetadata] = None
    review_metadata: Optional[ReviewMetadata] = None
    quality_score: Optional[int] = Field(default=None, ge=0, le=100)
    reviewer_id: Optional[str] = None
    translator_id: Optional[str] = None
    error: Optional[str] = None
    translation_completed_at: Optional[datetime] = None
    review_completed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def word_count(self) -> int:
        return len(self.source_text.split())


# Files and projects --------------------------------------------------------


class FileProgress(BaseModel):
    total: int = 0
    completed: int = 0
    translated: int = 0
    percentage: int = Field(default=0, ge=0, le=100)


class FileRecord(BaseModel):
    """Projection of a file's aggregate state owned by this core."""

    id: str
    project_id: str
    name: str
    source_language: Optional[str] = None
    target_language: Optional[str] = None
    status: FileStatus = FileStatus.PENDING
    progress: FileProgress = Field(default_factory=FileProgress)
    error_details: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ProjectProgress(BaseModel):
    completion_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    translated_words: int = 0
    total_words: int = 0
    total_segments: int = 0
    translated_segments: int = 0
    completed_segments: int = 0


class ProjectRecord(BaseModel):
    id: str
    name: str
    source_language: str
    target_language: str
    domain: Optional[str] = None
    manager_id: str
    reviewer_ids: List[str] = Field(default_factory=list)
    translator_ids: List[str] = Field(default_factory=list)
    status: ProjectStatus = ProjectStatus.PENDING
    progress: ProjectProgress = Field(default_factory=ProjectProgress)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def is_member(self, user_id: str) -> bool:
        return (
            user_id == self.manager_id
            or user_id in self.reviewer_ids
            or user_id in self.translator_ids
        )

    def can_review(self, user_id: str) -> bool:
        return user_id == self.manager_id or user_id in self.reviewer_ids


class ProjectCreate(BaseModel):
    """Registration payload for a project handed over by the outer system."""

    name: str
    source_language: str
    target_language: str
    manager_id: str
    reviewer_ids: List[str] = Field(default_factory=list)
    translator_ids: List[str] = Field(default_factory=list)
    domain: Optional[str] = None
    id: Optional[str] = None


class FileCreate(BaseModel):
    """Registration payload for an already parsed file."""

    name: str
    segments: List[str] = Field(..., description="Raw segment texts in document order.")
    source_language: Optional[str] = None
    target_language: Optional[str] = None
    id: Optional[str] = None


# Translation memory and terminology ------------------------------------------


class TranslationMemoryEntry(BaseModel):
    id: str
    project_id: Optional[str] = None
    source_language: str
    target_language: str
    source_text: str
    target_text: str
    usage_count: int = 0
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_used_at: Optional[datetime] = None


class TranslationMemoryCreate(BaseModel):
    source_language: str
    target_language: str
    source_text: str = Field(..., min_length=1)
    target_text: str = Field(..., min_length=1)
    project_id: Optional[str] = None


class TMMatch(BaseModel):
    """Translation memory hit with a 0-100 similarity score."""

    entry_id: str
    source_text: str
    target_text: str
    score: float = Field(..., ge=0, le=100)


class TermEntry(BaseModel):
    id: str
    project_id: str
    source: str
    target: str
    notes: Optional[str] = None


class TermEntryCreate(BaseModel):
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    notes: Optional[str] = None


# Provider boundary -----------------------------------------------------------


class TranslationContext(BaseModel):
    """Constraints and surrounding text handed to the AI capabilities."""

    project_id: str
    domain: Optional[str] = None
    terminology: List[TermEntry] = Field(default_factory=list)
    preceding: List[str] = Field(default_factory=list)
    following: List[str] = Field(default_factory=list)
    prompt_template_id: Optional[str] = None
    ai_provider: Optional[str] = None
    ai_model: Optional[str] = None


class ProviderTranslation(BaseModel):
    translated_text: str
    model: str
    token_count: int = 0
    latency_ms: float = 0.0


class ProviderReview(BaseModel):
    issues: List[Issue] = Field(default_factory=list)
    suggested_translation: Optional[str] = None
    scores: List[ReviewScore] = Field(default_factory=list)
    model: str
    token_count: int = 0
    latency_ms: float = 0.0


# Operation options -----------------------------------------------------------


class TranslationOptions(BaseModel):
    source_language: Optional[str] = None
    target_language: Optional[str] = None
    ai_provider: Optional[str] = None
    ai_model: Optional[str] = None
    prompt_template_id: Optional[str] = None
    domain: Optional[str] = None
    context_window: Optional[int] = Field(default=None, ge=0)
    use_translation_memory: bool = True
    retranslate_failed: bool = True
    auto_review: bool = False


class ReviewOptions(BaseModel):
    ai_provider: Optional[str] = None
    ai_model: Optional[str] = None
    prompt_template_id: Optional[str] = None
    reviewer_id: Optional[str] = None
    include_terminology: bool = True
    context_window: Optional[int] = Field(default=None, ge=0)


class CompleteReviewRequest(BaseModel):
    final_text: str
    resolutions: List[IssueResolutionRequest] = Field(default_factory=list)
    accept_all: bool = False


# Jobs ------------------------------------------------------------------------


class JobStatusReport(BaseModel):
    """Externally visible snapshot of a translation job."""

    job_id: str
    kind: str
    project_id: str
    file_id: Optional[str] = None
    status: JobState = JobState.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    total_segments: int = 0
    processed_segments: int = 0
    failed_segments: int = 0
    errors: List[str] = Field(default_factory=list)
    cancelled: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
