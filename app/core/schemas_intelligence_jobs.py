"""Pydantic schemas for intelligence analysis jobs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

HISTORY_LIMIT = 20


def utc_now() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_analysis_id() -> str:
    """Opaque id distinguishing one logical analysis from its predecessor."""
    return uuid4().hex


# =============================================================================
# Enums
# =============================================================================


class EntityType(str, Enum):
    contact = "contact"
    company = "company"
    deal = "deal"


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    complete = "complete"
    error = "error"
    cancelled = "cancelled"


ACTIVE_STATUSES = (JobStatus.pending, JobStatus.running)
TERMINAL_STATUSES = (JobStatus.complete, JobStatus.error, JobStatus.cancelled)


class LogStatus(str, Enum):
    loading = "loading"
    complete = "complete"
    error = "error"
    warning = "warning"
    info = "info"


# =============================================================================
# Embedded records
# =============================================================================


class AgentStats(BaseModel):
    """Execution statistics for one analysis run."""

    iterations: int = 0
    tool_calls: int = 0
    duration_ms: int | None = None


class JobLogEntry(BaseModel):
    """One progress entry in a job's activity log."""

    step: str
    message: str
    status: LogStatus = LogStatus.info
    data: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class RetryConfig(BaseModel):
    """Whole-run retry state. Present only for retry-wrapped submissions."""

    max_retries: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=30_000, ge=0)
    current_retry: int = Field(default=0, ge=0)


class ChangeDetectionResult(BaseModel):
    """Delta between an analysis result and its immediate predecessor."""

    has_changes: bool = False
    score_change: float | None = None
    previous_score: float | None = None
    current_score: float | None = None
    changed_fields: list[str] = Field(default_factory=list)
    new_insights: list[str] = Field(default_factory=list)
    resolved_risks: list[str] = Field(default_factory=list)
    new_risks: list[str] = Field(default_factory=list)
    new_opportunities: list[str] = Field(default_factory=list)
    resolved_opportunities: list[str] = Field(default_factory=list)
    summary: str = ""


class SnapshotChanges(BaseModel):
    """Change summary carried inside a history snapshot."""

    score_change: float | None = None
    new_insights: list[str] = Field(default_factory=list)
    resolved_risks: list[str] = Field(default_factory=list)
    new_risks: list[str] = Field(default_factory=list)
    summary: str | None = None


class AnalysisSnapshot(BaseModel):
    """Immutable copy of a prior job's outcome, embedded in a later job's history."""

    model_config = {"frozen": True}

    analysis_id: str
    result: dict[str, Any] | None = None
    stats: AgentStats | None = None
    completed_at: datetime
    user_id: str | None = None
    changes: SnapshotChanges | None = None


# =============================================================================
# Job record
# =============================================================================


class AnalysisJob(BaseModel):
    """One execution attempt/record for one (entity_type, entity_id) pair."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    entity_type: EntityType
    entity_id: str
    entity_name: str

    status: JobStatus = JobStatus.pending
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    result: dict[str, Any] | None = None
    error: str | None = None
    logs: list[JobLogEntry] = Field(default_factory=list)
    stats: AgentStats | None = None
    user_id: str | None = None

    version: int = Field(default=1, ge=1)
    analysis_id: str = Field(default_factory=new_analysis_id)
    previous_job_id: str | None = None
    history: list[AnalysisSnapshot] = Field(default_factory=list)
    change_detection: ChangeDetectionResult | None = None
    retry_config: RetryConfig | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("history")
    @classmethod
    def _cap_history(cls, value: list[AnalysisSnapshot]) -> list[AnalysisSnapshot]:
        # Oldest entries are evicted first
        return value[-HISTORY_LIMIT:]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_rerun(self) -> bool:
        return self.version > 1

    def to_record(self) -> dict[str, Any]:
        """Serialize for the job store."""
        return self.model_dump(mode="json", exclude={"created_at", "updated_at"})


# =============================================================================
# Requests
# =============================================================================


class AnalysisRequest(BaseModel):
    """One entity to analyze."""

    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    entity_name: str = Field(..., min_length=1)


class SubmitAnalysisRequest(AnalysisRequest):
    """Single-job submission, optionally retry-wrapped."""

    user_id: str | None = None
    max_retries: int | None = Field(default=None, ge=1, le=10)
    initial_delay_ms: int | None = Field(default=None, ge=0)


class BatchAnalysisRequest(BaseModel):
    """Batch submission. Size and field checks happen in the orchestrator."""

    jobs: list[dict[str, Any]] = Field(default_factory=list)
    user_id: str | None = None


class BatchRerunRequest(BatchAnalysisRequest):
    """Batch re-run with whole-run retry."""

    max_retries: int = Field(default=3, ge=1, le=10)
    initial_delay_ms: int = Field(default=30_000, ge=0)


# =============================================================================
# Responses
# =============================================================================


class JobSummary(BaseModel):
    """Compact view returned by submission endpoints."""

    id: str
    entity_type: EntityType
    entity_id: str
    entity_name: str
    status: JobStatus
    started_at: datetime
    version: int
    is_rerun: bool
    history_count: int

    @classmethod
    def from_job(cls, job: AnalysisJob) -> "JobSummary":
        return cls(
            id=job.id,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            entity_name=job.entity_name,
            status=job.status,
            started_at=job.started_at,
            version=job.version,
            is_rerun=job.is_rerun,
            history_count=len(job.history),
        )


class BatchSubmitResponse(BaseModel):
    success: bool = True
    jobs: list[JobSummary]
    count: int
    reruns: int
    retry_config: RetryConfig | None = None


class CancelResult(BaseModel):
    """Outcome of a cancel request. `cancelled` is False for a no-op."""

    job: AnalysisJob
    cancelled: bool
    reason: str | None = None


class TimelineEntry(BaseModel):
    id: str
    analysis_id: str
    version: int
    status: JobStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    tool_calls: int | None = None
    iterations: int | None = None
    user_id: str | None = None
    error: str | None = None
    score: float | None = None
    insights_count: int = 0
    risks_count: int = 0
    opportunities_count: int = 0
    actions_count: int = 0
    result: dict[str, Any] | None = None
    change_detection: ChangeDetectionResult | None = None
    previous_job_id: str | None = None


class TimelineStats(BaseModel):
    total_analyses: int = 0
    completed_analyses: int = 0
    errored_analyses: int = 0
    first_analysis: datetime | None = None
    latest_analysis: datetime | None = None
    average_duration_ms: int | None = None


class ScoreTrendPoint(BaseModel):
    date: datetime | None
    score: float
    version: int


class EntityTimeline(BaseModel):
    """Ordered analysis timeline for one entity, most recent first."""

    entity_type: EntityType
    entity_id: str
    timeline: list[TimelineEntry] = Field(default_factory=list)
    stats: TimelineStats = Field(default_factory=TimelineStats)
    score_trend: list[ScoreTrendPoint] = Field(default_factory=list)
    has_history: bool = False
