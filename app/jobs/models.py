"""Job data model for provider-hosted generation jobs."""

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    CREATED = "created"
    SUBMITTING = "submitting"
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED}
)


class NormalizedStatus(str, Enum):
    """Provider-agnostic status reported by a single poll."""
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"


class GenerationRequest(BaseModel):
    """Immutable input payload of a job."""
    model_config = ConfigDict(frozen=True)

    prompt: Optional[str] = None
    image: Optional[bytes] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class RawStatus(BaseModel):
    """One provider status response, reduced to the fields the engine reads."""
    status: str
    logs: List[str] = Field(default_factory=list)
    message: Optional[str] = None
    code: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ArtifactFile(BaseModel):
    url: str
    content_type: str
    filename: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class Artifact(BaseModel):
    """Downloadable output of a successful job."""
    kind: str
    files: List[ArtifactFile] = Field(default_factory=list)
    seed: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def url(self) -> Optional[str]:
        return self.files[0].url if self.files else None


class JobError(BaseModel):
    """Display-safe description of why a job did not succeed."""
    kind: str
    message: str
    code: Optional[int] = None
    provider: Optional[str] = None


class JobConfig(BaseModel):
    """Per-kind polling configuration."""
    poll_interval_ms: int = 1000
    timeout_ms: int = 5 * 60 * 1000
    poll_max_retries: int = 3
    poll_retry_delay_ms: int = 500
    max_skipped_polls: int = 5
    max_buffered_log_lines: int = 200

    @model_validator(mode="after")
    def _check_bounds(self) -> "JobConfig":
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        if self.timeout_ms < self.poll_interval_ms:
            raise ValueError("timeout_ms must be at least poll_interval_ms")
        if self.poll_max_retries < 0 or self.max_skipped_polls < 0:
            raise ValueError("retry budgets cannot be negative")
        return self

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def poll_retry_delay(self) -> float:
        return self.poll_retry_delay_ms / 1000.0

    @property
    def max_attempts(self) -> int:
        return math.ceil(self.timeout_ms / self.poll_interval_ms)


class Job(BaseModel):
    """Tracks the lifecycle of one generation request."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: str
    request: GenerationRequest
    provider_task_id: Optional[str] = None
    state: JobState = JobState.CREATED
    progress_percent: int = 0
    log_lines: List[str] = Field(default_factory=list)
    result: Optional[Artifact] = None
    error: Optional[JobError] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            id=self.id,
            kind=self.kind,
            provider_task_id=self.provider_task_id,
            state=self.state,
            progress_percent=self.progress_percent,
            log_lines=tuple(self.log_lines),
            result=self.result.model_copy(deep=True) if self.result else None,
            error=self.error.model_copy() if self.error else None,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )


class JobSnapshot(BaseModel):
    """Read-only copy of a Job handed to observers."""
    model_config = ConfigDict(frozen=True)

    id: str
    kind: str
    provider_task_id: Optional[str] = None
    state: JobState
    progress_percent: int
    log_lines: Tuple[str, ...] = ()
    result: Optional[Artifact] = None
    error: Optional[JobError] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class ProgressEvent(BaseModel):
    """One notification on a job's progress stream."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    state: JobState
    progress_percent: int
    log_lines: Tuple[str, ...] = ()
    timestamp: datetime = Field(default_factory=utcnow)
    final: bool = False
    result: Optional[Artifact] = None
    error: Optional[JobError] = None
