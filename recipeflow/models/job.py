"""Extraction job Pydantic model and status vocabulary."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SourceKind(str, Enum):
    VIDEO = "video"
    WEBPAGE = "webpage"
    IMAGE = "image"


class ErrorCode(str, Enum):
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    SAVE_FAILED = "SAVE_FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(
    {JobStatus.PENDING, JobStatus.DOWNLOADING, JobStatus.PROCESSING, JobStatus.EXTRACTING}
)
RETRYABLE_ERROR_CODES = frozenset({ErrorCode.DOWNLOAD_FAILED, ErrorCode.TIMEOUT})

# processing and extracting share a rank: the extractor may alternate between them
_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.DOWNLOADING: 1,
    JobStatus.PROCESSING: 2,
    JobStatus.EXTRACTING: 2,
    JobStatus.COMPLETED: 3,
    JobStatus.FAILED: 3,
    JobStatus.CANCELLED: 3,
}


def status_rank(status: JobStatus) -> int:
    """Position of a status along the pipeline order."""
    return _STATUS_RANK[status]


def is_retryable(error_code: Optional[str]) -> bool:
    """Whether a failed job is worth resubmitting unchanged."""
    if not error_code:
        return False
    try:
        return ErrorCode(error_code) in RETRYABLE_ERROR_CODES
    except ValueError:
        return False


class Job(BaseModel):
    """One tracked conversion of an external source into a persisted recipe."""

    id: str = Field(default_factory=lambda: str(uuid4()), min_length=1)
    owner_id: str = Field(min_length=1)
    source_kind: SourceKind
    source_locator: str = Field(min_length=1)
    idempotency_key: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    progress_percent: int = Field(default=0, ge=0, le=100)
    status_message: Optional[str] = None
    result_recipe_id: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("owner_id", "source_locator")
    @classmethod
    def not_whitespace(cls, v: str) -> str:
        """Validate that field is not only whitespace."""
        if not v.strip():
            raise ValueError("field cannot be only whitespace")
        return v

    @field_validator("idempotency_key")
    @classmethod
    def blank_key_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def retryable(self) -> bool:
        return self.status == JobStatus.FAILED and is_retryable(self.error_code)
