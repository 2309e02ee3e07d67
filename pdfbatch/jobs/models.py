"""Batch job records, status enums and the job state machine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pdfbatch.errors import InvalidTransition


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OutputFormat(str, Enum):
    PDF = "pdf"
    PNG = "png"
    JPEG = "jpeg"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
TERMINAL_FILE_STATUSES = frozenset({FileStatus.COMPLETED, FileStatus.FAILED})
EDITABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PAUSED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


class JobConfig(BaseModel):
    """Per-job processing options, validated on write.

    Unknown keys are kept so clients can attach their own metadata.
    """

    model_config = ConfigDict(extra="allow")

    quality: int = Field(default=85, ge=1, le=100)
    resolution: float = Field(default=150.0, gt=0, le=1200)
    grayscale: bool = False


class BatchJobFile(BaseModel):
    """One input file of a job, tracked through its own status."""

    id: str
    job_id: str
    file_name: str
    file_type: str = ""
    file_size: int = 0
    file_order: int
    processing_status: FileStatus = FileStatus.PENDING
    error_message: Optional[str] = None
    output_name: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.processing_status in TERMINAL_FILE_STATUSES


class BatchJob(BaseModel):
    """A user-submitted batch of files processed under one configuration."""

    id: str
    user_id: str
    job_name: str
    description: str = ""
    job_config: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    output_format: OutputFormat = OutputFormat.PDF
    job_status: JobStatus = JobStatus.PENDING
    total_files: int = 0
    processed_files: int = 0
    failed_files: int = 0
    error_message: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    batch_job_files: Optional[List[BatchJobFile]] = None

    @property
    def is_terminal(self) -> bool:
        return self.job_status in TERMINAL_STATUSES

    @property
    def config(self) -> JobConfig:
        return JobConfig.model_validate(self.job_config or {})


# ---------------------------------------------------------------------------
# State machine guards
# ---------------------------------------------------------------------------

def can_edit(status: JobStatus) -> bool:
    return status in EDITABLE_STATUSES


def ensure_editable(status: JobStatus) -> None:
    if not can_edit(status):
        raise InvalidTransition("Only pending or paused jobs can be updated")


def toggled_status(status: JobStatus) -> JobStatus:
    """Return the status a pause/resume toggle leads to."""
    if status == JobStatus.RUNNING:
        return JobStatus.PAUSED
    if status == JobStatus.PAUSED:
        return JobStatus.RUNNING
    raise InvalidTransition("Only running or paused jobs can be paused or resumed")


def can_cancel(status: JobStatus) -> bool:
    return status != JobStatus.COMPLETED


def final_status(total_files: int, failed_files: int) -> JobStatus:
    """Terminal status once every file is terminal: failed only if all failed."""
    if total_files > 0 and failed_files >= total_files:
        return JobStatus.FAILED
    return JobStatus.COMPLETED
