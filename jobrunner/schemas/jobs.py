"""Schemas for jobs, per-file results and the job management endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from jobrunner.schemas.common import JobStatus, ProgressEventType


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Job input
# ---------------------------------------------------------------------------

class JobInputOptions(BaseModel):
    """Options forwarded to the processing pipeline."""
    output_dir: Optional[str] = Field(None, description="Directory for transformed files")
    recursive: bool = False
    pattern: Optional[str] = Field(None, description="Glob used when the input was a directory")
    exclude: list[str] = Field(default_factory=list)


class JobInput(BaseModel):
    """Ordered list of files to process plus processing options."""
    files: list[str] = Field(..., description="Input file paths, in processing order")
    options: JobInputOptions = Field(default_factory=JobInputOptions)

    @field_validator("files")
    @classmethod
    def _check_files(cls, files: list[str]) -> list[str]:
        for path in files:
            try:
                path.encode("utf-8")
            except UnicodeEncodeError:
                raise ValueError("File paths must be valid UTF-8") from None
        # Keep first occurrence so the checkpoint partitions stay a true set partition
        return list(dict.fromkeys(files))


class JobOptions(BaseModel):
    """Submission options stored alongside the job."""
    timeout: Optional[float] = Field(None, gt=0, description="Per-file timeout override (seconds)")
    resumable: bool = Field(True, description="Persist the job so it can be resumed")
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Progress and results
# ---------------------------------------------------------------------------

class JobProgress(BaseModel):
    current_step: str = "Initializing"
    steps_completed: int = 0
    total_steps: int = 0
    percentage: float = Field(0.0, ge=0.0, le=100.0)
    current_file: Optional[str] = None
    estimated_time_remaining: Optional[float] = Field(None, description="Seconds")


class JobError(BaseModel):
    """Error captured on a failed job or file."""
    code: str
    message: str
    step: str
    recoverable: bool = False
    suggestions: list[str] = Field(default_factory=list)


class FileStatistics(BaseModel):
    input_size: int = 0
    output_size: int = 0
    stages_applied: list[str] = Field(default_factory=list)


class ProcessedFile(BaseModel):
    """Outcome of pushing one file through the pipeline."""
    input_path: str
    output_path: Optional[str] = None
    success: bool
    error: Optional[JobError] = None
    statistics: FileStatistics = Field(default_factory=FileStatistics)
    processing_time: float = Field(0.0, description="Seconds")


class ProcessingSummary(BaseModel):
    total_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    total_processing_time: float = 0.0
    tokens_used: int = 0
    cost: Optional[float] = None


class JobOutput(BaseModel):
    files: list[ProcessedFile] = Field(default_factory=list)
    summary: ProcessingSummary


class ProgressEvent(BaseModel):
    """Event reported by a pipeline through the progress callback."""
    type: ProgressEventType
    job_id: str
    progress: Optional[JobProgress] = None
    file: Optional[ProcessedFile] = None
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Job entity
# ---------------------------------------------------------------------------

class Job(BaseModel):
    """A batch of files pushed through the processing pipeline."""
    id: str
    status: JobStatus = JobStatus.PENDING
    input: JobInput
    config: dict[str, Any] = Field(default_factory=dict, description="Opaque pipeline config")
    options: JobOptions = Field(default_factory=JobOptions)
    progress: JobProgress = Field(default_factory=JobProgress)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    output: Optional[JobOutput] = None
    error: Optional[JobError] = None

    def touch(self) -> None:
        self.updated_at = utc_now()


class JobFilter(BaseModel):
    status: Optional[list[JobStatus]] = None
    limit: Optional[int] = Field(None, ge=1)
    offset: int = Field(0, ge=0)


class ExecutionStats(BaseModel):
    active_jobs: int
    queued_jobs: int
    max_concurrent_jobs: int
    total_jobs_processed: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    average_processing_time: float = Field(0.0, description="Seconds, over finished executions")


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------

class CreateJobRequest(BaseModel):
    """Request body to submit a new job."""
    input: JobInput
    config: dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)


class CreateJobResponse(BaseModel):
    job_id: str
    status: JobStatus


class ResumeJobRequest(BaseModel):
    """Request body to resume a failed, cancelled or crashed job."""
    config: Optional[dict[str, Any]] = Field(None, description="Replaces the stored config if set")
    force: bool = Field(False, description="Allow resuming a cancelled job")


class JobActionResponse(BaseModel):
    job_id: str
    success: bool
    message: str


class JobListResponse(BaseModel):
    jobs: list[Job]
    total: int
