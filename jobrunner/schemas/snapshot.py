"""Checkpoint, snapshot and on-disk envelope schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from jobrunner.schemas.common import JobStatus
from jobrunner.schemas.jobs import Job, ProcessedFile

SCHEMA_VERSION = 2


class Checkpoint(BaseModel):
    """Subset of job state needed to continue without repeating finished files."""
    current_file_index: int = 0
    completed_files: list[str] = Field(default_factory=list)
    failed_files: list[str] = Field(default_factory=list)
    pending_files: list[str] = Field(default_factory=list)
    resume_token: str
    last_saved_at: datetime
    total_progress: int = Field(0, ge=0, le=100)


class CompressionInfo(BaseModel):
    algorithm: Literal["gzip"] = "gzip"
    original_size: int
    compressed_size: int


class IntegrityInfo(BaseModel):
    checksum: str
    algorithm: Literal["sha256"] = "sha256"


class SnapshotMetadata(BaseModel):
    schema_version: int = SCHEMA_VERSION
    created_at: datetime
    file_count: int
    data_size: int = Field(..., description="Bytes of the canonical {job, processed_files} document")
    compression: Optional[CompressionInfo] = None
    integrity: IntegrityInfo


class JobSnapshot(BaseModel):
    """Full durable serialization of a job."""
    job: Job
    processed_files: list[ProcessedFile] = Field(default_factory=list)
    checkpoint: Checkpoint
    metadata: SnapshotMetadata


class SnapshotEnvelope(BaseModel):
    """Document written to ``<job_id>.snapshot``.

    ``compressed`` is explicit: readers never guess the payload format. A
    plain envelope carries ``snapshot``; a compressed one carries ``data``,
    the base64 of the gzipped snapshot JSON.
    """
    schema_version: int
    compressed: bool = False
    compression: Optional[CompressionInfo] = None
    snapshot: Optional[JobSnapshot] = None
    data: Optional[str] = None


# ---------------------------------------------------------------------------
# Results returned to callers that must act on failures
# ---------------------------------------------------------------------------

class RestoreResult(BaseModel):
    success: bool
    job: Optional[Job] = None
    processed_files: Optional[list[ProcessedFile]] = None
    checkpoint: Optional[Checkpoint] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class ResumeResult(BaseModel):
    success: bool
    job: Optional[Job] = None
    remaining_files: Optional[list[str]] = None
    processed_files: Optional[list[ProcessedFile]] = None
    checkpoint: Optional[Checkpoint] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    missing_files: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class PersistedJobInfo(BaseModel):
    id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    progress: int = Field(..., description="Checkpoint total progress, 0-100")
    file_count: int
    checkpoint: Checkpoint
    integrity_ok: bool
    can_resume: bool
