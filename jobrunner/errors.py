"""Error taxonomy shared by the scheduler, the checkpoint store and pipelines."""

from __future__ import annotations

from typing import Optional

from jobrunner.schemas.jobs import JobError


class JobRunnerError(Exception):
    """Base error carrying the fields recorded on a failed job."""

    code = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        step: str = "unknown",
        recoverable: bool = False,
        suggestions: Optional[list[str]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.step = step
        self.recoverable = recoverable
        self.suggestions = list(suggestions or [])
        if code is not None:
            self.code = code

    def to_job_error(self) -> JobError:
        return JobError(
            code=self.code,
            message=self.message,
            step=self.step,
            recoverable=self.recoverable,
            suggestions=self.suggestions,
        )


class JobValidationError(JobRunnerError):
    """Job not found, already running, already completed, or otherwise not eligible."""

    code = "VALIDATION_ERROR"


class CheckpointValidationError(JobValidationError):
    """A checkpoint whose file partitions do not cover the job's input exactly."""


class IntegrityError(JobRunnerError):
    """Stored snapshot failed verification and is presumed corrupted."""

    code = "INTEGRITY_ERROR"

    def __init__(self, message: str, step: str = "snapshot-load"):
        super().__init__(
            message,
            step=step,
            suggestions=["Job data may be corrupted", "Delete the job and submit it again"],
        )


class MissingFilesError(JobRunnerError):
    """Pending files of a job no longer exist on disk."""

    code = "MISSING_FILES"

    def __init__(self, missing_files: list[str], step: str = "job-resume"):
        super().__init__(
            f"Missing source files: {', '.join(missing_files)}",
            step=step,
            suggestions=["Restore the missing files or delete the job"],
        )
        self.missing_files = list(missing_files)


class ExecutionError(JobRunnerError):
    """The processing pipeline failed for a job."""

    code = "JOB_EXECUTION_FAILED"

    def __init__(self, message: str, step: str = "execution"):
        super().__init__(
            message,
            step=step,
            recoverable=True,
            suggestions=["Check input files", "Verify configuration", "Try resuming the job"],
        )


class JobCancelledError(JobRunnerError):
    """Raised by a pipeline that observed a cancellation request."""

    code = "JOB_CANCELLED"

    def __init__(self, message: str = "Job was cancelled", step: str = "execution"):
        super().__init__(message, step=step, recoverable=True)


class StorageError(JobRunnerError):
    """Storage location not writable, or I/O failure during save or load."""

    code = "STORAGE_ERROR"
