"""Per-execution state owned by the scheduler while a job runs."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

from jobrunner.errors import JobCancelledError
from jobrunner.schemas.jobs import Job, ProcessedFile


class CancellationToken:
    """Cooperative cancellation handle handed to the pipeline.

    Pipelines observe it only at file boundaries, never while a file is being
    transformed. A cancel request therefore takes effect after at most one
    file's processing time.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Job was cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self.reason or "Job was cancelled")


@dataclass
class ExecutionContext:
    """Ephemeral record for one running job."""

    job: Job
    token: CancellationToken = field(default_factory=CancellationToken)
    processed_files: list[ProcessedFile] = field(default_factory=list)
    start_time: float = field(default_factory=time.monotonic)
    # monotonic time of the last progress-triggered save
    last_saved: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = None

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def record(self, result: ProcessedFile) -> None:
        self.processed_files.append(result)

    def elapsed(self) -> float:
        return time.monotonic() - self.start_time
