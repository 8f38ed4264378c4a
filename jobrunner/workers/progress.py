"""Progress relay: routes pipeline events back into the running job."""

from __future__ import annotations

import time
from typing import Optional

import structlog

from jobrunner.errors import JobRunnerError
from jobrunner.schemas.common import ProgressEventType
from jobrunner.schemas.jobs import JobProgress, ProgressEvent
from jobrunner.storage.checkpoint_store import CheckpointStore
from jobrunner.workers.context import ExecutionContext

logger = structlog.get_logger(__name__)

_FILE_EVENTS = (ProgressEventType.FILE_COMPLETED, ProgressEventType.FILE_FAILED)


class ProgressRelay:
    """Callable handed to the pipeline as its progress callback.

    Per-file results are always recorded on the context. With progress
    tracking on, the job's progress is updated and a snapshot is saved at
    most once per ``save_interval`` seconds. Events that arrive after the job
    was cancelled are ignored, since the cancel path already wrote the final
    snapshot.
    """

    def __init__(
        self,
        context: ExecutionContext,
        store: Optional[CheckpointStore],
        *,
        track_progress: bool = True,
        save_interval: float = 10.0,
    ):
        self._context = context
        self._store = store
        self._track = track_progress
        self._save_interval = save_interval
        self._log = logger.bind(job_id=context.job_id)

    async def __call__(self, event: ProgressEvent) -> None:
        context = self._context
        if context.cancelled:
            return

        if event.type in _FILE_EVENTS and event.file is not None:
            context.record(event.file)

        if event.type == ProgressEventType.ERROR:
            self._log.warning("job_progress_error", message=event.message)

        if not self._track:
            return

        if event.progress is not None:
            context.job.progress = _with_estimate(event.progress, context.elapsed())
            context.job.touch()

        await self._maybe_save()

    async def _maybe_save(self) -> None:
        if self._store is None:
            return
        now = time.monotonic()
        if now - self._context.last_saved < self._save_interval:
            return

        # Claim the slot before awaiting so overlapping events do not double-save
        self._context.last_saved = now
        try:
            await self._store.save_job_snapshot(self._context.job, self._context.processed_files)
        except JobRunnerError as exc:
            self._log.warning("progress_save_failed", error=exc.message)


def _with_estimate(progress: JobProgress, elapsed: float) -> JobProgress:
    """Fill ``estimated_time_remaining`` from the average time per finished step."""
    done = progress.steps_completed
    if progress.estimated_time_remaining is not None or done <= 0:
        return progress
    remaining = max(progress.total_steps - done, 0)
    return progress.model_copy(
        update={"estimated_time_remaining": round(elapsed / done * remaining, 3)}
    )
