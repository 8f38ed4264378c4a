"""Job scheduler: bounded concurrent execution with checkpointed persistence.

All state (the active-jobs map and the pending queue) lives on one asyncio
event loop. Admission is synchronous: no ``await`` separates the capacity
check from starting a job, so the two collections never need a lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
import time
from collections import deque
from typing import Any, Callable, Optional

import structlog

from jobrunner.config import SchedulerSettings, settings
from jobrunner.errors import ExecutionError, JobCancelledError, JobRunnerError
from jobrunner.schemas.common import JobStatus
from jobrunner.schemas.jobs import (
    ExecutionStats,
    Job,
    JobFilter,
    JobInput,
    JobOptions,
    JobOutput,
    JobProgress,
    utc_now,
)
from jobrunner.schemas.snapshot import PersistedJobInfo, ResumeResult
from jobrunner.services.pipeline import ProcessingPipeline, build_pipeline
from jobrunner.storage.checkpoint_store import NOT_FOUND, CheckpointStore
from jobrunner.workers.context import ExecutionContext
from jobrunner.workers.progress import ProgressRelay

logger = structlog.get_logger(__name__)

PipelineFactory = Callable[[dict[str, Any]], ProcessingPipeline]


def generate_job_id() -> str:
    return f"job_{int(time.time() * 1000):x}_{secrets.token_hex(4)}"


class JobScheduler:
    """Accepts jobs, runs at most ``max_concurrent_jobs`` at once, and snapshots them.

    One job's failure is recorded on that job and never stops the scheduler
    or the other running jobs.
    """

    def __init__(
        self,
        config: Optional[SchedulerSettings] = None,
        pipeline_factory: Optional[PipelineFactory] = None,
        store: Optional[CheckpointStore] = None,
    ):
        self.config = config or settings.scheduler
        self.store = store or CheckpointStore(self.config.persistence)
        self._pipeline_factory = pipeline_factory or build_pipeline
        self._active: dict[str, ExecutionContext] = {}
        # cancelled executions whose task has not returned yet
        self._draining: dict[str, ExecutionContext] = {}
        self._queue: deque[Job] = deque()
        self._tick_task: Optional[asyncio.Task] = None
        self._expiry_tasks: dict[str, asyncio.Task] = {}

        self._completed = 0
        self._failed = 0
        self._cancelled = 0
        self._processed = 0
        self._total_processing_time = 0.0

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def initialize(self) -> None:
        """Initialise storage and start the admission tick.

        Raises StorageError if the checkpoint store cannot be set up; the
        scheduler must not be used in that case.
        """
        await self.store.initialize()
        if self._tick_task is None:
            self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(
            "scheduler_initialized",
            max_concurrent_jobs=self.config.max_concurrent_jobs,
            persistence=self.store.enabled,
        )

    async def cleanup(self) -> None:
        """Stop the scheduler.

        Running jobs are marked ``paused`` and snapshotted, so they can be
        resumed after a restart. Queued jobs keep their stored ``pending``
        state.
        """
        if self._tick_task is not None:
            self._tick_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None

        for task in self._expiry_tasks.values():
            task.cancel()
        self._expiry_tasks.clear()

        self._queue.clear()

        contexts = list(self._active.values())
        self._active.clear()
        for context in contexts:
            context.token.cancel("Scheduler shutting down")
            context.job.status = JobStatus.PAUSED
            context.job.touch()
            await self._persist(context.job, context)

        draining = list(self._draining.values())
        self._draining.clear()
        tasks = [c.task for c in contexts + draining if c.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.store.cleanup()
        logger.info("scheduler_cleaned_up", paused_jobs=len(contexts))

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def create_job(
        self,
        job_input: JobInput,
        config: Optional[dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> str:
        """Queue a new job and return its id without waiting for execution.

        File existence is not checked here; missing files fail during
        processing. With persistence on and ``options.resumable`` set, an
        initial ``pending`` snapshot is written before the job is queued.
        """
        options = options or JobOptions()
        now = utc_now()
        job = Job(
            id=generate_job_id(),
            status=JobStatus.PENDING,
            input=job_input.model_copy(deep=True),
            config=dict(config or {}),
            options=options.model_copy(deep=True),
            progress=JobProgress(total_steps=len(job_input.files)),
            created_at=now,
            updated_at=now,
        )

        if self._persists(job):
            await self.store.save_job_snapshot(job)

        self._queue.append(job)
        logger.info("job_created", job_id=job.id, files=len(job.input.files))

        self.process_queue()
        return job.id

    async def try_resume_job(
        self,
        job_id: str,
        config: Optional[dict[str, Any]] = None,
        *,
        force: bool = False,
    ) -> ResumeResult:
        """Resume a stored job, returning the detailed outcome.

        The job's input is narrowed to the checkpoint's pending files and it
        is queued ahead of fresh submissions. ``config`` replaces the stored
        pipeline config when given. Cancelled jobs need ``force=True``.
        """
        busy = self._busy_reason(job_id)
        if busy is None:
            result = await self.store.resume_job(job_id, config, force=force)
            # The store awaited I/O; re-check that nobody started the job meanwhile
            busy = self._busy_reason(job_id) if result.success else None
        if busy is not None:
            result = ResumeResult(success=False, error=busy, error_code="VALIDATION_ERROR")

        if not result.success:
            logger.warning(
                "job_resume_failed",
                job_id=job_id,
                error=result.error,
                error_code=result.error_code,
                missing_files=result.missing_files,
                warnings=result.warnings,
            )
            return result

        job = result.job
        job.input.files = list(result.remaining_files)
        job.status = JobStatus.PENDING
        job.error = None
        job.output = None
        job.completed_at = None
        job.progress = JobProgress(current_step="Resuming", total_steps=len(job.input.files))
        job.touch()

        self._queue.appendleft(job)
        logger.info("job_resumed", job_id=job_id, remaining_files=len(job.input.files))

        self.process_queue()
        return result

    async def resume_job(
        self,
        job_id: str,
        config: Optional[dict[str, Any]] = None,
        *,
        force: bool = False,
    ) -> bool:
        """Resume a stored job; False if it is active or cannot be restored."""
        result = await self.try_resume_job(job_id, config, force=force)
        return result.success

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a running or queued job.

        Cancellation is cooperative. The pipeline stops at the next file
        boundary, so work on the file in flight may continue for up to one
        file's processing time; its result is discarded and the file stays
        pending in the checkpoint. Until that execution has returned, the job
        cannot be resumed. Returns False if the job is neither active
        nor queued, without writing anything.
        """
        context = self._active.pop(job_id, None)
        if context is not None:
            context.token.cancel()
            if context.task is not None and not context.task.done():
                self._draining[job_id] = context
            job = context.job
            job.status = JobStatus.CANCELLED
            job.touch()
            self._cancelled += 1
            await self._persist(job, context)
            logger.info("job_cancelled", job_id=job_id, processed_files=len(context.processed_files))
            self.process_queue()
            return True

        for job in self._queue:
            if job.id == job_id:
                self._queue.remove(job)
                job.status = JobStatus.CANCELLED
                job.touch()
                self._cancelled += 1
                await self._persist(job)
                logger.info("job_removed_from_queue", job_id=job_id)
                return True

        return False

    async def delete_job(self, job_id: str) -> bool:
        """Cancel the job if needed and remove its snapshot."""
        expiry = self._expiry_tasks.pop(job_id, None)
        if expiry is not None and expiry is not asyncio.current_task():
            expiry.cancel()

        try:
            cancelled = await self.cancel_job(job_id)
            removed = await self.store.delete_job_snapshot(job_id)
        except JobRunnerError as exc:
            logger.error("job_delete_failed", job_id=job_id, error=exc.message)
            return False

        if cancelled or removed:
            logger.info("job_deleted", job_id=job_id)
        return cancelled or removed

    async def get_job_status(self, job_id: str) -> Optional[Job]:
        """Live view for active jobs, else the queue, else the checkpoint store."""
        context = self._active.get(job_id)
        if context is not None:
            return context.job.model_copy(deep=True)

        for job in self._queue:
            if job.id == job_id:
                return job.model_copy(deep=True)

        restored = await self.store.load_job_snapshot(job_id)
        if restored.success:
            return restored.job
        if restored.error_code not in (NOT_FOUND, None) and self.store.enabled:
            logger.warning(
                "job_status_unavailable",
                job_id=job_id,
                error=restored.error,
                warnings=restored.warnings,
            )
        return None

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> list[Job]:
        """Active, queued and persisted jobs, newest first, de-duplicated by id."""
        job_filter = job_filter or JobFilter()
        jobs: dict[str, Job] = {}

        for job_id, context in self._active.items():
            jobs[job_id] = context.job.model_copy(deep=True)
        for job in self._queue:
            jobs.setdefault(job.id, job.model_copy(deep=True))

        for info in await self.store.list_persisted_jobs():
            if info.id in jobs:
                continue
            restored = await self.store.load_job_snapshot(info.id)
            if restored.success:
                jobs[info.id] = restored.job

        result = list(jobs.values())
        if job_filter.status:
            wanted = set(job_filter.status)
            result = [j for j in result if j.status in wanted]

        result.sort(key=lambda j: j.created_at, reverse=True)

        start = job_filter.offset
        end = start + job_filter.limit if job_filter.limit is not None else None
        return result[start:end]

    async def list_persisted_jobs(self) -> list[PersistedJobInfo]:
        return await self.store.list_persisted_jobs()

    async def checkpoint(self, job_id: str) -> bool:
        """Persist the live state of an active job immediately."""
        context = self._active.get(job_id)
        if context is None:
            return False
        context.last_saved = time.monotonic()
        return await self._persist(context.job, context)

    def get_execution_stats(self) -> ExecutionStats:
        return ExecutionStats(
            active_jobs=len(self._active),
            queued_jobs=len(self._queue),
            max_concurrent_jobs=self.config.max_concurrent_jobs,
            total_jobs_processed=self._processed,
            completed_jobs=self._completed,
            failed_jobs=self._failed,
            cancelled_jobs=self._cancelled,
            average_processing_time=(
                self._total_processing_time / self._processed if self._processed else 0.0
            ),
        )

    # -----------------------------------------------------------------------
    # Admission
    # -----------------------------------------------------------------------

    def process_queue(self) -> int:
        """Admit queued jobs while capacity allows. Returns the number started."""
        admitted = 0
        while self._queue and len(self._active) < self.config.max_concurrent_jobs:
            job = self._queue.popleft()
            if job.id in self._active:
                logger.warning("job_already_active", job_id=job.id)
                continue
            self._start_execution(job)
            admitted += 1
        return admitted

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.tick_interval)
            self.process_queue()

    def _start_execution(self, job: Job) -> None:
        context = ExecutionContext(job=job)
        job.status = JobStatus.RUNNING
        job.touch()
        self._active[job.id] = context
        context.task = asyncio.create_task(self._execute(context), name=f"job-{job.id}")

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    async def _execute(self, context: ExecutionContext) -> None:
        job = context.job
        log = logger.bind(job_id=job.id)
        outcome: Optional[JobStatus] = None

        relay = ProgressRelay(
            context,
            self.store if self._persists(job) else None,
            track_progress=self.config.enable_progress_tracking,
            save_interval=self.config.progress_save_interval,
        )

        try:
            await self._persist(job, context)
            pipeline = self._pipeline_factory(job.config)
            log.info("job_started", files=len(job.input.files))

            summary = await pipeline.process_files(
                job.input.files,
                job.input.options.output_dir,
                job.id,
                relay,
                cancellation=context.token,
                timeout=job.options.timeout or self.config.default_timeout,
            )

            if context.cancelled:
                # cancel_job already wrote the final snapshot
                log.info("job_stopped_after_cancel")
                outcome = JobStatus.CANCELLED
                return

            total = len(job.input.files)
            job.status = JobStatus.COMPLETED
            job.completed_at = utc_now()
            job.progress = JobProgress(
                current_step="Completed",
                steps_completed=total,
                total_steps=total,
                percentage=100.0,
            )
            job.output = JobOutput(files=list(context.processed_files), summary=summary)
            job.touch()
            outcome = JobStatus.COMPLETED

            await self._persist(job, context)
            log.info(
                "job_completed",
                successful=summary.successful_files,
                failed=summary.failed_files,
                duration=round(context.elapsed(), 3),
            )

            if self.config.auto_cleanup_completed:
                self._schedule_expiry(job.id)

        except JobCancelledError:
            outcome = JobStatus.CANCELLED
            if not context.cancelled:
                # The pipeline stopped on its own; record it the same way
                self._active.pop(job.id, None)
                job.status = JobStatus.CANCELLED
                job.touch()
                self._cancelled += 1
                await self._persist(job, context)
            log.info("job_cancelled_at_file_boundary", processed_files=len(context.processed_files))

        except Exception as exc:
            if context.cancelled:
                outcome = JobStatus.CANCELLED
                log.warning("job_error_after_cancel", error=str(exc))
                return

            error = exc if isinstance(exc, JobRunnerError) else ExecutionError(
                str(exc) or type(exc).__name__
            )
            job.status = JobStatus.FAILED
            job.error = error.to_job_error()
            job.touch()
            outcome = JobStatus.FAILED
            log.error("job_failed", error=str(exc), exc_info=True)
            await self._persist(job, context)

        finally:
            if self._active.get(job.id) is context:
                del self._active[job.id]
            if self._draining.get(job.id) is context:
                del self._draining[job.id]
            self._record_outcome(outcome, context.elapsed())
            self.process_queue()

    async def _persist(self, job: Job, context: Optional[ExecutionContext] = None) -> bool:
        """Best-effort snapshot; a storage failure is logged, never raised."""
        if not self._persists(job):
            return False
        try:
            await self.store.save_job_snapshot(job, context.processed_files if context else [])
        except JobRunnerError as exc:
            logger.error("job_snapshot_failed", job_id=job.id, status=job.status.value, error=exc.message)
            return False
        return True

    def _persists(self, job: Job) -> bool:
        return self.store.enabled and job.options.resumable

    def _busy_reason(self, job_id: str) -> Optional[str]:
        if job_id in self._active:
            return f"Job {job_id} is already running"
        if job_id in self._draining:
            return f"Job {job_id} is still stopping"
        if any(job.id == job_id for job in self._queue):
            return f"Job {job_id} is already queued"
        return None

    def _record_outcome(self, outcome: Optional[JobStatus], elapsed: float) -> None:
        if outcome is None:
            return
        self._processed += 1
        self._total_processing_time += elapsed
        if outcome == JobStatus.COMPLETED:
            self._completed += 1
        elif outcome == JobStatus.FAILED:
            self._failed += 1

    def _schedule_expiry(self, job_id: str) -> None:
        async def expire() -> None:
            await asyncio.sleep(self.config.auto_cleanup_delay)
            self._expiry_tasks.pop(job_id, None)
            logger.info("job_expired", job_id=job_id)
            await self.delete_job(job_id)

        self._expiry_tasks[job_id] = asyncio.create_task(expire())
