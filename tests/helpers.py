"""Test doubles and polling helpers shared by the async tests."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import Callable, Optional

from jobrunner.schemas.common import ProgressEventType
from jobrunner.schemas.jobs import (
    JobError,
    JobProgress,
    ProcessedFile,
    ProcessingSummary,
    ProgressEvent,
)


class ControlledPipeline:
    """Fake pipeline whose files finish only when the test releases them.

    With ``auto=True`` files complete immediately. Paths listed in
    ``fail_paths`` are reported as failed; ``raise_error`` is raised after
    the gate of the first file opens.
    """

    def __init__(self, auto: bool = False, fail_paths=(), raise_error: Optional[Exception] = None):
        self.auto = auto
        self.fail_paths = set(fail_paths)
        self.raise_error = raise_error
        self.gates: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.calls: list[list[str]] = []
        self.started: list[str] = []
        # paths parked at their gate, after the file_started callback returned
        self.waiting: list[str] = []
        self.finished: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def release(self, *paths: str) -> None:
        for path in paths:
            self.gates[path].set()

    async def process_files(
        self, files, output_dir, job_id, progress_callback, *, cancellation, timeout=None
    ) -> ProcessingSummary:
        self.calls.append(list(files))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        summary = ProcessingSummary(total_files=len(files))
        try:
            for index, path in enumerate(files):
                cancellation.raise_if_cancelled()
                self.started.append(path)
                await progress_callback(
                    ProgressEvent(
                        type=ProgressEventType.FILE_STARTED,
                        job_id=job_id,
                        progress=JobProgress(
                            current_step=f"Processing {path}",
                            steps_completed=index,
                            total_steps=len(files),
                            percentage=index * 100 / len(files),
                            current_file=path,
                        ),
                    )
                )
                if not self.auto:
                    self.waiting.append(path)
                    await self.gates[path].wait()
                if self.raise_error is not None:
                    raise self.raise_error

                ok = path not in self.fail_paths
                result = ProcessedFile(
                    input_path=path,
                    output_path=f"{path}.out" if ok else None,
                    success=ok,
                    error=None if ok else JobError(code="FILE_TRANSFORM_FAILED", message="boom", step="transform"),
                )
                if ok:
                    summary.successful_files += 1
                else:
                    summary.failed_files += 1
                self.finished.append(path)
                await progress_callback(
                    ProgressEvent(
                        type=ProgressEventType.FILE_COMPLETED if ok else ProgressEventType.FILE_FAILED,
                        job_id=job_id,
                        progress=JobProgress(
                            current_step=f"Processed {path}",
                            steps_completed=index + 1,
                            total_steps=len(files),
                            percentage=(index + 1) * 100 / len(files),
                        ),
                        file=result,
                    )
                )
        finally:
            self.in_flight -= 1
        return summary


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


async def wait_processed(scheduler, count: int, timeout: float = 3.0) -> None:
    """Wait until ``count`` executions have finished and written their final snapshot."""
    await wait_until(lambda: scheduler.get_execution_stats().total_jobs_processed >= count, timeout)


async def crash(scheduler) -> None:
    """Stop every scheduler task abruptly, skipping all shutdown bookkeeping."""
    scheduler._queue.clear()
    tasks = [scheduler._tick_task, scheduler.store._sweep_task]
    tasks += [context.task for context in scheduler._active.values()]
    tasks += [context.task for context in scheduler._draining.values()]
    tasks = [task for task in tasks if task is not None]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    scheduler._tick_task = None
    scheduler.store._sweep_task = None
