"""Processing pipeline contract and the reference file pipeline.

The scheduler only depends on ``ProcessingPipeline``. ``FilePipeline`` is a
deterministic implementation that pushes each file through a list of text
stages; AI-assisted stages plug in behind the same contract.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import structlog

from jobrunner.schemas.common import ProgressEventType
from jobrunner.schemas.jobs import (
    FileStatistics,
    JobError,
    JobProgress,
    ProcessedFile,
    ProcessingSummary,
    ProgressEvent,
)
from jobrunner.services.stages import DEFAULT_STAGES, Stage, resolve_stages
from jobrunner.workers.context import CancellationToken

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]


class ProcessingPipeline(Protocol):
    """What the scheduler needs from a pipeline.

    Implementations must report every file through ``progress_callback`` as a
    ``file_completed`` or ``file_failed`` event carrying a ``ProcessedFile``,
    and must check ``cancellation`` between files (never mid-file).
    ``timeout`` is a per-file hint; the scheduler does not enforce it.
    """

    async def process_files(
        self,
        files: list[str],
        output_dir: Optional[str],
        job_id: str,
        progress_callback: ProgressCallback,
        *,
        cancellation: CancellationToken,
        timeout: Optional[float] = None,
    ) -> ProcessingSummary:
        ...


class FilePipeline:
    """Reads each file, applies the stages in order and writes the result."""

    def __init__(
        self,
        stages: Sequence[tuple[str, Stage]],
        *,
        output_suffix: str = ".out",
        encoding: str = "utf-8",
    ):
        self.stages = list(stages)
        self.output_suffix = output_suffix
        self.encoding = encoding

    async def process_files(
        self,
        files: list[str],
        output_dir: Optional[str],
        job_id: str,
        progress_callback: ProgressCallback,
        *,
        cancellation: CancellationToken,
        timeout: Optional[float] = None,
    ) -> ProcessingSummary:
        """Process ``files`` sequentially.

        A failing file is recorded and processing moves on. Cancellation is
        checked before each file and raises JobCancelledError.

        Returns:
            ProcessingSummary for the files attempted.
        """
        log = logger.bind(job_id=job_id)
        summary = ProcessingSummary(total_files=len(files), cost=0.0)
        started = time.monotonic()
        total = len(files)

        for index, path in enumerate(files):
            cancellation.raise_if_cancelled()

            await progress_callback(
                ProgressEvent(
                    type=ProgressEventType.FILE_STARTED,
                    job_id=job_id,
                    progress=_progress(index, total, path, f"Processing file {index + 1}/{total}"),
                )
            )

            result = await self._process_one(path, output_dir, timeout)
            if result.success:
                summary.successful_files += 1
                event_type = ProgressEventType.FILE_COMPLETED
            else:
                summary.failed_files += 1
                event_type = ProgressEventType.FILE_FAILED
                log.warning("file_failed", input_path=path, error=result.error.message)

            await progress_callback(
                ProgressEvent(
                    type=event_type,
                    job_id=job_id,
                    progress=_progress(index + 1, total, None, f"Processed {index + 1}/{total} files"),
                    file=result,
                )
            )

        summary.total_processing_time = time.monotonic() - started
        log.info(
            "pipeline_finished",
            successful=summary.successful_files,
            failed=summary.failed_files,
        )
        return summary

    async def _process_one(
        self, path: str, output_dir: Optional[str], timeout: Optional[float]
    ) -> ProcessedFile:
        started = time.monotonic()
        error: Optional[JobError] = None
        output_path: Optional[str] = None
        stats = FileStatistics()

        try:
            # The worker thread is not interrupted on timeout; only the wait is
            output_path, stats = await asyncio.wait_for(
                asyncio.to_thread(self._transform_file, path, output_dir), timeout=timeout
            )
        except asyncio.TimeoutError:
            error = JobError(
                code="FILE_TIMEOUT",
                message=f"Processing {path} exceeded {timeout}s",
                step="transform",
                recoverable=True,
                suggestions=["Increase the job timeout"],
            )
        except FileNotFoundError:
            error = JobError(
                code="FILE_NOT_FOUND",
                message=f"File not found: {path}",
                step="file-input",
                suggestions=["Check if the file path is correct"],
            )
        except (OSError, ValueError) as exc:
            error = JobError(
                code="FILE_TRANSFORM_FAILED",
                message=f"{type(exc).__name__}: {exc}",
                step="transform",
            )

        return ProcessedFile(
            input_path=path,
            output_path=output_path,
            success=error is None,
            error=error,
            statistics=stats,
            processing_time=time.monotonic() - started,
        )

    def _transform_file(self, path: str, output_dir: Optional[str]) -> tuple[str, FileStatistics]:
        source = Path(path)
        original = source.read_text(encoding=self.encoding)
        text = original
        for _name, stage in self.stages:
            text = stage(text)

        target = self._output_path(source, output_dir)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding=self.encoding)

        return str(target), FileStatistics(
            input_size=len(original.encode(self.encoding)),
            output_size=len(text.encode(self.encoding)),
            stages_applied=[name for name, _stage in self.stages],
        )

    def _output_path(self, source: Path, output_dir: Optional[str]) -> Path:
        if output_dir:
            return Path(output_dir) / source.name
        return source.with_name(f"{source.stem}{self.output_suffix}{source.suffix}")


def _progress(done: int, total: int, current_file: Optional[str], step: str) -> JobProgress:
    return JobProgress(
        current_step=step,
        steps_completed=done,
        total_steps=total,
        percentage=round(done * 100 / total, 2) if total else 100.0,
        current_file=current_file,
    )


def build_pipeline(config: dict[str, Any]) -> FilePipeline:
    """Pipeline factory: interpret the job's opaque config snapshot."""
    names = config.get("stages") or DEFAULT_STAGES
    return FilePipeline(
        resolve_stages(names),
        output_suffix=config.get("output_suffix", ".out"),
        encoding=config.get("encoding", "utf-8"),
    )
