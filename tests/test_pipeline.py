"""Tests for the reference file pipeline and its text stages."""

from __future__ import annotations

from pathlib import Path

import pytest

from jobrunner.errors import JobCancelledError, JobValidationError
from jobrunner.schemas.common import ProgressEventType
from jobrunner.services.pipeline import FilePipeline, build_pipeline
from jobrunner.services.stages import (
    ensure_final_newline,
    expand_tabs,
    normalize_newlines,
    resolve_stages,
    strip_trailing_whitespace,
)
from jobrunner.workers.context import CancellationToken


class _Recorder:
    def __init__(self, cancel_after: int | None = None, token: CancellationToken | None = None):
        self.events = []
        self._cancel_after = cancel_after
        self._token = token

    async def __call__(self, event):
        self.events.append(event)
        finished = [e for e in self.events if e.file is not None]
        if self._cancel_after is not None and len(finished) == self._cancel_after:
            self._token.cancel()


class TestStages:
    def test_normalize_newlines(self):
        assert normalize_newlines("a\r\nb\rc\n") == "a\nb\nc\n"

    def test_strip_trailing_whitespace(self):
        assert strip_trailing_whitespace("a  \nb\t\n") == "a\nb\n"

    def test_expand_tabs(self):
        assert expand_tabs("\tx") == "    x"

    def test_ensure_final_newline(self):
        assert ensure_final_newline("x") == "x\n"
        assert ensure_final_newline("x\n") == "x\n"
        assert ensure_final_newline("") == ""

    def test_resolve_keeps_order(self):
        names = [name for name, _ in resolve_stages(["expand_tabs", "normalize_newlines"])]
        assert names == ["expand_tabs", "normalize_newlines"]

    def test_unknown_stage_is_rejected(self):
        with pytest.raises(JobValidationError) as exc_info:
            build_pipeline({"stages": ["normalize_newlines", "minify"]})
        assert "minify" in exc_info.value.message


class TestFilePipeline:
    @pytest.mark.asyncio
    async def test_transforms_files_into_output_dir(self, make_files, tmp_path):
        files = make_files(2)
        out_dir = tmp_path / "out"
        recorder = _Recorder()

        summary = await build_pipeline({}).process_files(
            files, str(out_dir), "job_1", recorder, cancellation=CancellationToken()
        )

        assert summary.total_files == 2
        assert summary.successful_files == 2
        assert summary.failed_files == 0
        assert (out_dir / "src1.js").read_text(encoding="utf-8") == "var a1 = 1;\nvar b = a1;\n"

        types = [e.type for e in recorder.events]
        assert types == [
            ProgressEventType.FILE_STARTED,
            ProgressEventType.FILE_COMPLETED,
            ProgressEventType.FILE_STARTED,
            ProgressEventType.FILE_COMPLETED,
        ]
        result = recorder.events[1].file
        assert result.input_path == files[0]
        assert result.statistics.stages_applied == [
            "normalize_newlines",
            "strip_trailing_whitespace",
            "ensure_final_newline",
        ]
        assert result.statistics.output_size < result.statistics.input_size
        assert recorder.events[-1].progress.percentage == 100.0

    @pytest.mark.asyncio
    async def test_output_next_to_source_without_output_dir(self, make_files):
        [path] = make_files(1)
        pipeline = build_pipeline({"output_suffix": ".clean"})

        await pipeline.process_files([path], None, "job_1", _Recorder(), cancellation=CancellationToken())

        assert Path(path).with_name("src0.clean.js").exists()

    @pytest.mark.asyncio
    async def test_missing_file_is_recorded_and_processing_continues(self, make_files, tmp_path):
        files = [str(tmp_path / "gone.js")] + make_files(1)
        recorder = _Recorder()

        summary = await build_pipeline({}).process_files(
            files, str(tmp_path / "out"), "job_1", recorder, cancellation=CancellationToken()
        )

        assert summary.failed_files == 1
        assert summary.successful_files == 1
        failed = recorder.events[1]
        assert failed.type == ProgressEventType.FILE_FAILED
        assert failed.file.error.code == "FILE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_cancellation_stops_at_file_boundary(self, make_files, tmp_path):
        files = make_files(3)
        token = CancellationToken()
        recorder = _Recorder(cancel_after=1, token=token)

        with pytest.raises(JobCancelledError):
            await FilePipeline(resolve_stages(["normalize_newlines"])).process_files(
                files, str(tmp_path / "out"), "job_1", recorder, cancellation=token
            )

        finished = [e.file.input_path for e in recorder.events if e.file is not None]
        assert finished == files[:1]
        assert not (tmp_path / "out" / "src1.js").exists()
