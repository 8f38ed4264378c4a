"""Shared fixtures: temp storage, scheduler settings and source files."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from jobrunner.config import PersistenceSettings, SchedulerSettings


@pytest.fixture
def storage_dir(tmp_path: Path) -> str:
    return str(tmp_path / "jobs")


@pytest.fixture
def persistence(storage_dir: str) -> PersistenceSettings:
    return PersistenceSettings(storage_dir=storage_dir, auto_save_interval=60.0)


@pytest.fixture
def scheduler_settings(persistence: PersistenceSettings) -> SchedulerSettings:
    return SchedulerSettings(
        max_concurrent_jobs=2,
        tick_interval=0.05,
        progress_save_interval=1000.0,
        persistence=persistence,
    )


@pytest.fixture
def make_files(tmp_path: Path) -> Callable[..., list[str]]:
    """Create source files with messy whitespace and return their paths."""

    def _make(count: int, prefix: str = "src") -> list[str]:
        src = tmp_path / "input"
        src.mkdir(exist_ok=True)
        paths = []
        for i in range(count):
            path = src / f"{prefix}{i}.js"
            path.write_bytes(f"var a{i} = {i};   \r\nvar b = a{i};\t".encode("utf-8"))
            paths.append(str(path))
        return paths

    return _make
