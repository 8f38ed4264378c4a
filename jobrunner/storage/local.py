"""Local filesystem storage operations for job snapshots."""

from __future__ import annotations

import os
import re
import uuid
from pathlib import Path
from typing import Optional

from jobrunner.errors import JobValidationError

SNAPSHOT_SUFFIX = ".snapshot"
PROBE_NAME = ".probe"

_JOB_ID_RE = re.compile(r"[A-Za-z0-9_\-]+")


def storage_root(storage_dir: str) -> Path:
    d = Path(storage_dir)
    d.mkdir(parents=True, exist_ok=True)
    return d


def snapshot_path(storage_dir: str, job_id: str) -> Path:
    """Return the snapshot path for a job (raises on ids that could escape the root)."""
    if not _JOB_ID_RE.fullmatch(job_id):
        raise JobValidationError(f"Invalid job id: {job_id!r}", step="snapshot-path")
    return Path(storage_dir) / f"{job_id}{SNAPSHOT_SUFFIX}"


def job_id_from_path(path: Path) -> str:
    return path.name[: -len(SNAPSHOT_SUFFIX)]


def list_snapshot_files(storage_dir: str) -> list[tuple[Path, float]]:
    """All snapshot files with their mtimes, newest modification first."""
    d = Path(storage_dir)
    if not d.exists():
        return []
    entries: list[tuple[Path, float]] = []
    for path in d.glob(f"*{SNAPSHOT_SUFFIX}"):
        try:
            entries.append((path, path.stat().st_mtime))
        except FileNotFoundError:
            # Removed between glob and stat
            continue
    entries.sort(key=lambda e: e[1], reverse=True)
    return entries


# ---------------------------------------------------------------------------
# File operations
# ---------------------------------------------------------------------------

def write_atomic(path: Path, text: str) -> int:
    """Write text via a temp file + rename so readers never see a torn snapshot.

    Returns the number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    data = text.encode("utf-8")
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)
    return len(data)


def read_text(path: Path) -> Optional[str]:
    """Read a snapshot file; returns None if it does not exist."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def remove(path: Path) -> bool:
    """Delete a file; a missing file is not an error. Returns True if removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def probe_writable(storage_dir: str) -> None:
    """Write then delete a probe file (raises OSError if not writable)."""
    probe = Path(storage_dir) / PROBE_NAME
    probe.write_text("probe", encoding="utf-8")
    probe.unlink()
