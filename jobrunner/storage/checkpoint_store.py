"""Checkpoint store: durable, integrity-checked job snapshots.

One ``<job_id>.snapshot`` file per job under the configured storage root,
fronted by an in-memory cache that is the source of truth while a job is
active. A single sweep task re-persists running jobs and applies the
retention policy.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import gzip
import hashlib
import json
import os
import secrets
import time
import zlib
from datetime import timedelta
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from jobrunner.config import PersistenceSettings, settings
from jobrunner.errors import (
    CheckpointValidationError,
    IntegrityError,
    JobRunnerError,
    JobValidationError,
    MissingFilesError,
    StorageError,
)
from jobrunner.schemas.common import JobStatus
from jobrunner.schemas.jobs import Job, ProcessedFile, utc_now
from jobrunner.schemas.snapshot import (
    SCHEMA_VERSION,
    Checkpoint,
    CompressionInfo,
    IntegrityInfo,
    JobSnapshot,
    PersistedJobInfo,
    RestoreResult,
    ResumeResult,
    SnapshotEnvelope,
    SnapshotMetadata,
)
from jobrunner.storage import local

logger = structlog.get_logger(__name__)

CORRUPTION_WARNING = "Job data may be corrupted"
NOT_FOUND = "JOB_NOT_FOUND"


# ---------------------------------------------------------------------------
# Canonical serialization + checksum
# ---------------------------------------------------------------------------

def canonical_payload(job: Job, processed_files: list[ProcessedFile]) -> str:
    """Deterministic JSON of {job, processed_files}, the input to the checksum."""
    return json.dumps(
        {
            "job": job.model_dump(mode="json"),
            "processed_files": [f.model_dump(mode="json") for f in processed_files],
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def compute_checksum(job: Job, processed_files: list[ProcessedFile]) -> str:
    return hashlib.sha256(canonical_payload(job, processed_files).encode("utf-8")).hexdigest()


def generate_resume_token(job_id: str) -> str:
    return f"{job_id}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def validate_partition(files: list[str], checkpoint: Checkpoint) -> None:
    """Raise unless completed/failed/pending partition ``files`` exactly."""
    parts = checkpoint.completed_files + checkpoint.failed_files + checkpoint.pending_files
    if len(parts) != len(set(parts)):
        raise CheckpointValidationError(
            "Checkpoint file sets overlap", step="checkpoint-validate"
        )
    if set(parts) != set(files):
        missing = sorted(set(files) - set(parts))
        extra = sorted(set(parts) - set(files))
        raise CheckpointValidationError(
            f"Checkpoint does not cover job input (missing={missing}, unexpected={extra})",
            step="checkpoint-validate",
        )


def _missing_paths(paths: list[str]) -> list[str]:
    return [p for p in paths if not os.path.exists(p)]


class CheckpointStore:
    """Keyed-by-job-id snapshot storage with integrity verification.

    Saves for the same job id are serialised by a per-job lock, so the
    ``last_saved_at`` of successive checkpoints strictly increases. There is
    no ordering across different jobs.
    """

    def __init__(self, config: Optional[PersistenceSettings] = None):
        self.config = config or settings.scheduler.persistence
        self._cache: dict[str, JobSnapshot] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # job_id -> monotonic time of the last durable write, for running jobs only
        self._autosave: dict[str, float] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._last_retention = 0.0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the storage root, apply retention and verify writability.

        Any failure raises StorageError; callers must treat it as fatal.
        """
        if not self.enabled:
            return

        storage_dir = self.config.storage_dir
        try:
            await asyncio.to_thread(local.storage_root, storage_dir)
            await self._cleanup_old_jobs(raise_errors=True)
            await asyncio.to_thread(local.probe_writable, storage_dir)
        except OSError as exc:
            raise StorageError(
                f"Storage directory is not writable: {storage_dir} ({exc})",
                step="job-persistence-init",
                suggestions=["Check the directory permissions", "Choose another storage_dir"],
            ) from exc

        self._last_retention = time.monotonic()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("checkpoint_store_initialized", storage_dir=storage_dir)

    async def cleanup(self) -> None:
        """Stop the sweep, drop the cache and re-run retention."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        self._autosave.clear()
        self._cache.clear()

        if self.enabled:
            await self._cleanup_old_jobs()

    # -----------------------------------------------------------------------
    # Save / load
    # -----------------------------------------------------------------------

    async def save_job_snapshot(
        self,
        job: Job,
        processed_files: Optional[list[ProcessedFile]] = None,
        checkpoint_override: Optional[dict[str, Any]] = None,
    ) -> Optional[JobSnapshot]:
        """Persist a snapshot of ``job`` and its per-file results.

        Args:
            job: Job to snapshot. It is copied; later mutation does not leak in.
            processed_files: Per-file results so far; partitioned against
                ``job.input.files`` to build the checkpoint.
            checkpoint_override: Checkpoint fields that replace derived values.

        Returns:
            The cached snapshot, or None when persistence is disabled.

        Raises:
            CheckpointValidationError: the resulting partition is invalid.
            StorageError: the durable write failed.
        """
        if not self.enabled:
            return None

        processed = [f.model_copy(deep=True) for f in (processed_files or [])]
        job_copy = job.model_copy(deep=True)

        async with self._lock_for(job.id):
            try:
                metadata = self._create_metadata(job_copy, processed)
            except ValueError as exc:
                raise StorageError(
                    f"Job {job.id} cannot be serialised: {exc}", step="job-snapshot-save"
                ) from exc
            checkpoint = self._build_checkpoint(job_copy, processed, checkpoint_override)
            snapshot = JobSnapshot(
                job=job_copy,
                processed_files=processed,
                checkpoint=checkpoint,
                metadata=metadata,
            )
            self._cache[job.id] = snapshot

            try:
                await self._write_snapshot(snapshot)
            except (OSError, ValueError) as exc:
                raise StorageError(
                    f"Failed to save job snapshot {job.id}: {exc}", step="job-snapshot-save"
                ) from exc

            if job_copy.status == JobStatus.RUNNING:
                self._autosave[job.id] = time.monotonic()
            else:
                self._autosave.pop(job.id, None)

        logger.debug(
            "snapshot_saved",
            job_id=job.id,
            status=job_copy.status.value,
            completed=len(checkpoint.completed_files),
            failed=len(checkpoint.failed_files),
            pending=len(checkpoint.pending_files),
        )
        return snapshot

    async def load_job_snapshot(self, job_id: str) -> RestoreResult:
        """Load a snapshot from the cache or disk, verifying its checksum."""
        if not self.enabled:
            return RestoreResult(
                success=False, error="Job persistence is disabled", error_code=StorageError.code
            )

        cached = self._cache.get(job_id)
        if cached is not None:
            return self._restored(cached)

        try:
            snapshot = await self._read_snapshot(job_id)
        except IntegrityError as exc:
            logger.warning("snapshot_integrity_failed", job_id=job_id, error=exc.message)
            return RestoreResult(
                success=False,
                error=f"Snapshot integrity check failed: {exc.message}",
                error_code=exc.code,
                warnings=[CORRUPTION_WARNING],
            )
        except JobRunnerError as exc:
            return RestoreResult(success=False, error=exc.message, error_code=exc.code)

        if snapshot is None:
            return RestoreResult(
                success=False, error=f"Job snapshot not found: {job_id}", error_code=NOT_FOUND
            )

        problem = self._integrity_problem(snapshot)
        if problem is not None:
            logger.warning("snapshot_integrity_failed", job_id=job_id, error=problem)
            return RestoreResult(
                success=False,
                error=f"Snapshot integrity check failed: {problem}",
                error_code=IntegrityError.code,
                warnings=[CORRUPTION_WARNING],
            )

        self._cache[job_id] = snapshot
        return self._restored(snapshot)

    async def resume_job(
        self,
        job_id: str,
        config: Optional[dict[str, Any]] = None,
        *,
        force: bool = False,
    ) -> ResumeResult:
        """Validate that a stored job can continue and return it as running.

        Completed jobs are never resumable. Cancelled jobs are only resumable
        with ``force=True``. Every pending file must still exist. Nothing is
        written, so a failed resume leaves the stored snapshot untouched.
        """
        restored = await self.load_job_snapshot(job_id)
        if not restored.success:
            return ResumeResult(
                success=False,
                error=restored.error or "Failed to load job snapshot",
                error_code=restored.error_code,
                warnings=restored.warnings,
            )

        job, checkpoint = restored.job, restored.checkpoint
        problem = await self._resumption_problem(job, checkpoint, force=force)
        if problem is not None:
            logger.info("job_resume_rejected", job_id=job_id, reason=problem.message)
            return ResumeResult(
                success=False,
                error=problem.message,
                error_code=problem.code,
                missing_files=getattr(problem, "missing_files", []),
            )

        job.status = JobStatus.RUNNING
        if config is not None:
            job.config = dict(config)
        job.touch()

        return ResumeResult(
            success=True,
            job=job,
            remaining_files=list(checkpoint.pending_files),
            processed_files=restored.processed_files,
            checkpoint=checkpoint,
        )

    async def list_persisted_jobs(self) -> list[PersistedJobInfo]:
        """Summarise every snapshot on disk, including whether it can be resumed."""
        if not self.enabled:
            return []

        try:
            entries = await asyncio.to_thread(local.list_snapshot_files, self.config.storage_dir)
        except OSError as exc:
            logger.warning("persisted_jobs_list_failed", error=str(exc))
            return []

        infos: list[PersistedJobInfo] = []
        for path, _mtime in entries:
            try:
                text = await asyncio.to_thread(local.read_text, path)
                if text is None:
                    continue
                snapshot = self._decode(text)
            except (IntegrityError, OSError) as exc:
                logger.warning("persisted_job_unreadable", file=str(path), error=str(exc))
                continue

            integrity_ok = self._integrity_problem(snapshot) is None
            can_resume = integrity_ok and (
                await self._resumption_problem(snapshot.job, snapshot.checkpoint) is None
            )
            infos.append(
                PersistedJobInfo(
                    id=local.job_id_from_path(path),
                    status=snapshot.job.status,
                    created_at=snapshot.job.created_at,
                    updated_at=snapshot.job.updated_at,
                    progress=snapshot.checkpoint.total_progress,
                    file_count=len(snapshot.job.input.files),
                    checkpoint=snapshot.checkpoint,
                    integrity_ok=integrity_ok,
                    can_resume=can_resume,
                )
            )
        return infos

    async def delete_job_snapshot(self, job_id: str) -> bool:
        """Forget a job. Returns True if a cached or stored snapshot existed."""
        if not self.enabled:
            return False

        async with self._lock_for(job_id):
            was_cached = self._cache.pop(job_id, None) is not None
            self._autosave.pop(job_id, None)
            try:
                removed = await asyncio.to_thread(
                    local.remove, local.snapshot_path(self.config.storage_dir, job_id)
                )
            except OSError as exc:
                raise StorageError(
                    f"Failed to delete job snapshot {job_id}: {exc}", step="job-snapshot-delete"
                ) from exc

        lock = self._locks.get(job_id)
        if lock is not None and not lock.locked():
            del self._locks[job_id]

        if removed or was_cached:
            logger.info("snapshot_deleted", job_id=job_id)
        return removed or was_cached

    async def flush(self, job_id: Optional[str] = None, *, older_than: float = 0.0) -> int:
        """Re-persist cached snapshots of running jobs now.

        Jobs whose cached status has left ``running`` are dropped from
        auto-save. Failures are logged, never raised. Returns the number of
        snapshots written.
        """
        job_ids = [job_id] if job_id is not None else list(self._autosave)
        written = 0
        for jid in job_ids:
            last_write = self._autosave.get(jid)
            if last_write is None:
                continue
            snapshot = self._cache.get(jid)
            if snapshot is None or snapshot.job.status != JobStatus.RUNNING:
                self._autosave.pop(jid, None)
                continue
            if time.monotonic() - last_write < older_than:
                continue

            try:
                async with self._lock_for(jid):
                    if self._cache.get(jid) is not snapshot:
                        # A newer save landed while we waited for the lock
                        continue
                    await self._write_snapshot(snapshot)
                    self._autosave[jid] = time.monotonic()
                written += 1
            except (OSError, ValueError) as exc:
                logger.warning("auto_save_failed", job_id=jid, error=str(exc))
        return written

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    def _restored(self, snapshot: JobSnapshot) -> RestoreResult:
        copy = snapshot.model_copy(deep=True)
        return RestoreResult(
            success=True,
            job=copy.job,
            processed_files=copy.processed_files,
            checkpoint=copy.checkpoint,
        )

    def _build_checkpoint(
        self,
        job: Job,
        processed: list[ProcessedFile],
        override: Optional[dict[str, Any]],
    ) -> Checkpoint:
        files = job.input.files
        known = set(files)

        # Last result per path wins (a retried file may appear twice)
        outcome: dict[str, bool] = {}
        for result in processed:
            if result.input_path not in known:
                logger.warning(
                    "checkpoint_unknown_file", job_id=job.id, input_path=result.input_path
                )
                continue
            outcome[result.input_path] = result.success

        completed = [f for f in files if outcome.get(f) is True]
        failed = [f for f in files if outcome.get(f) is False]
        pending = [f for f in files if f not in outcome]
        done = len(completed) + len(failed)

        saved_at = utc_now()
        previous = self._cache.get(job.id)
        if previous is not None and saved_at <= previous.checkpoint.last_saved_at:
            saved_at = previous.checkpoint.last_saved_at + timedelta(microseconds=1)

        fields: dict[str, Any] = {
            "current_file_index": done,
            "completed_files": completed,
            "failed_files": failed,
            "pending_files": pending,
            "resume_token": generate_resume_token(job.id),
            "last_saved_at": saved_at,
            "total_progress": round(done * 100 / len(files)) if files else 0,
        }
        if override:
            fields.update(override)

        try:
            checkpoint = Checkpoint(**fields)
        except ValidationError as exc:
            raise CheckpointValidationError(
                f"Invalid checkpoint override: {exc}", step="checkpoint-validate"
            ) from exc
        validate_partition(files, checkpoint)
        return checkpoint

    def _create_metadata(self, job: Job, processed: list[ProcessedFile]) -> SnapshotMetadata:
        payload = canonical_payload(job, processed).encode("utf-8")
        return SnapshotMetadata(
            schema_version=SCHEMA_VERSION,
            created_at=utc_now(),
            file_count=len(job.input.files),
            data_size=len(payload),
            integrity=IntegrityInfo(checksum=hashlib.sha256(payload).hexdigest()),
        )

    def _encode(self, snapshot: JobSnapshot) -> str:
        snapshot.metadata.compression = None
        if not self.config.compression_enabled:
            envelope = SnapshotEnvelope(
                schema_version=SCHEMA_VERSION, compressed=False, snapshot=snapshot
            )
            return envelope.model_dump_json(indent=2)

        raw = snapshot.model_dump_json().encode("utf-8")
        packed = gzip.compress(raw)
        info = CompressionInfo(original_size=len(raw), compressed_size=len(packed))
        snapshot.metadata.compression = info
        envelope = SnapshotEnvelope(
            schema_version=SCHEMA_VERSION,
            compressed=True,
            compression=info,
            data=base64.b64encode(packed).decode("ascii"),
        )
        return envelope.model_dump_json()

    def _decode(self, text: str) -> JobSnapshot:
        """Parse an envelope, failing loudly on anything unexpected."""
        try:
            envelope = SnapshotEnvelope.model_validate_json(text)
        except ValidationError as exc:
            raise IntegrityError(f"Unreadable snapshot envelope ({exc.error_count()} errors)") from exc

        if envelope.schema_version != SCHEMA_VERSION:
            raise IntegrityError(f"Unsupported snapshot schema version {envelope.schema_version}")

        if envelope.compressed:
            if not envelope.data:
                raise IntegrityError("Compressed snapshot has no data")
            try:
                raw = gzip.decompress(base64.b64decode(envelope.data, validate=True))
            except (binascii.Error, OSError, EOFError, zlib.error) as exc:
                raise IntegrityError(f"Cannot decompress snapshot: {exc}") from exc
            try:
                snapshot = JobSnapshot.model_validate_json(raw)
            except ValidationError as exc:
                raise IntegrityError(f"Unreadable snapshot ({exc.error_count()} errors)") from exc
            snapshot.metadata.compression = envelope.compression
        else:
            if envelope.snapshot is None:
                raise IntegrityError("Snapshot envelope is empty")
            snapshot = envelope.snapshot

        if snapshot.metadata.schema_version != SCHEMA_VERSION:
            raise IntegrityError(
                f"Unsupported snapshot schema version {snapshot.metadata.schema_version}"
            )
        return snapshot

    async def _write_snapshot(self, snapshot: JobSnapshot) -> None:
        path = local.snapshot_path(self.config.storage_dir, snapshot.job.id)
        text = self._encode(snapshot)
        await asyncio.to_thread(local.write_atomic, path, text)

    async def _read_snapshot(self, job_id: str) -> Optional[JobSnapshot]:
        path = local.snapshot_path(self.config.storage_dir, job_id)
        try:
            text = await asyncio.to_thread(local.read_text, path)
        except OSError as exc:
            raise StorageError(f"Failed to read job snapshot {job_id}: {exc}", step="job-snapshot-load") from exc
        if text is None:
            return None
        return self._decode(text)

    def _integrity_problem(self, snapshot: JobSnapshot) -> Optional[str]:
        try:
            checksum = compute_checksum(snapshot.job, snapshot.processed_files)
        except ValueError:
            return "Snapshot contains text that is not valid UTF-8"
        if checksum != snapshot.metadata.integrity.checksum:
            return "Checksum mismatch"
        try:
            validate_partition(snapshot.job.input.files, snapshot.checkpoint)
        except CheckpointValidationError as exc:
            return exc.message
        return None

    async def _resumption_problem(
        self, job: Job, checkpoint: Checkpoint, *, force: bool = False
    ) -> Optional[JobRunnerError]:
        if job.status == JobStatus.COMPLETED:
            return JobValidationError("Job is already completed", step="job-resume")
        if job.status == JobStatus.CANCELLED and not force:
            return JobValidationError(
                "Job was cancelled (use force to resume anyway)", step="job-resume"
            )
        if not checkpoint.pending_files:
            return JobValidationError("No pending files to process", step="job-resume")

        missing = await asyncio.to_thread(_missing_paths, checkpoint.pending_files)
        if missing:
            return MissingFilesError(missing)
        return None

    # -----------------------------------------------------------------------
    # Auto-save sweep + retention
    # -----------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        interval = self.config.auto_save_interval
        while True:
            await asyncio.sleep(interval)
            await self.flush(older_than=interval)
            if time.monotonic() - self._last_retention >= self.config.retention_sweep_interval:
                self._last_retention = time.monotonic()
                await self._cleanup_old_jobs()

    async def _cleanup_old_jobs(self, raise_errors: bool = False) -> int:
        protected = {
            jid for jid, snap in self._cache.items() if snap.job.status == JobStatus.RUNNING
        }
        try:
            removed = await asyncio.to_thread(self._apply_retention, protected)
        except OSError as exc:
            if raise_errors:
                raise
            logger.warning("retention_cleanup_failed", error=str(exc))
            return 0

        for jid in removed:
            self._cache.pop(jid, None)
            self._autosave.pop(jid, None)
        if removed:
            logger.info("retention_cleanup", removed=len(removed))
        return len(removed)

    def _apply_retention(self, protected: set[str]) -> list[str]:
        """Delete snapshots beyond max_stored_jobs and, separately, past retention_days."""
        entries = local.list_snapshot_files(self.config.storage_dir)
        cutoff = None
        if self.config.retention_days > 0:
            cutoff = time.time() - self.config.retention_days * 86400

        removed: list[str] = []
        for rank, (path, mtime) in enumerate(entries):
            job_id = local.job_id_from_path(path)
            if job_id in protected:
                continue
            over_limit = rank >= self.config.max_stored_jobs
            expired = cutoff is not None and mtime < cutoff
            if (over_limit or expired) and local.remove(path):
                removed.append(job_id)
        return removed
