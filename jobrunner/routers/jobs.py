"""Router: /v1/jobs. Submit, inspect, resume, cancel and delete jobs."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from jobrunner.schemas.common import JobStatus
from jobrunner.schemas.jobs import (
    CreateJobRequest,
    CreateJobResponse,
    ExecutionStats,
    Job,
    JobActionResponse,
    JobFilter,
    JobListResponse,
    ResumeJobRequest,
)
from jobrunner.schemas.snapshot import PersistedJobInfo
from jobrunner.storage.checkpoint_store import NOT_FOUND
from jobrunner.workers.scheduler import JobScheduler

router = APIRouter(prefix="/v1", tags=["jobs"])


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/jobs", response_model=CreateJobResponse, status_code=202)
async def create_job(req: CreateJobRequest, scheduler: JobScheduler = Depends(get_scheduler)):
    """Submit a batch of files for processing.

    Returns immediately; poll GET /v1/jobs/{job_id} for progress.
    """
    job_id = await scheduler.create_job(req.input, req.config, req.options)
    job = await scheduler.get_job_status(job_id)
    return CreateJobResponse(job_id=job_id, status=job.status if job else JobStatus.PENDING)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    status: Optional[list[JobStatus]] = Query(default=None, description="Filter by status"),
    limit: Optional[int] = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """List active, queued and persisted jobs, newest first."""
    jobs = await scheduler.list_jobs(JobFilter(status=status, limit=limit, offset=offset))
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/jobs/stats", response_model=ExecutionStats)
async def execution_stats(scheduler: JobScheduler = Depends(get_scheduler)):
    return scheduler.get_execution_stats()


@router.get("/jobs/persisted", response_model=list[PersistedJobInfo])
async def list_persisted_jobs(scheduler: JobScheduler = Depends(get_scheduler)):
    """Stored snapshots with their checkpoint and resumability."""
    return await scheduler.list_persisted_jobs()


@router.get("/jobs/{job_id}", response_model=Job)
async def get_job_status(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)):
    job = await scheduler.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/jobs/{job_id}/resume", response_model=JobActionResponse)
async def resume_job(
    job_id: str,
    req: Optional[ResumeJobRequest] = None,
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """Resume a failed, paused, crashed or (with force) cancelled job."""
    req = req or ResumeJobRequest()
    result = await scheduler.try_resume_job(job_id, req.config, force=req.force)
    if not result.success:
        detail: dict = {"message": result.error, "code": result.error_code}
        if result.missing_files:
            detail["missing_files"] = result.missing_files
        if result.warnings:
            # Integrity warnings must reach the caller, never be dropped
            detail["warnings"] = result.warnings
        status_code = 404 if result.error_code == NOT_FOUND else 409
        raise HTTPException(status_code=status_code, detail=detail)

    return JobActionResponse(
        job_id=job_id,
        success=True,
        message=f"Job resumed with {len(result.remaining_files or [])} remaining file(s)",
    )


@router.post("/jobs/{job_id}/cancel", response_model=JobActionResponse)
async def cancel_job(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)):
    """Cancel a running or queued job.

    A running job stops at the next file boundary.
    """
    if not await scheduler.cancel_job(job_id):
        raise HTTPException(status_code=409, detail="Job is not running or queued")
    return JobActionResponse(job_id=job_id, success=True, message="Job cancelled")


@router.delete("/jobs/{job_id}", response_model=JobActionResponse)
async def delete_job(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)):
    if not await scheduler.delete_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return JobActionResponse(job_id=job_id, success=True, message="Job deleted")
