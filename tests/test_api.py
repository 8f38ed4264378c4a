"""Tests for the /v1/jobs HTTP API."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from jobrunner.main import create_app
from jobrunner.workers.scheduler import JobScheduler


@pytest.fixture
def client(scheduler_settings):
    app = create_app(JobScheduler(scheduler_settings))
    with TestClient(app) as test_client:
        yield test_client


def _wait_until_processed(client: TestClient, count: int, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        stats = client.get("/v1/jobs/stats").json()
        if stats["total_jobs_processed"] >= count:
            return stats
        time.sleep(0.02)
    raise AssertionError("jobs did not finish in time")


def _submit(client: TestClient, files: list[str], output_dir: str) -> str:
    resp = client.post(
        "/v1/jobs",
        json={"input": {"files": files, "options": {"output_dir": output_dir}}},
    )
    assert resp.status_code == 202
    return resp.json()["job_id"]


class TestJobsAPI:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["active_jobs"] == 0

    def test_submit_and_complete(self, client, make_files, tmp_path):
        files = make_files(2)
        out_dir = tmp_path / "out"

        job_id = _submit(client, files, str(out_dir))
        stats = _wait_until_processed(client, 1)
        assert stats["completed_jobs"] == 1

        job = client.get(f"/v1/jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["output"]["summary"]["successful_files"] == 2
        assert (out_dir / "src0.js").exists()

        listed = client.get("/v1/jobs", params={"status": ["completed"]}).json()
        assert [j["id"] for j in listed["jobs"]] == [job_id]
        assert listed["total"] == 1

        persisted = client.get("/v1/jobs/persisted").json()
        assert [p["id"] for p in persisted] == [job_id]
        assert persisted[0]["can_resume"] is False

    def test_invalid_submission_is_rejected(self, client):
        resp = client.post("/v1/jobs", json={"input": {}})
        assert resp.status_code == 422

    def test_unknown_job_is_404(self, client):
        assert client.get("/v1/jobs/job_unknown").status_code == 404

    def test_resume_unknown_job_is_404(self, client):
        resp = client.post("/v1/jobs/job_unknown/resume")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "JOB_NOT_FOUND"

    def test_resume_completed_job_is_409(self, client, make_files, tmp_path):
        job_id = _submit(client, make_files(1), str(tmp_path / "out"))
        _wait_until_processed(client, 1)

        resp = client.post(f"/v1/jobs/{job_id}/resume", json={"force": True})

        assert resp.status_code == 409
        assert "already completed" in resp.json()["detail"]["message"]

    def test_cancel_unknown_job_is_409(self, client):
        assert client.post("/v1/jobs/job_unknown/cancel").status_code == 409

    def test_delete_job(self, client, make_files, tmp_path):
        job_id = _submit(client, make_files(1), str(tmp_path / "out"))
        _wait_until_processed(client, 1)

        resp = client.delete(f"/v1/jobs/{job_id}")
        assert resp.status_code == 200
        assert resp.json()["success"] is True

        assert client.get(f"/v1/jobs/{job_id}").status_code == 404
        assert client.delete(f"/v1/jobs/{job_id}").status_code == 404
