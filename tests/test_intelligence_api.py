"""Tests for the intelligence API endpoints with a mocked runner."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.core.intelligence_errors import JobNotFoundError, JobValidationError
from app.core.schemas_intelligence_jobs import (
    AnalysisJob,
    CancelResult,
    EntityTimeline,
    JobStatus,
    RetryConfig,
)
from app.main import app
from app.services.intelligence_runner import get_intelligence_runner


def make_job(**overrides):
    fields = {"entity_type": "company", "entity_id": "c1", "entity_name": "Acme"}
    fields.update(overrides)
    return AnalysisJob(**fields)


@pytest.fixture
def runner():
    mock_runner = MagicMock()
    mock_runner.submit = AsyncMock()
    mock_runner.submit_with_retry = AsyncMock()
    mock_runner.submit_batch = AsyncMock()
    mock_runner.submit_batch_with_retry = AsyncMock()
    app.dependency_overrides[get_intelligence_runner] = lambda: mock_runner
    yield mock_runner
    app.dependency_overrides.clear()


@pytest.fixture
def client(runner):
    return TestClient(app)


def test_submit_job(client, runner):
    runner.submit.return_value = make_job(version=2)

    response = client.post(
        "/v1/intelligence/jobs",
        json={"entity_type": "company", "entity_id": "c1", "entity_name": "Acme"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["job"]["status"] == "pending"
    assert body["job"]["version"] == 2
    assert body["job"]["is_rerun"] is True
    runner.submit_with_retry.assert_not_called()


def test_submit_with_retry_params(client, runner):
    runner.submit_with_retry.return_value = make_job(retry_config=RetryConfig(max_retries=5))

    response = client.post(
        "/v1/intelligence/jobs",
        json={"entity_type": "deal", "entity_id": "d1", "entity_name": "Renewal", "max_retries": 5},
    )

    assert response.status_code == 200
    assert runner.submit_with_retry.call_args.kwargs["max_retries"] == 5
    runner.submit.assert_not_called()


def test_submit_invalid_entity_type(client, runner):
    response = client.post(
        "/v1/intelligence/jobs",
        json={"entity_type": "lead", "entity_id": "1", "entity_name": "X"},
    )

    assert response.status_code == 400
    runner.submit.assert_not_called()


def test_batch_too_large(client, runner):
    runner.submit_batch.side_effect = JobValidationError("Maximum batch size is 50 jobs")

    response = client.post("/v1/intelligence/jobs/batch", json={"jobs": [{}] * 51})

    assert response.status_code == 400
    assert response.json()["detail"] == "Maximum batch size is 50 jobs"


def test_batch_submit(client, runner):
    runner.submit_batch.return_value = [make_job(), make_job(entity_id="c2", version=3)]

    response = client.post(
        "/v1/intelligence/jobs/batch",
        json={"jobs": [{"entity_type": "company", "entity_id": "c1", "entity_name": "Acme"}] * 2},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert body["reruns"] == 1
    assert body["retry_config"] is None


def test_batch_rerun_defaults(client, runner):
    runner.submit_batch_with_retry.return_value = [make_job(retry_config=RetryConfig())]

    response = client.post(
        "/v1/intelligence/jobs/batch-rerun",
        json={"jobs": [{"entity_type": "company", "entity_id": "c1", "entity_name": "Acme"}]},
    )

    assert response.status_code == 200
    kwargs = runner.submit_batch_with_retry.call_args.kwargs
    assert kwargs["max_retries"] == 3
    assert kwargs["initial_delay_ms"] == 30_000
    assert response.json()["retry_config"]["max_retries"] == 3


def test_get_job_with_previous_summary(client, runner):
    previous = make_job(status=JobStatus.complete, result={"healthScore": 6})
    job = make_job(version=2, previous_job_id=previous.id)
    runner.get_job.return_value = job
    runner.get_previous_job.return_value = previous

    response = client.get(f"/v1/intelligence/jobs/{job.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["job"]["id"] == job.id
    assert body["previous_job_summary"]["id"] == previous.id
    assert body["previous_job_summary"]["result"] == {"healthScore": 6}


def test_get_job_not_found(client, runner):
    runner.get_job.side_effect = JobNotFoundError("missing")

    response = client.get("/v1/intelligence/jobs/missing")

    assert response.status_code == 404


def test_cancel_running_job(client, runner):
    job = make_job(status=JobStatus.cancelled)
    runner.cancel.return_value = CancelResult(job=job, cancelled=True)

    response = client.delete(f"/v1/intelligence/jobs/{job.id}")

    assert response.status_code == 200
    assert response.json()["job"]["status"] == "cancelled"


def test_cancel_finished_job_conflicts(client, runner):
    job = make_job(status=JobStatus.complete)
    runner.cancel.return_value = CancelResult(job=job, cancelled=False, reason="Job already complete")

    response = client.delete(f"/v1/intelligence/jobs/{job.id}")

    assert response.status_code == 409
    assert response.json()["detail"] == "Job already complete"


def test_list_jobs_filters(client, runner):
    runner.list_jobs.return_value = [make_job()]

    response = client.get("/v1/intelligence/jobs", params={"entity_type": "company", "status": "pending"})

    assert response.status_code == 200
    assert response.json()["count"] == 1
    kwargs = runner.list_jobs.call_args.kwargs
    assert kwargs["entity_type"].value == "company"
    assert kwargs["status"].value == "pending"


def test_entity_timeline(client, runner):
    runner.get_entity_timeline.return_value = EntityTimeline(entity_type="deal", entity_id="d1")

    response = client.get("/v1/intelligence/entity/deal/d1")

    assert response.status_code == 200
    assert response.json()["has_history"] is False


def test_entity_timeline_bad_type(client, runner):
    runner.get_entity_timeline.side_effect = JobValidationError("Invalid entity type: lead")

    response = client.get("/v1/intelligence/entity/lead/1")

    assert response.status_code == 400
