from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from conftest import WEBHOOK_SECRET, FakeIngestion, pr_event, push_event, sign, webhook_body
from fastapi.testclient import TestClient

from repo_docgen.api import create_app
from repo_docgen.config import IntakeSettings, Settings
from repo_docgen.pipeline.routines import JobRoutines
from repo_docgen.runtime import PipelineRuntime, open_runtime

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("HTTP Triggers"),
]


@pytest.fixture()
def runtime(db_path: Path, routines: JobRoutines) -> Iterator[PipelineRuntime]:
    settings = Settings(db_path=db_path, intake=IntakeSettings(webhook_secret=WEBHOOK_SECRET))
    with open_runtime(settings, routines=routines) as pipeline_runtime:
        yield pipeline_runtime


@pytest.fixture()
def client(runtime: PipelineRuntime) -> TestClient:
    return TestClient(create_app(runtime), raise_server_exceptions=False)


def _post_webhook(
    client: TestClient,
    event: str,
    payload: dict,
    *,
    delivery_id: str = "d-1",
    signature: str | None = None,
):
    body = webhook_body(payload)
    headers = {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery_id,
        "X-Hub-Signature-256": signature or sign(body),
        "Content-Type": "application/json",
    }
    return client.post("/webhooks/github", content=body, headers=headers)


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["service"] == "repo-docgen"
    assert "ts" in body


def test_signed_pull_request_webhook_creates_job(
    client: TestClient,
    runtime: PipelineRuntime,
) -> None:
    response = _post_webhook(client, "pull_request", pr_event(action="opened", number=123))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Webhook processed and job created"
    assert body["delivery_id"] == "d-1"
    job = runtime.repository.get_job(body["job_id"])
    assert job is not None
    assert job.pr_number == 123
    assert len(runtime.channel) == 1


def test_push_to_feature_branch_is_acknowledged_without_job(
    client: TestClient,
    runtime: PipelineRuntime,
) -> None:
    response = _post_webhook(client, "push", push_event(ref="refs/heads/feature-x"))

    assert response.status_code == 200
    assert response.json()["job_id"] is None
    assert response.json()["message"] == "Webhook received but no job created"
    assert runtime.repository.list_jobs() == []


def test_redelivered_webhook_reports_existing_job(client: TestClient) -> None:
    first = _post_webhook(client, "pull_request", pr_event(), delivery_id="d-9")
    second = _post_webhook(client, "pull_request", pr_event(), delivery_id="d-9")

    assert second.status_code == 200
    assert second.json()["message"] == "Webhook already processed"
    assert second.json()["job_id"] == first.json()["job_id"]


def test_webhook_with_wrong_signature_is_unauthorized(
    client: TestClient,
    runtime: PipelineRuntime,
) -> None:
    response = _post_webhook(
        client,
        "pull_request",
        pr_event(),
        signature="sha256=" + "0" * 64,
    )

    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Unauthorized"}
    assert runtime.repository.list_jobs() == []


def test_webhook_with_invalid_payload_is_bad_request(client: TestClient) -> None:
    payload = pr_event()
    del payload["repository"]

    response = _post_webhook(client, "pull_request", payload)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "repository" in response.json()["error"]


def test_manual_job_defaults_to_initial_ingestion(
    client: TestClient,
    runtime: PipelineRuntime,
) -> None:
    response = client.post("/jobs", json={"repo_id": "42", "repo_full_name": "acme/widgets"})

    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Job created"
    job = client.get(f"/jobs/{body['job_id']}")
    assert job.status_code == 200
    assert job.json()["job_type"] == "initial-ingestion"
    assert job.json()["status"] == "queued"
    assert runtime.channel.next_entry() is not None


def test_manual_job_validation_errors(client: TestClient) -> None:
    missing_repo = client.post("/jobs", json={"repo_id": "42"})
    bad_name = client.post("/jobs", json={"repo_id": "42", "repo_full_name": "widgets"})
    missing_pr = client.post(
        "/jobs",
        json={"repo_id": "42", "repo_full_name": "acme/widgets", "job_type": "pr-analysis"},
    )

    assert missing_repo.status_code == 422
    assert bad_name.status_code == 422
    assert missing_pr.status_code == 400
    assert missing_pr.json()["error"] == "PR number is required for pr-analysis jobs."


def test_filtered_manual_push_returns_no_job(client: TestClient) -> None:
    response = client.post(
        "/jobs",
        json={
            "repo_id": "42",
            "repo_full_name": "acme/widgets",
            "job_type": "push-analysis",
            "ref": "refs/heads/feature-x",
        },
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "No job created", "job_id": None}


def test_job_lookup_and_result(
    client: TestClient,
    runtime: PipelineRuntime,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.snapshot_files = {"main.py": "def main():\n    pass\n"}
    job_id = client.post(
        "/jobs",
        json={"repo_id": "42", "repo_full_name": "acme/widgets"},
    ).json()["job_id"]

    pending = client.get(f"/jobs/{job_id}/result")
    assert pending.status_code == 404
    assert pending.json()["detail"] == "Job has no result (status=queued)"

    runtime.publisher.drain(runtime.channel)
    runtime.build_worker(worker_id="api-test").run_once()

    job = client.get(f"/jobs/{job_id}").json()
    result = client.get(f"/jobs/{job_id}/result")
    assert job["status"] == "completed"
    assert result.status_code == 200
    assert result.json()["result_id"] == job["result_id"]
    assert result.json()["analysis"]["analyzed_files"] == 1


def test_unknown_job_is_not_found(client: TestClient) -> None:
    assert client.get("/jobs/missing").status_code == 404
    assert client.get("/jobs/missing/result").status_code == 404


def test_unexpected_errors_return_generic_500(
    client: TestClient,
    runtime: PipelineRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _explode(job_id: str):
        raise RuntimeError("database exploded")

    monkeypatch.setattr(runtime.repository, "get_job", _explode)

    response = client.get("/jobs/anything")

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Internal processing error"
    assert "database exploded" not in response.text
    assert len(body["error_id"]) == 8
