from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from repo_docgen.main import repo_docgen
from repo_docgen.pipeline.models import JobStatus
from repo_docgen.pipeline.repository import PipelineRepository

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Operator CLI"),
]

JOB_ID_PATTERN = re.compile(r"job_id=(\S+)")


def _submit(runner: CliRunner, db_path: Path, *args: str):
    return runner.invoke(
        repo_docgen,
        [
            "jobs",
            "submit",
            "--db-path",
            str(db_path),
            "--repo-id",
            "42",
            "--repo",
            "acme/widgets",
            *args,
        ],
    )


def _job_id(output: str) -> str:
    match = JOB_ID_PATTERN.search(output)
    assert match is not None, output
    return match.group(1)


def test_jobs_submit_publishes_and_reports_status(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    result = _submit(runner, db_path)

    assert result.exit_code == 0, result.output
    assert "type=initial-ingestion" in result.output
    assert " published message=" in result.output
    assert "Status: dispatched" in result.output

    repository = PipelineRepository(db_path)
    try:
        job = repository.get_job(_job_id(result.output))
    finally:
        repository.close()
    assert job is not None
    assert job.status is JobStatus.DISPATCHED


def test_jobs_submit_filtered_push_creates_nothing(tmp_path: Path) -> None:
    result = _submit(
        CliRunner(),
        tmp_path / "cli.db",
        "--job-type",
        "push-analysis",
        "--ref",
        "refs/heads/feature-x",
        "--changed-file",
        "a.ts",
    )

    assert result.exit_code == 0, result.output
    assert result.output.strip() == "No job created: trigger filtered out."


def test_jobs_submit_rejects_missing_pr_number(tmp_path: Path) -> None:
    result = _submit(CliRunner(), tmp_path / "cli.db", "--job-type", "pr-analysis")

    assert result.exit_code != 0
    assert "PR number is required" in result.output


def test_jobs_list_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _job_id(_submit(runner, db_path, "--no-publish").output)

    listed = runner.invoke(repo_docgen, ["jobs", "list", "--db-path", str(db_path)])
    inspected = runner.invoke(
        repo_docgen,
        ["jobs", "inspect", "--db-path", str(db_path), "--job-id", job_id, "--result"],
    )
    missing = runner.invoke(
        repo_docgen,
        ["jobs", "inspect", "--db-path", str(db_path), "--job-id", "nope"],
    )

    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1" in listed.output
    assert f"{job_id} type=initial-ingestion status=queued" in listed.output
    assert inspected.exit_code == 0, inspected.output
    assert f"Job: {job_id}" in inspected.output
    assert "Status: queued" in inspected.output
    assert "Relay entries: 1" in inspected.output
    assert "state=pending" in inspected.output
    assert "Events: 1" in inspected.output
    assert "Result document: -" in inspected.output
    assert missing.output.strip() == "Job not found: nope"


def test_relay_list_publish_and_sweep(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    _submit(runner, db_path, "--no-publish")

    pending = runner.invoke(
        repo_docgen,
        ["relay", "list", "--db-path", str(db_path), "--state", "pending"],
    )
    published = runner.invoke(repo_docgen, ["relay", "publish", "--db-path", str(db_path)])
    after = runner.invoke(
        repo_docgen,
        ["relay", "list", "--db-path", str(db_path), "--state", "published"],
    )
    sweep = runner.invoke(repo_docgen, ["relay", "sweep", "--db-path", str(db_path), "--once"])

    assert "Relay entries: 1" in pending.output
    assert published.exit_code == 0, published.output
    assert "Publish attempts: 1" in published.output
    assert " published message=" in published.output
    assert "Relay entries: 1" in after.output
    assert "state=published" in after.output
    assert sweep.exit_code == 0, sweep.output
    assert "Sweep summary: scanned=0 retried=0 succeeded=0 permanently_failed=0" in sweep.output


def test_worker_run_on_empty_topic_reports_idle_summary(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        repo_docgen,
        ["worker", "run", "--db-path", str(tmp_path / "cli.db"), "--max-idle-polls", "1"],
    )

    assert result.exit_code == 0, result.output
    assert (
        "Worker summary: processed=0 succeeded=0 duplicates=0 failed=0 "
        "retried=0 dead_lettered=0 deferred=0 idle_polls=1"
    ) in result.output


def test_invalid_settings_surface_as_click_errors(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("REPO_DOCGEN_RELAY_MAX_RETRIES", "0")

    result = CliRunner().invoke(
        repo_docgen,
        ["relay", "list", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code != 0
    assert "REPO_DOCGEN_RELAY_MAX_RETRIES must be > 0." in result.output
