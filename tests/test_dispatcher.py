from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from conftest import WEBHOOK_SECRET, FakeIngestion, pr_event, push_event, sign, webhook_body
from sqlmodel import Session

from repo_docgen.collaborators.base import ChangedFile, ChangeKind, ChangeSet
from repo_docgen.pipeline.bus import SqliteMessageBus
from repo_docgen.pipeline.errors import JobBusyError, JobNotFoundError, ProcessingError
from repo_docgen.pipeline.intake import EventIntake
from repo_docgen.pipeline.models import (
    BusMessageStatus,
    InitialIngestionPayload,
    JobStatus,
    RepoRef,
    payload_to_descriptor,
)
from repo_docgen.pipeline.publisher import RelayChannel, RelayPublisher
from repo_docgen.pipeline.repository import PipelineRepository
from repo_docgen.pipeline.routines import JobRoutines
from repo_docgen.pipeline.worker import (
    DispatcherWorker,
    DispatchOutcome,
    WorkerDispatcher,
    WorkerRunSummary,
)
from repo_docgen.storage.sqlmodel_models import Job

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Worker Dispatcher"),
]

REPO = RepoRef(repo_id="42", full_name="acme/widgets")
TOPIC = "analyze-repo"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


class Pipeline:
    """Intake, relay and worker wired over one database."""

    def __init__(
        self,
        repository: PipelineRepository,
        bus: SqliteMessageBus,
        routines: JobRoutines,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.channel = RelayChannel()
        self.intake = EventIntake(
            repository=repository,
            topic=TOPIC,
            channel=self.channel,
            webhook_secret=WEBHOOK_SECRET,
        )
        self.publisher = RelayPublisher(repository=repository, bus=bus)
        self.dispatcher = WorkerDispatcher(
            repository=repository,
            routines=routines,
            worker_id="worker-test",
        )
        self.worker = DispatcherWorker(
            bus=bus,
            dispatcher=self.dispatcher,
            topic=TOPIC,
            poll_interval_seconds=0.01,
        )

    def deliver(self, event: str, payload: dict, delivery_id: str = "d-1") -> str | None:
        body = webhook_body(payload)
        result = self.intake.handle_webhook(
            event=event,
            delivery_id=delivery_id,
            signature=sign(body),
            body=body,
        )
        self.publisher.drain(self.channel)
        return result.job_id

    def status_trail(self, job_id: str) -> list[str]:
        details = self.repository.get_job_details(job_id)
        assert details is not None
        return [event.status_to.value for event in details.events if event.status_to is not None]


@pytest.fixture()
def pipeline(
    repository: PipelineRepository,
    bus: SqliteMessageBus,
    routines: JobRoutines,
) -> Pipeline:
    return Pipeline(repository, bus, routines)


def test_pr_opened_runs_to_completion(pipeline: Pipeline, fake_ingestion: FakeIngestion) -> None:
    fake_ingestion.change_sets = {
        123: ChangeSet(
            files=[
                ChangedFile(
                    path="src/a.ts",
                    change_kind=ChangeKind.MODIFIED,
                    additions=3,
                    content="export const a = 1;\n",
                ),
                ChangedFile(
                    path="src/b.py",
                    change_kind=ChangeKind.ADDED,
                    additions=2,
                    content="b = 2\n",
                ),
            ],
        ),
    }

    job_id = pipeline.deliver("pull_request", pr_event(action="opened", number=123))
    assert job_id is not None
    summary = pipeline.worker.run_loop()

    assert (summary.processed, summary.succeeded, summary.failed) == (1, 1, 0)
    assert pipeline.status_trail(job_id) == ["queued", "dispatched", "in-progress", "completed"]
    result = pipeline.repository.get_result(job_id)
    assert result is not None
    assert len(result.analysis["files"]) == 2
    assert list(result.analysis["documentation"]) == ["pr-summary"]
    assert pipeline.bus.list_messages(TOPIC, status=BusMessageStatus.ACKED) != []


def test_push_to_main_completes_push_analysis(
    pipeline: Pipeline,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.remote_files = {"a.ts": "export const a = 1;\n", "b.md": "# b\n"}

    job_id = pipeline.deliver("push", push_event(ref="refs/heads/main"))
    assert job_id is not None
    pipeline.worker.run_loop()

    job = pipeline.repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.changed_files == ("a.ts", "b.md")
    result = pipeline.repository.get_result(job_id)
    assert result is not None
    assert result.analysis["changed_files"] == ["a.ts", "b.md"]


def test_push_to_feature_branch_never_reaches_the_bus(pipeline: Pipeline) -> None:
    job_id = pipeline.deliver("push", push_event(ref="refs/heads/feature-x"))

    assert job_id is None
    assert pipeline.repository.list_jobs() == []
    assert pipeline.bus.list_messages(TOPIC) == []


def test_initial_ingestion_records_total_and_analyzed_counts(
    pipeline: Pipeline,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.snapshot_files = {f"src/m{index}.ts": "let x = 1;\n" for index in range(75)}

    job_id = pipeline.intake.submit(InitialIngestionPayload(repo=REPO))
    pipeline.publisher.drain(pipeline.channel)
    pipeline.worker.run_loop()

    result = pipeline.repository.get_result(job_id)
    assert result is not None
    assert result.analysis["total_files"] == 75
    assert result.analysis["analyzed_files"] == 50


def test_duplicate_delivery_produces_a_single_result(
    pipeline: Pipeline,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.snapshot_files = {"main.py": "print('hi')\n"}
    payload = InitialIngestionPayload(repo=REPO)
    job_id = pipeline.intake.submit(payload)
    pipeline.publisher.drain(pipeline.channel)
    pipeline.bus.publish(TOPIC, payload_to_descriptor(job_id, payload))

    summary = pipeline.worker.run_loop()

    assert (summary.processed, summary.succeeded, summary.duplicates) == (2, 1, 1)
    assert pipeline.bus.list_messages(TOPIC, status=BusMessageStatus.PENDING) == []
    details = pipeline.repository.get_job_details(job_id)
    assert details is not None
    assert [event.event_type for event in details.events].count("completed") == 1


def test_routine_failure_fails_job_then_redelivery_is_a_duplicate(
    pipeline: Pipeline,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.fail_clone = RuntimeError("git clone failed with exit code 128")
    job_id = pipeline.intake.submit(InitialIngestionPayload(repo=REPO))
    pipeline.publisher.drain(pipeline.channel)

    summary = pipeline.worker.run_loop()

    assert (summary.processed, summary.failed, summary.retried, summary.duplicates) == (
        2,
        1,
        1,
        1,
    )
    job = pipeline.repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error == "git clone failed with exit code 128"
    assert job.processing_time_ms is not None
    assert pipeline.repository.get_result(job_id) is None
    assert pipeline.status_trail(job_id) == ["queued", "dispatched", "in-progress", "failed"]


def test_unknown_job_is_dead_lettered(pipeline: Pipeline) -> None:
    pipeline.bus.ensure_topic(TOPIC)
    message_id = pipeline.bus.publish(
        TOPIC,
        payload_to_descriptor("no-such-job", InitialIngestionPayload(repo=REPO)),
    )

    summary = pipeline.worker.run_once()

    assert (summary.processed, summary.dead_lettered) == (1, 1)
    message = pipeline.bus.get_message(message_id)
    assert message is not None
    assert message.status is BusMessageStatus.DEAD
    assert message.last_error == "Job not found: no-such-job"


def test_malformed_descriptor_is_dead_lettered(pipeline: Pipeline) -> None:
    pipeline.bus.ensure_topic(TOPIC)
    message_id = pipeline.bus.publish(TOPIC, {"job_id": "j-1", "job_type": "mystery"})

    summary = pipeline.worker.run_once()

    assert summary.dead_lettered == 1
    message = pipeline.bus.get_message(message_id)
    assert message is not None
    assert message.status is BusMessageStatus.DEAD


def test_job_in_progress_elsewhere_is_deferred_until_stale(pipeline: Pipeline) -> None:
    job_id = pipeline.intake.submit(InitialIngestionPayload(repo=REPO))
    pipeline.publisher.drain(pipeline.channel)
    claim = pipeline.repository.claim_for_processing(
        job_id=job_id,
        worker_id="other-worker",
        stale_after=timedelta(minutes=30),
    )
    assert claim.job is not None

    summary = pipeline.worker.run_once()

    assert (summary.processed, summary.deferred, summary.retried, summary.dead_lettered) == (
        1,
        1,
        0,
        0,
    )
    (message,) = pipeline.bus.list_messages(TOPIC, status=BusMessageStatus.PENDING)
    assert message.delivery_attempts == 0
    assert message.last_error == f"Job {job_id} is already in progress."
    assert pipeline.worker.run_once().idle_polls == 1
    job = pipeline.repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.IN_PROGRESS


def test_dispatcher_reports_when_busy_job_turns_stale(
    repository: PipelineRepository,
    routines: JobRoutines,
) -> None:
    payload = InitialIngestionPayload(repo=REPO)
    job, _ = repository.create_job(payload, topic=TOPIC)
    claim = repository.claim_for_processing(
        job_id=job.job_id,
        worker_id="other-worker",
        stale_after=timedelta(minutes=30),
    )
    assert claim.job is not None
    dispatcher = WorkerDispatcher(
        repository=repository,
        routines=routines,
        worker_id="w-1",
        stale_after=timedelta(minutes=10),
    )

    with pytest.raises(JobBusyError) as excinfo:
        dispatcher.handle(payload_to_descriptor(job.job_id, payload))

    assert excinfo.value.retryable is True
    assert excinfo.value.retry_at == claim.job.updated_at + timedelta(minutes=10)


def test_crashed_worker_job_is_recovered_with_default_bus_settings(
    repository: PipelineRepository,
    routines: JobRoutines,
    fake_ingestion: FakeIngestion,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    clock = FakeClock(datetime(2026, 10, 19, 12, 0, tzinfo=UTC))
    for module in (
        "repo_docgen.pipeline.bus",
        "repo_docgen.pipeline.repository",
        "repo_docgen.pipeline.worker",
    ):
        monkeypatch.setattr(f"{module}.utc_now", clock)
    fake_ingestion.snapshot_files = {"main.py": "x = 1\n"}
    default_bus = SqliteMessageBus(repository.db_path)
    try:
        pipeline = Pipeline(repository, default_bus, routines)
        job_id = pipeline.intake.submit(InitialIngestionPayload(repo=REPO))
        pipeline.publisher.drain(pipeline.channel)

        # Worker A leases and claims the job, then disappears without settling the message.
        leased = default_bus.pull(TOPIC, worker_id="crashed-worker")
        assert leased is not None
        pipeline.repository.claim_for_processing(
            job_id=job_id,
            worker_id="crashed-worker",
            stale_after=timedelta(minutes=30),
        )

        aggregate = WorkerRunSummary()
        for _ in range(200):
            clock.advance(seconds=30)
            aggregate.add(pipeline.worker.run_once())
            job = pipeline.repository.get_job(job_id)
            assert job is not None
            if job.status is JobStatus.COMPLETED:
                break

        assert job.status is JobStatus.COMPLETED
        assert aggregate.deferred >= 1
        assert aggregate.dead_lettered == 0
        message = default_bus.get_message(leased.message_id)
        assert message is not None
        assert message.status is BusMessageStatus.ACKED
        details = pipeline.repository.get_job_details(job_id)
        assert details is not None
        assert "reclaimed_stale" in [event.event_type for event in details.events]
    finally:
        default_bus.close()


def test_stale_in_progress_job_is_taken_over(
    pipeline: Pipeline,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.snapshot_files = {"main.py": "x = 1\n"}
    job_id = pipeline.intake.submit(InitialIngestionPayload(repo=REPO))
    pipeline.publisher.drain(pipeline.channel)
    pipeline.repository.claim_for_processing(
        job_id=job_id,
        worker_id="crashed-worker",
        stale_after=timedelta(minutes=30),
    )
    with Session(pipeline.repository.engine) as session:
        row = session.get(Job, job_id)
        assert row is not None
        row.updated_at = row.updated_at - timedelta(hours=2)
        session.add(row)
        session.commit()

    summary = pipeline.worker.run_once()

    assert summary.succeeded == 1
    job = pipeline.repository.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED


def test_dispatcher_handle_reports_outcomes(
    repository: PipelineRepository,
    routines: JobRoutines,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.snapshot_files = {"main.py": "x = 1\n"}
    payload = InitialIngestionPayload(repo=REPO)
    job, _ = repository.create_job(payload, topic=TOPIC)
    dispatcher = WorkerDispatcher(repository=repository, routines=routines, worker_id="w-1")
    descriptor = payload_to_descriptor(job.job_id, payload)

    assert dispatcher.handle(descriptor) is DispatchOutcome.COMPLETED
    assert dispatcher.handle(descriptor) is DispatchOutcome.DUPLICATE
    with pytest.raises(JobNotFoundError):
        dispatcher.handle({**descriptor, "job_id": "missing"})
    with pytest.raises(ProcessingError) as excinfo:
        dispatcher.handle({"job_id": "x"})
    assert excinfo.value.retryable is False


def test_descriptor_type_mismatch_fails_job(
    repository: PipelineRepository,
    routines: JobRoutines,
) -> None:
    payload = InitialIngestionPayload(repo=REPO)
    job, _ = repository.create_job(payload, topic=TOPIC)
    dispatcher = WorkerDispatcher(repository=repository, routines=routines, worker_id="w-1")
    descriptor = {
        **payload_to_descriptor(job.job_id, payload),
        "job_type": "delta-analysis",
        "base_sha": "a",
        "head_sha": "b",
    }

    with pytest.raises(ProcessingError, match="does not match") as excinfo:
        dispatcher.handle(descriptor)

    assert excinfo.value.retryable is False
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.FAILED


def test_run_loop_honours_max_messages(
    pipeline: Pipeline,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.snapshot_files = {"main.py": "x = 1\n"}
    for _ in range(3):
        pipeline.intake.submit(InitialIngestionPayload(repo=REPO))
    pipeline.publisher.drain(pipeline.channel)

    summary = pipeline.worker.run_loop(max_messages=2)

    assert summary.processed == 2
    assert len(pipeline.repository.list_jobs(status=JobStatus.COMPLETED)) == 2
    assert len(pipeline.repository.list_jobs(status=JobStatus.DISPATCHED)) == 1
