"""Controllers for repo-docgen CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import rich_click as click
import uvicorn
from apscheduler.schedulers.blocking import BlockingScheduler

from repo_docgen.api import create_app
from repo_docgen.config import Settings
from repo_docgen.pipeline.errors import ValidationError
from repo_docgen.pipeline.intake import build_manual_payload
from repo_docgen.pipeline.models import JobStatus, JobType, RelayEntryView
from repo_docgen.pipeline.publisher import PublishOutcome
from repo_docgen.pipeline.repository import PipelineRepository
from repo_docgen.runtime import BackgroundServices, open_runtime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobsSubmitCommand:
    """CLI input for a manual job trigger."""

    db_path: Path | None
    job_type: str
    repo_id: str
    repo_full_name: str
    pr_number: int | None
    pr_action: str | None
    ref: str | None
    changed_files: tuple[str, ...]
    base_sha: str | None
    head_sha: str | None
    publish: bool = True


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    job_type: str | None
    limit: int


@dataclass(slots=True)
class JobsInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    show_result: bool = False


@dataclass(slots=True)
class RelayListCommand:
    db_path: Path | None
    state: str | None
    limit: int


@dataclass(slots=True)
class RelayPublishCommand:
    """CLI input for publishing one entry, or every never-attempted entry."""

    db_path: Path | None
    entry_id: str | None


@dataclass(slots=True)
class RelaySweepCommand:
    db_path: Path | None
    loop: bool


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_messages: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the HTTP server with embedded background services."""

    db_path: Path | None
    host: str | None
    port: int | None
    embedded_worker: bool | None


class PipelineCliController:
    """Coordinates intake, relay, worker and inspection CLI operations."""

    def submit_job(self, command: JobsSubmitCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        try:
            payload = build_manual_payload(
                JobType(command.job_type),
                repo_id=command.repo_id,
                repo_full_name=command.repo_full_name,
                pr_number=command.pr_number,
                pr_action=command.pr_action,
                ref=command.ref,
                changed_files=command.changed_files,
                base_sha=command.base_sha,
                head_sha=command.head_sha,
            )
        except ValidationError as error:
            raise click.ClickException(str(error)) from error

        with open_runtime(settings) as runtime:
            try:
                job_id = runtime.intake.submit(payload, metadata={"trigger": "cli"})
            except ValidationError as error:
                raise click.ClickException(str(error)) from error
            if job_id is None:
                return ["No job created: trigger filtered out."]
            lines = [f"Job queued: job_id={job_id} type={payload.job_type.value}"]
            if command.publish:
                outcomes = runtime.publisher.drain(runtime.channel)
                lines.extend(_render_publish_outcome(item) for item in outcomes)
            job = runtime.repository.get_job(job_id)
        if job is not None:
            lines.append(f"Status: {job.status.value}")
        return lines

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        status = JobStatus(command.status) if command.status else None
        job_type = JobType(command.job_type) if command.job_type else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status, job_type=job_type, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            target = f"#{job.pr_number}" if job.pr_number is not None else (job.ref or "-")
            lines.append(
                f"  {job.job_id} type={job.job_type.value} status={job.status.value} "
                f"repo={job.repo_full_name} target={target} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobsInspectCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
            result = repository.get_result(command.job_id) if command.show_result else None
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type.value}",
            f"Status: {job.status.value}",
            f"Repository: {job.repo_full_name} (id={job.repo_id})",
            f"PR: {_or_dash(job.pr_number)}",
            f"Ref: {job.ref or '-'}",
            f"Changed files: {', '.join(job.changed_files) or '-'}",
            f"Result: {job.result_id or '-'}",
            f"Error: {job.error or '-'}",
            f"Processing time ms: {_or_dash(job.processing_time_ms)}",
            f"Relay entries: {len(details.relay_entries)}",
        ]
        lines.extend(f"  {_render_relay_entry(entry)}" for entry in details.relay_entries)
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            transition = (
                f"{event.status_from.value if event.status_from else '-'}"
                f"->{event.status_to.value if event.status_to else '-'}"
            )
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {transition} "
                f"{json.dumps(event.details, ensure_ascii=False, sort_keys=True)}",
            )
        if command.show_result:
            if result is None:
                lines.append("Result document: -")
            else:
                lines.append("Result document:")
                lines.append(
                    json.dumps(result.analysis, ensure_ascii=False, indent=2, sort_keys=True),
                )
        return lines

    def list_relay(self, command: RelayListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            try:
                entries = repository.list_relay_entries(state=command.state, limit=command.limit)
            except ValueError as error:
                raise click.ClickException(str(error)) from error
        lines = [f"Relay entries: {len(entries)}"]
        lines.extend(f"  {_render_relay_entry(entry)}" for entry in entries)
        return lines

    def publish_relay(self, command: RelayPublishCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with open_runtime(settings) as runtime:
            if command.entry_id is not None:
                outcomes = [runtime.publisher.publish_pending(command.entry_id)]
            else:
                runtime.publisher.announce_pending(runtime.channel)
                outcomes = runtime.publisher.drain(runtime.channel)
        lines = [f"Publish attempts: {len(outcomes)}"]
        lines.extend(_render_publish_outcome(item) for item in outcomes)
        return lines

    def sweep_relay(self, command: RelaySweepCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with open_runtime(settings) as runtime:
            summary = runtime.sweeper.sweep()
            lines = [
                "Sweep summary: "
                f"scanned={summary.scanned} retried={summary.retried} "
                f"succeeded={summary.succeeded} permanently_failed={summary.permanently_failed}",
            ]
            if not command.loop:
                return lines

            for line in lines:
                click.echo(line)
            scheduler = BlockingScheduler(timezone="UTC")
            runtime.sweeper.schedule(scheduler)
            click.echo(f"Sweeping every {settings.relay.sweep_interval_seconds}s; Ctrl+C to stop.")
            try:
                scheduler.start()
            except (KeyboardInterrupt, SystemExit):
                logger.info("Relay sweep loop interrupted")
        return ["Sweep loop stopped."]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with open_runtime(settings) as runtime:
            worker = runtime.build_worker()
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_messages=command.max_messages,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"duplicates={summary.duplicates} failed={summary.failed} "
            f"retried={summary.retried} dead_lettered={summary.dead_lettered} "
            f"deferred={summary.deferred} idle_polls={summary.idle_polls}",
        ]

    def serve(self, command: ServeCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        host = command.host or settings.server.host
        port = command.port or settings.server.port
        embedded_worker = (
            settings.server.embedded_worker
            if command.embedded_worker is None
            else command.embedded_worker
        )
        if not settings.intake.webhook_secret:
            logger.warning("REPO_DOCGEN_WEBHOOK_SECRET is not set; webhooks will be rejected")
        with open_runtime(settings) as runtime:
            app = create_app(runtime)
            with BackgroundServices(runtime, embedded_worker=embedded_worker):
                uvicorn.run(app, host=host, port=port, log_config=None)
        return ["Server stopped."]


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    try:
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    return settings


def _or_dash(value: object) -> str:
    return "-" if value is None else str(value)


def _render_relay_entry(entry: RelayEntryView) -> str:
    if entry.permanently_failed:
        state = "abandoned"
    elif entry.published:
        state = "published"
    elif entry.error:
        state = "failed"
    else:
        state = "pending"
    return (
        f"{entry.entry_id} job={entry.job_id} topic={entry.topic} state={state} "
        f"retries={entry.retry_count} message={entry.message_id or '-'} "
        f"error={entry.error or '-'}"
    )


def _render_publish_outcome(outcome: PublishOutcome) -> str:
    return (
        f"  {outcome.entry_id} {outcome.status.value} "
        f"message={outcome.message_id or '-'} retries={outcome.retry_count} "
        f"error={outcome.error or '-'}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[PipelineRepository]:
    repository = PipelineRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
