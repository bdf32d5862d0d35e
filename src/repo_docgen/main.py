"""CLI entrypoint for repo-docgen."""

import logging
from pathlib import Path

import rich_click as click

from repo_docgen import __version__
from repo_docgen.controllers import (
    JobsInspectCommand,
    JobsListCommand,
    JobsSubmitCommand,
    PipelineCliController,
    RelayListCommand,
    RelayPublishCommand,
    RelaySweepCommand,
    ServeCommand,
    WorkerRunCommand,
)
from repo_docgen.pipeline.models import JobStatus, JobType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PipelineCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="repo-docgen")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for pipeline diagnostics.",
)
def repo_docgen(log_level: str) -> None:
    """Repository documentation pipeline CLI.

    Webhooks and manual triggers become **jobs**; the relay publishes them to the
    message bus and workers turn them into analysis results.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@repo_docgen.group()
def jobs() -> None:
    """Job intake and inspection commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--job-type",
    type=click.Choice([item.value for item in JobType]),
    default=JobType.INITIAL_INGESTION.value,
    show_default=True,
    help="Job variant to create.",
)
@click.option("--repo-id", required=True, help="Repository id.")
@click.option("--repo", "repo_full_name", required=True, help="Repository full name, owner/name.")
@click.option("--pr-number", type=click.IntRange(min=1), default=None, help="PR number.")
@click.option("--pr-action", default=None, help="PR action, defaults to opened.")
@click.option("--ref", default=None, help="Pushed ref, for example refs/heads/main.")
@click.option(
    "--changed-file",
    "changed_files",
    multiple=True,
    help="Changed file path for push-analysis. Can be repeated.",
)
@click.option("--base-sha", default=None, help="Base revision (push before / delta base).")
@click.option("--head-sha", default=None, help="Head revision (push after / delta head).")
@click.option(
    "--publish/--no-publish",
    default=True,
    show_default=True,
    help="Publish the relay entry right after the job is stored.",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    repo_id: str,
    repo_full_name: str,
    pr_number: int | None,
    pr_action: str | None,
    ref: str | None,
    changed_files: tuple[str, ...],
    base_sha: str | None,
    head_sha: str | None,
    publish: bool,
) -> None:
    """Create a job manually, the way an accepted webhook would."""

    _emit_lines(
        CONTROLLER.submit_job(
            JobsSubmitCommand(
                db_path=db_path,
                job_type=job_type,
                repo_id=repo_id,
                repo_full_name=repo_full_name,
                pr_number=pr_number,
                pr_action=pr_action,
                ref=ref,
                changed_files=changed_files,
                base_sha=base_sha,
                head_sha=head_sha,
                publish=publish,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([item.value for item in JobStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--job-type",
    type=click.Choice([item.value for item in JobType]),
    default=None,
    help="Optional job type filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, job_type: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(
            JobsListCommand(db_path=db_path, status=status, job_type=job_type, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--result/--no-result",
    "show_result",
    default=False,
    help="Print the result document.",
)
def jobs_inspect(db_path: Path | None, job_id: str, show_result: bool) -> None:
    """Inspect one job with relay entries and event history."""

    _emit_lines(
        CONTROLLER.inspect_job(
            JobsInspectCommand(db_path=db_path, job_id=job_id, show_result=show_result),
        ),
    )


@repo_docgen.group()
def relay() -> None:
    """Outbound relay commands."""


@relay.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--state",
    type=click.Choice(["pending", "failed", "published", "abandoned"]),
    default=None,
    help="Optional delivery state filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max entries to print.",
)
def relay_list(db_path: Path | None, state: str | None, limit: int) -> None:
    """List relay entries."""

    _emit_lines(CONTROLLER.list_relay(RelayListCommand(db_path=db_path, state=state, limit=limit)))


@relay.command("publish")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--entry-id",
    default=None,
    help="Relay entry to publish. Without it, every never-attempted entry is published.",
)
def relay_publish(db_path: Path | None, entry_id: str | None) -> None:
    """Publish relay entries to the message bus."""

    _emit_lines(CONTROLLER.publish_relay(RelayPublishCommand(db_path=db_path, entry_id=entry_id)))


@relay.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--loop/--once",
    default=False,
    show_default=True,
    help="Keep sweeping on the configured interval instead of a single pass.",
)
def relay_sweep(db_path: Path | None, loop: bool) -> None:
    """Retry failed relay entries up to the retry bound."""

    _emit_lines(CONTROLLER.sweep_relay(RelaySweepCommand(db_path=db_path, loop=loop)))


@repo_docgen.group()
def worker() -> None:
    """Worker dispatcher commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process one message or keep polling.",
)
@click.option(
    "--max-messages",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many messages.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit the loop after this many consecutive empty polls.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_messages: int | None,
    max_idle_polls: int,
) -> None:
    """Consume job messages and run their routines."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_messages=max_messages,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@repo_docgen.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind host, defaults to REPO_DOCGEN_HOST.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
@click.option(
    "--embedded-worker/--no-embedded-worker",
    default=None,
    help="Run a worker thread inside the server process.",
)
def serve(
    db_path: Path | None,
    host: str | None,
    port: int | None,
    embedded_worker: bool | None,
) -> None:
    """Run the HTTP API with the relay pump and retry sweeper."""

    _emit_lines(
        CONTROLLER.serve(
            ServeCommand(
                db_path=db_path,
                host=host,
                port=port,
                embedded_worker=embedded_worker,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    repo_docgen()
