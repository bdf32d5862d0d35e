"""Wiring of pipeline components from settings, plus the embedded background services."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from repo_docgen.collaborators.analysis import CodeAnalyzer
from repo_docgen.collaborators.documentation import DocumentationGenerator
from repo_docgen.collaborators.github import GitHubIngestion
from repo_docgen.config import Settings
from repo_docgen.pipeline.bus import SqliteMessageBus
from repo_docgen.pipeline.intake import EventIntake
from repo_docgen.pipeline.publisher import RelayChannel, RelayPublisher
from repo_docgen.pipeline.repository import PipelineRepository
from repo_docgen.pipeline.routines import JobRoutines
from repo_docgen.pipeline.sweeper import RetrySweeper
from repo_docgen.pipeline.worker import DispatcherWorker, WorkerDispatcher

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineRuntime:
    """Pipeline components sharing one database and one relay channel."""

    settings: Settings
    repository: PipelineRepository
    bus: SqliteMessageBus
    channel: RelayChannel
    publisher: RelayPublisher
    sweeper: RetrySweeper
    intake: EventIntake
    routines: JobRoutines

    def build_worker(self, *, worker_id: str | None = None) -> DispatcherWorker:
        worker_settings = self.settings.worker
        dispatcher = WorkerDispatcher(
            repository=self.repository,
            routines=self.routines,
            worker_id=worker_id or worker_settings.worker_id,
            stale_after=timedelta(seconds=worker_settings.stale_job_seconds),
        )
        return DispatcherWorker(
            bus=self.bus,
            dispatcher=dispatcher,
            topic=self.settings.relay.topic,
            poll_interval_seconds=worker_settings.poll_interval_seconds,
        )


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    routines: JobRoutines | None = None,
) -> Iterator[PipelineRuntime]:
    """Build and migrate the pipeline; close every resource on exit.

    Default collaborators (GitHub ingestion, code analyzer, Gemini documentation)
    are created only when ``routines`` is not supplied.
    """

    settings.validate()
    with ExitStack() as stack:
        repository = PipelineRepository(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        stack.callback(repository.close)
        repository.init_schema()
        bus = SqliteMessageBus(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            lease_seconds=settings.bus.lease_seconds,
            max_delivery_attempts=settings.bus.max_delivery_attempts,
            retry_base_seconds=settings.bus.retry_base_seconds,
            retry_max_seconds=settings.bus.retry_max_seconds,
        )
        stack.callback(bus.close)

        if routines is None:
            collaborators = settings.collaborators
            ingestion = stack.enter_context(
                GitHubIngestion(
                    workdir=collaborators.workdir,
                    token=collaborators.github_token,
                    api_url=collaborators.github_api_url,
                    timeout_seconds=collaborators.request_timeout_seconds,
                ),
            )
            documentation = stack.enter_context(
                DocumentationGenerator(
                    api_key=collaborators.gemini_api_key,
                    model=collaborators.gemini_model,
                    timeout_seconds=collaborators.request_timeout_seconds,
                ),
            )
            routines = JobRoutines(
                ingestion=ingestion,
                analysis=CodeAnalyzer(),
                documentation=documentation,
                max_analyzed_files=settings.worker.max_analyzed_files,
            )

        channel = RelayChannel()
        publisher = RelayPublisher(
            repository=repository,
            bus=bus,
            max_retries=settings.relay.max_retries,
        )
        yield PipelineRuntime(
            settings=settings,
            repository=repository,
            bus=bus,
            channel=channel,
            publisher=publisher,
            sweeper=RetrySweeper(
                repository=repository,
                publisher=publisher,
                interval=timedelta(seconds=settings.relay.sweep_interval_seconds),
                batch_size=settings.relay.sweep_batch_size,
                max_retries=settings.relay.max_retries,
            ),
            intake=EventIntake(
                repository=repository,
                topic=settings.relay.topic,
                channel=channel,
                webhook_secret=settings.intake.webhook_secret,
                default_branches=settings.intake.default_branches,
            ),
            routines=routines,
        )


class BackgroundServices:
    """Relay pump, sweeper timer and optional worker running beside the HTTP server."""

    def __init__(self, runtime: PipelineRuntime, *, embedded_worker: bool = True) -> None:
        self._runtime = runtime
        self._embedded_worker = embedded_worker
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._scheduler: BackgroundScheduler | None = None

    def start(self) -> None:
        runtime = self._runtime
        self._stop.clear()
        runtime.publisher.announce_pending(runtime.channel)
        self._spawn(
            target=runtime.publisher.run_pump,
            args=(runtime.channel, self._stop),
            name="relay-pump",
        )
        if self._embedded_worker:
            self._spawn(target=self._worker_loop, args=(), name="dispatch-worker")

        self._scheduler = BackgroundScheduler(timezone="UTC")
        runtime.sweeper.schedule(self._scheduler)
        self._scheduler.start()
        logger.info("Background services started (embedded_worker=%s)", self._embedded_worker)

    def stop(self) -> None:
        self._stop.set()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        for thread in self._threads:
            thread.join(timeout=15)
        self._threads.clear()
        logger.info("Background services stopped")

    def __enter__(self) -> BackgroundServices:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    def _spawn(self, *, target: Callable[..., None], args: tuple[object, ...], name: str) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True, name=name)
        thread.start()
        self._threads.append(thread)

    def _worker_loop(self) -> None:
        settings = self._runtime.settings
        worker = self._runtime.build_worker(worker_id=f"{settings.worker.worker_id}-embedded")
        logger.info("Embedded worker %s started", worker.worker_id)
        while not self._stop.is_set():
            try:
                summary = worker.run_once()
                if summary.processed == 0:
                    self._stop.wait(timeout=settings.worker.poll_interval_seconds)
            except Exception:
                logger.exception("Embedded worker error")
                self._stop.wait(timeout=5)
        logger.info("Embedded worker %s stopped", worker.worker_id)
