"""Worker dispatcher: turns delivered bus messages into completed or failed jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from repo_docgen.pipeline.bus import MessageConsumer
from repo_docgen.pipeline.errors import JobBusyError, JobNotFoundError, ProcessingError
from repo_docgen.pipeline.models import ClaimOutcome, descriptor_to_payload
from repo_docgen.pipeline.repository import PipelineRepository
from repo_docgen.pipeline.routines import JobRoutines
from repo_docgen.storage.common import utc_now

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    """What ``WorkerDispatcher.handle`` did with a delivered message."""

    COMPLETED = "completed"
    DUPLICATE = "duplicate"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    duplicates: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.duplicates += other.duplicates
        self.failed += other.failed
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.deferred += other.deferred
        self.idle_polls += other.idle_polls


class WorkerDispatcher:
    """State machine for one delivered job descriptor.

    ``handle`` returns normally for a completed job or a harmless duplicate
    and raises ``ProcessingError`` otherwise. A job still running elsewhere
    raises ``JobBusyError`` carrying the moment it turns stale. The job is
    moved to ``failed`` before a routine failure is raised, so the bus
    redelivery that follows finds a terminal job and is acknowledged as a
    duplicate.
    """

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        routines: JobRoutines,
        worker_id: str,
        stale_after: timedelta = timedelta(minutes=30),
    ) -> None:
        self.repository = repository
        self.routines = routines
        self.worker_id = worker_id
        self.stale_after = stale_after

    def handle(self, data: dict[str, Any]) -> DispatchOutcome:
        try:
            job_id, payload = descriptor_to_payload(data)
        except ValueError as error:
            raise ProcessingError(f"Malformed job descriptor: {error}", retryable=False) from error

        claim = self.repository.claim_for_processing(
            job_id=job_id,
            worker_id=self.worker_id,
            stale_after=self.stale_after,
        )
        if claim.outcome is ClaimOutcome.MISSING:
            logger.error("Delivered message references unknown job %s", job_id)
            raise JobNotFoundError(job_id)
        if claim.outcome is ClaimOutcome.DUPLICATE_TERMINAL:
            logger.info(
                "Job %s already %s; duplicate delivery skipped",
                job_id,
                claim.job.status.value if claim.job else "terminal",
            )
            return DispatchOutcome.DUPLICATE
        if claim.outcome is ClaimOutcome.BUSY:
            touched = claim.job.updated_at if claim.job is not None else utc_now()
            retry_at = touched + self.stale_after
            logger.info(
                "Job %s is in progress on another worker; delivery deferred until %s",
                job_id,
                retry_at.isoformat(),
            )
            raise JobBusyError(job_id, retry_at=retry_at)
        if claim.outcome is ClaimOutcome.RECLAIMED_STALE:
            logger.warning("Reclaimed stale in-progress job %s", job_id)

        job = claim.job
        if job is not None and job.job_type is not payload.job_type:
            error = (
                f"Descriptor job type {payload.job_type.value} does not match "
                f"stored job type {job.job_type.value}"
            )
            self.repository.mark_failed(job_id=job_id, error=error)
            raise ProcessingError(error, retryable=False)

        logger.info(
            "Starting %s job %s for %s",
            payload.job_type.value,
            job_id,
            payload.repo.full_name,
        )
        started = time.monotonic()
        try:
            analysis = self.routines.run(payload)
        except Exception as error:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            message = str(error) or type(error).__name__
            self.repository.mark_failed(job_id=job_id, error=message, processing_time_ms=elapsed_ms)
            logger.error("Job %s failed after %d ms: %s", job_id, elapsed_ms, message)
            retryable = error.retryable if isinstance(error, ProcessingError) else True
            raise ProcessingError(message, retryable=retryable) from error

        elapsed_ms = int((time.monotonic() - started) * 1000)
        result = self.repository.mark_completed(
            job_id=job_id,
            analysis=analysis,
            processing_time_ms=elapsed_ms,
        )
        if result is None:
            logger.info("Job %s was finished elsewhere; result discarded", job_id)
            return DispatchOutcome.DUPLICATE
        logger.info("Completed job %s in %d ms (result %s)", job_id, elapsed_ms, result.result_id)
        return DispatchOutcome.COMPLETED


class DispatcherWorker:
    """Pulls job descriptors from the bus and settles each message."""

    def __init__(
        self,
        *,
        bus: MessageConsumer,
        dispatcher: WorkerDispatcher,
        topic: str,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.bus = bus
        self.dispatcher = dispatcher
        self.topic = topic
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    @property
    def worker_id(self) -> str:
        return self.dispatcher.worker_id

    def run_once(self) -> WorkerRunSummary:
        """Process at most one message from the topic."""

        summary = WorkerRunSummary()
        if self._should_stop():
            summary.idle_polls = 1
            return summary

        message = self.bus.pull(self.topic, worker_id=self.worker_id)
        if message is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            outcome = self.dispatcher.handle(message.data)
        except JobBusyError as error:
            self.bus.defer(message.message_id, until=error.retry_at, reason=str(error))
            summary.deferred = 1
            return summary
        except ProcessingError as error:
            summary.failed = 1
            if error.retryable:
                status = self.bus.nack(message.message_id, error=str(error))
                summary.retried = 1
                logger.info("Message %s returned to bus as %s", message.message_id, status)
            else:
                self.bus.dead_letter(message.message_id, error=str(error))
                summary.dead_lettered = 1
            return summary
        except Exception as error:
            logger.exception("Unexpected error handling message %s", message.message_id)
            self.bus.nack(message.message_id, error=f"{type(error).__name__}: {error}")
            summary.failed = 1
            summary.retried = 1
            return summary

        self.bus.ack(message.message_id)
        if outcome is DispatchOutcome.DUPLICATE:
            summary.duplicates = 1
        else:
            summary.succeeded = 1
        return summary

    def run_loop(
        self,
        *,
        max_messages: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the topic is idle, ``max_messages`` is reached, or a signal arrives.

        Args:
            max_messages: Stop after processing this many messages (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = poll forever).
        """

        with self._signal_handlers():
            return self._loop(max_messages=max_messages, max_idle_polls=max_idle_polls)

    def request_stop(self) -> None:
        self._stop_requested = True

    def _loop(self, *, max_messages: int | None, max_idle_polls: int | None) -> WorkerRunSummary:
        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while True:
            if self._should_stop():
                return aggregate
            if max_messages is not None and aggregate.processed >= max_messages:
                return aggregate

            summary = self.run_once()
            aggregate.add(summary)

            if summary.processed == 0:
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    return aggregate
                self._sleep_with_stop(self.poll_interval_seconds)
                continue
            consecutive_idle = 0

    def _should_stop(self) -> bool:
        return self._stop_requested

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._should_stop() and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after the current message", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
