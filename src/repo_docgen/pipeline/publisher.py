"""Outbound relay: internal channel and the single publish implementation."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum

from repo_docgen.pipeline.bus import MessagePublisher
from repo_docgen.pipeline.failure_classifier import classify_delivery_failure
from repo_docgen.pipeline.repository import PipelineRepository

logger = logging.getLogger(__name__)


class PublishStatus(str, Enum):
    """What one publish attempt did to a relay entry."""

    PUBLISHED = "published"
    RETRY_SCHEDULED = "retry_scheduled"
    ABANDONED = "abandoned"
    SKIPPED = "skipped"


@dataclass(slots=True)
class PublishOutcome:
    """Result of ``RelayPublisher.publish_pending`` for one entry."""

    entry_id: str
    status: PublishStatus
    message_id: str | None = None
    error: str | None = None
    retry_count: int = 0


class RelayChannel:
    """In-process channel announcing relay entries that are ready to publish.

    Intake announces an entry after its transaction commits; the publisher
    drains the channel. The sweeper bypasses the channel and calls the
    publisher directly, so both paths share one publish implementation.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[str] = queue.Queue()

    def notify(self, entry_id: str) -> None:
        self._queue.put(entry_id)

    def next_entry(self, timeout: float | None = None) -> str | None:
        """Return the next announced entry id, or ``None`` when nothing arrives."""

        try:
            if timeout is None:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class RelayPublisher:
    """Delivers relay entries to the message bus at least once."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        bus: MessagePublisher,
        max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.max_retries = max_retries

    def publish_pending(self, entry_id: str) -> PublishOutcome:
        """Publish one relay entry and record the outcome; never raises on bus errors."""

        entry = self.repository.get_relay_entry(entry_id)
        if entry is None:
            logger.warning("Relay entry %s not found; nothing to publish", entry_id)
            return PublishOutcome(entry_id=entry_id, status=PublishStatus.SKIPPED)
        if entry.published or entry.permanently_failed:
            return PublishOutcome(
                entry_id=entry_id,
                status=PublishStatus.SKIPPED,
                message_id=entry.message_id,
                retry_count=entry.retry_count,
            )

        try:
            self.bus.ensure_topic(entry.topic)
            message_id = self.bus.publish(entry.topic, entry.payload)
        except Exception as error:  # noqa: BLE001
            return self._handle_failure(entry_id=entry_id, job_id=entry.job_id, error=error)

        if not self.repository.mark_dispatched(entry_id=entry_id, message_id=message_id):
            # Another path published it first; the bus tolerates the duplicate.
            logger.info(
                "Relay entry %s already published; duplicate message %s left on bus",
                entry_id,
                message_id,
            )
            return PublishOutcome(
                entry_id=entry_id,
                status=PublishStatus.SKIPPED,
                message_id=message_id,
                retry_count=entry.retry_count,
            )
        logger.info(
            "Published relay entry %s for job %s to %s as message %s",
            entry_id,
            entry.job_id,
            entry.topic,
            message_id,
        )
        return PublishOutcome(
            entry_id=entry_id,
            status=PublishStatus.PUBLISHED,
            message_id=message_id,
            retry_count=entry.retry_count,
        )

    def drain(self, channel: RelayChannel) -> list[PublishOutcome]:
        """Publish every entry currently announced on the channel."""

        outcomes: list[PublishOutcome] = []
        while True:
            entry_id = channel.next_entry()
            if entry_id is None:
                return outcomes
            outcomes.append(self.publish_pending(entry_id))

    def run_pump(
        self,
        channel: RelayChannel,
        stop: threading.Event,
        *,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        """Publish announced entries until ``stop`` is set."""

        logger.info("Relay pump started")
        while not stop.is_set():
            entry_id = channel.next_entry(timeout=poll_interval_seconds)
            if entry_id is None:
                continue
            try:
                self.publish_pending(entry_id)
            except Exception:
                logger.exception("Relay pump error for entry %s", entry_id)
        logger.info("Relay pump stopped")

    def announce_pending(self, channel: RelayChannel, *, limit: int = 500) -> int:
        """Re-announce entries that were stored but never attempted."""

        entries = self.repository.list_relay_entries(state="pending", limit=limit)
        for entry in reversed(entries):
            channel.notify(entry.entry_id)
        if entries:
            logger.info("Re-announced %d never-attempted relay entries", len(entries))
        return len(entries)

    def _handle_failure(self, *, entry_id: str, job_id: str, error: Exception) -> PublishOutcome:
        message = f"{type(error).__name__}: {error}"
        classification = classify_delivery_failure(error)

        if not classification.retryable:
            self.repository.mark_permanently_failed(
                entry_id=entry_id,
                error=message,
                fail_job=True,
                details=classification.to_event_details(),
            )
            logger.error(
                "Non-retryable publish failure for relay entry %s (job %s): %s",
                entry_id,
                job_id,
                message,
            )
            return PublishOutcome(entry_id=entry_id, status=PublishStatus.ABANDONED, error=message)

        updated = self.repository.record_publish_failure(
            entry_id=entry_id,
            error=message,
            max_retries=self.max_retries,
            details=classification.to_event_details(),
        )
        if updated is None:
            return PublishOutcome(entry_id=entry_id, status=PublishStatus.SKIPPED, error=message)
        if updated.permanently_failed:
            logger.warning(
                "Relay entry %s for job %s permanently failed after %d attempts: %s",
                entry_id,
                job_id,
                updated.retry_count,
                message,
            )
            return PublishOutcome(
                entry_id=entry_id,
                status=PublishStatus.ABANDONED,
                error=message,
                retry_count=updated.retry_count,
            )
        logger.warning(
            "Publish failed for relay entry %s (attempt %d of %d), left for sweeper: %s",
            entry_id,
            updated.retry_count,
            self.max_retries,
            message,
        )
        return PublishOutcome(
            entry_id=entry_id,
            status=PublishStatus.RETRY_SCHEDULED,
            error=message,
            retry_count=updated.retry_count,
        )
