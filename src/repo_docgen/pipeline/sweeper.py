"""Bounded-retry safety net for relay entries the reactive path failed to deliver."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from repo_docgen.pipeline.publisher import PublishStatus, RelayPublisher
from repo_docgen.pipeline.repository import PipelineRepository
from repo_docgen.storage.common import utc_now

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "relay_retry_sweep"


@dataclass(slots=True)
class SweepSummary:
    """Aggregate sweeper counters for CLI reporting."""

    scanned: int = 0
    retried: int = 0
    succeeded: int = 0
    permanently_failed: int = 0


class RetrySweeper:
    """Periodically republishes failed relay entries up to the retry bound."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        publisher: RelayPublisher,
        interval: timedelta = timedelta(minutes=5),
        batch_size: int = 10,
        max_retries: int = 3,
    ) -> None:
        self.repository = repository
        self.publisher = publisher
        self.interval = interval
        self.batch_size = batch_size
        self.max_retries = max_retries

    def sweep(self) -> SweepSummary:
        """Run one bounded retry pass over failed relay entries."""

        summary = SweepSummary()
        # Entries attempted within the last interval belong to the reactive path.
        cutoff = utc_now() - self.interval
        candidates = self.repository.list_retry_candidates(
            attempted_before=cutoff,
            limit=self.batch_size,
        )
        summary.scanned = len(candidates)

        for entry in candidates:
            if entry.retry_count >= self.max_retries:
                if self.repository.mark_permanently_failed(entry_id=entry.entry_id):
                    summary.permanently_failed += 1
                    logger.warning(
                        "Relay entry %s for job %s permanently failed after %d attempts: %s",
                        entry.entry_id,
                        entry.job_id,
                        entry.retry_count,
                        entry.error,
                    )
                continue

            summary.retried += 1
            outcome = self.publisher.publish_pending(entry.entry_id)
            if outcome.status is PublishStatus.PUBLISHED:
                summary.succeeded += 1
            elif outcome.status is PublishStatus.ABANDONED:
                summary.permanently_failed += 1

        if summary.scanned:
            logger.info(
                "Relay sweep: scanned=%d retried=%d succeeded=%d permanently_failed=%d",
                summary.scanned,
                summary.retried,
                summary.succeeded,
                summary.permanently_failed,
            )
        return summary

    def schedule(self, scheduler: BaseScheduler) -> None:
        """Register the sweep as a non-overlapping interval job."""

        scheduler.add_job(
            func=self._scheduled_sweep,
            trigger=IntervalTrigger(seconds=self.interval.total_seconds()),
            id=SWEEP_JOB_ID,
            name="Relay retry sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("Relay retry sweep scheduled every %s", self.interval)

    def _scheduled_sweep(self) -> None:
        try:
            self.sweep()
        except Exception:
            logger.exception("Relay retry sweep failed")
