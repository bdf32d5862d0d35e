"""Job store, outbound relay and result persistence backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from repo_docgen.pipeline.errors import DuplicateDeliveryError
from repo_docgen.pipeline.models import (
    ClaimOutcome,
    DeltaAnalysisPayload,
    JobClaim,
    JobDetails,
    JobEventView,
    JobPayload,
    JobResultView,
    JobStatus,
    JobType,
    JobView,
    PrAnalysisPayload,
    PushAnalysisPayload,
    RelayEntryView,
    WebhookDeliveryView,
    WebhookDeliveryWrite,
    payload_to_descriptor,
)
from repo_docgen.storage.alembic_runner import current_revision, head_revision, upgrade_head
from repo_docgen.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from repo_docgen.storage.sqlmodel_models import (
    Job,
    JobEvent,
    JobResult,
    RelayEntry,
    WebhookDelivery,
)

_ACTIVE_STATUSES = (
    JobStatus.QUEUED.value,
    JobStatus.DISPATCHED.value,
    JobStatus.IN_PROGRESS.value,
)

RELAY_STATES = ("pending", "failed", "published", "abandoned")


class PipelineRepository:
    """Persistence facade for jobs, relay entries, results and webhook deliveries.

    Every status transition is a compare-and-set update guarded by the
    expected current status, so concurrent workers and the sweeper never
    interleave into an inconsistent job state.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to the packaged head."""

        if current_revision(self.engine) == head_revision():
            return
        upgrade_head(self.db_path)

    def create_job(
        self,
        payload: JobPayload,
        *,
        topic: str,
        metadata: dict[str, Any] | None = None,
        delivery: WebhookDeliveryWrite | None = None,
    ) -> tuple[JobView, RelayEntryView]:
        """Create a queued job and its relay entry in one transaction."""

        now = utc_now()
        job_id = str(uuid4())
        entry_id = str(uuid4())
        with Session(self.engine) as session:
            job = _new_job_row(job_id=job_id, payload=payload, metadata=metadata, now=now)
            entry = RelayEntry(
                entry_id=entry_id,
                job_id=job_id,
                topic=topic,
                payload_json=json.dumps(
                    payload_to_descriptor(job_id, payload),
                    ensure_ascii=False,
                    sort_keys=True,
                ),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(job)
            session.add(entry)
            if delivery is not None:
                session.add(
                    WebhookDelivery(
                        delivery_id=delivery.delivery_id,
                        event=delivery.event,
                        repo_id=delivery.repo_id,
                        repo_full_name=delivery.repo_full_name,
                        action=delivery.action,
                        processed=True,
                        job_id=job_id,
                        received_at=to_db_datetime(now),
                    ),
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "job_type": payload.job_type.value,
                    "repo_full_name": payload.repo.full_name,
                    "relay_entry_id": entry_id,
                    "topic": topic,
                },
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                if delivery is None:
                    raise
                raise DuplicateDeliveryError(delivery.delivery_id) from error
            session.refresh(job)
            session.refresh(entry)
            return _to_job_view(job), _to_relay_view(entry)

    def record_ignored_delivery(self, delivery: WebhookDeliveryWrite) -> None:
        """Log a webhook delivery that was acknowledged without creating a job."""

        with Session(self.engine) as session:
            existing = session.get(WebhookDelivery, delivery.delivery_id)
            if existing is not None:
                return
            session.add(
                WebhookDelivery(
                    delivery_id=delivery.delivery_id,
                    event=delivery.event,
                    repo_id=delivery.repo_id,
                    repo_full_name=delivery.repo_full_name,
                    action=delivery.action,
                    processed=False,
                    job_id=None,
                    received_at=to_db_datetime(utc_now()),
                ),
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise DuplicateDeliveryError(delivery.delivery_id) from error

    def find_delivery(self, delivery_id: str) -> WebhookDeliveryView | None:
        """Return a recorded webhook delivery by its delivery id."""

        with Session(self.engine) as session:
            row = session.get(WebhookDelivery, delivery_id)
            if row is None:
                return None
            return WebhookDeliveryView(
                delivery_id=row.delivery_id,
                event=row.event,
                repo_id=row.repo_id,
                repo_full_name=row.repo_full_name,
                action=row.action,
                processed=row.processed,
                job_id=row.job_id,
                received_at=to_utc_aware_datetime(row.received_at),
            )

    def mark_dispatched(self, *, entry_id: str, message_id: str) -> bool:
        """Mark a relay entry published and advance its job to dispatched.

        Returns ``False`` when the entry was already published.
        """

        now = utc_now()
        with Session(self.engine) as session:
            entry = session.get(RelayEntry, entry_id)
            if entry is None:
                return False
            result = session.exec(
                sa_update(RelayEntry)
                .where(
                    col(RelayEntry.entry_id) == entry_id,
                    col(RelayEntry.published).is_(False),
                )
                .values(
                    published=True,
                    message_id=message_id,
                    error=None,
                    published_at=to_db_datetime(now),
                    last_attempt_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            job_result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == entry.job_id,
                    col(Job.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.DISPATCHED.value,
                    dispatched_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            # A worker may already have picked the job up from an earlier publish.
            if job_result.rowcount == 1:
                self._add_event(
                    session=session,
                    job_id=entry.job_id,
                    event_type="dispatched",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.DISPATCHED,
                    details={"relay_entry_id": entry_id, "message_id": message_id},
                )
            session.commit()
            return True

    def record_publish_failure(
        self,
        *,
        entry_id: str,
        error: str,
        max_retries: int,
        details: dict[str, object] | None = None,
    ) -> RelayEntryView | None:
        """Count one failed publish attempt; exhaust the entry at ``max_retries``."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RelayEntry)
                .where(
                    col(RelayEntry.entry_id) == entry_id,
                    col(RelayEntry.published).is_(False),
                    col(RelayEntry.permanently_failed).is_(False),
                )
                .values(
                    retry_count=col(RelayEntry.retry_count) + 1,
                    error=error,
                    last_attempt_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            entry = session.exec(
                select(RelayEntry).where(RelayEntry.entry_id == entry_id),
            ).one()
            self._add_event(
                session=session,
                job_id=entry.job_id,
                event_type="delivery_failed",
                status_from=None,
                status_to=None,
                details={
                    "relay_entry_id": entry_id,
                    "retry_count": entry.retry_count,
                    "error": error,
                } | (details or {}),
            )
            if entry.retry_count >= max_retries:
                entry.permanently_failed = True
                session.add(entry)
                self._add_event(
                    session=session,
                    job_id=entry.job_id,
                    event_type="delivery_abandoned",
                    status_from=None,
                    status_to=None,
                    details={"relay_entry_id": entry_id, "retry_count": entry.retry_count},
                )
            session.commit()
            session.refresh(entry)
            return _to_relay_view(entry)

    def mark_permanently_failed(
        self,
        *,
        entry_id: str,
        error: str | None = None,
        fail_job: bool = False,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Exclude a relay entry from any further retry.

        With ``fail_job`` the referenced job is also moved to failed in the
        same transaction; otherwise it stays in its non-terminal status for
        operator attention.
        """

        now = utc_now()
        with Session(self.engine) as session:
            entry = session.get(RelayEntry, entry_id)
            if entry is None:
                return False
            values: dict[str, Any] = {
                "permanently_failed": True,
                "updated_at": to_db_datetime(now),
            }
            if error is not None:
                values["error"] = error
                values["last_attempt_at"] = to_db_datetime(now)
            result = session.exec(
                sa_update(RelayEntry)
                .where(
                    col(RelayEntry.entry_id) == entry_id,
                    col(RelayEntry.published).is_(False),
                    col(RelayEntry.permanently_failed).is_(False),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=entry.job_id,
                event_type="delivery_abandoned",
                status_from=None,
                status_to=None,
                details={
                    "relay_entry_id": entry_id,
                    "retry_count": entry.retry_count,
                    "error": error or entry.error,
                } | (details or {}),
            )
            if fail_job:
                self._fail_in_session(
                    session=session,
                    job_id=entry.job_id,
                    error=f"Message delivery failed: {error or entry.error}",
                    processing_time_ms=None,
                    now=now,
                )
            session.commit()
            return True

    def list_retry_candidates(
        self,
        *,
        attempted_before: datetime,
        limit: int,
    ) -> list[RelayEntryView]:
        """Return failed, unpublished, not abandoned entries last attempted before a cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(RelayEntry)
                .where(
                    col(RelayEntry.published).is_(False),
                    col(RelayEntry.permanently_failed).is_(False),
                    col(RelayEntry.error).is_not(None),
                    col(RelayEntry.last_attempt_at) < to_db_datetime(attempted_before),
                )
                .order_by(col(RelayEntry.last_attempt_at).asc())
                .limit(limit),
            ).all()
        return [_to_relay_view(row) for row in rows]

    def claim_for_processing(
        self,
        *,
        job_id: str,
        worker_id: str,
        stale_after: timedelta,
    ) -> JobClaim:
        """Atomically move a job to in-progress for one worker."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(Job, job_id)
                if row is None:
                    return JobClaim(outcome=ClaimOutcome.MISSING, job=None)

                current = JobStatus(row.status)
                if current.is_terminal:
                    return JobClaim(outcome=ClaimOutcome.DUPLICATE_TERMINAL, job=_to_job_view(row))

                if current is JobStatus.IN_PROGRESS:
                    last_touch = to_utc_aware_datetime(row.updated_at)
                    if now - last_touch < stale_after:
                        return JobClaim(outcome=ClaimOutcome.BUSY, job=_to_job_view(row))
                    result = session.exec(
                        sa_update(Job)
                        .where(
                            col(Job.job_id) == job_id,
                            col(Job.status) == JobStatus.IN_PROGRESS.value,
                            col(Job.updated_at) == to_db_datetime(row.updated_at),
                        )
                        .values(updated_at=to_db_datetime(now)),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    self._add_event(
                        session=session,
                        job_id=job_id,
                        event_type="reclaimed_stale",
                        status_from=JobStatus.IN_PROGRESS,
                        status_to=JobStatus.IN_PROGRESS,
                        details={
                            "worker_id": worker_id,
                            "stale_since": last_touch.isoformat(),
                        },
                    )
                    session.commit()
                    session.refresh(row)
                    return JobClaim(outcome=ClaimOutcome.RECLAIMED_STALE, job=_to_job_view(row))

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == current.value,
                    )
                    .values(
                        status=JobStatus.IN_PROGRESS.value,
                        started_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="started",
                    status_from=current,
                    status_to=JobStatus.IN_PROGRESS,
                    details={"worker_id": worker_id},
                )
                session.commit()
                session.refresh(row)
                return JobClaim(outcome=ClaimOutcome.CLAIMED, job=_to_job_view(row))

    def mark_completed(
        self,
        *,
        job_id: str,
        analysis: dict[str, Any],
        processing_time_ms: int,
    ) -> JobResultView | None:
        """Write the result record and complete an in-progress job atomically."""

        now = utc_now()
        result_id = str(uuid4())
        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if job is None:
                return None
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.IN_PROGRESS.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_id=result_id,
                    error=None,
                    completed_at=to_db_datetime(now),
                    processing_time_ms=processing_time_ms,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            row = JobResult(
                result_id=result_id,
                job_id=job_id,
                job_type=job.job_type,
                repo_id=job.repo_id,
                repo_full_name=job.repo_full_name,
                status=JobStatus.COMPLETED.value,
                analysis_json=json.dumps(analysis, ensure_ascii=False, sort_keys=True),
                processing_time_ms=processing_time_ms,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.IN_PROGRESS,
                status_to=JobStatus.COMPLETED,
                details={"result_id": result_id, "processing_time_ms": processing_time_ms},
            )
            session.commit()
            session.refresh(row)
            return _to_result_view(row)

    def mark_failed(
        self,
        *,
        job_id: str,
        error: str,
        processing_time_ms: int | None = None,
    ) -> bool:
        """Move a non-terminal job to failed with the error recorded."""

        with Session(self.engine) as session:
            changed = self._fail_in_session(
                session=session,
                job_id=job_id,
                error=error,
                processing_time_ms=processing_time_ms,
                now=utc_now(),
            )
            if not changed:
                session.rollback()
                return False
            session.commit()
            return True

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and type."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if job_type is not None:
                statement = statement.where(Job.job_type == job_type.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream and relay entries."""

        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            entry_rows = session.exec(
                select(RelayEntry)
                .where(RelayEntry.job_id == job_id)
                .order_by(col(RelayEntry.created_at).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                    status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=_load_dict(row.details_json),
                ),
            )
        return JobDetails(
            job=_to_job_view(job),
            events=events,
            relay_entries=[_to_relay_view(row) for row in entry_rows],
        )

    def get_result(self, job_id: str) -> JobResultView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobResult).where(JobResult.job_id == job_id),
            ).one_or_none()
            return _to_result_view(row) if row is not None else None

    def get_relay_entry(self, entry_id: str) -> RelayEntryView | None:
        with Session(self.engine) as session:
            row = session.get(RelayEntry, entry_id)
            return _to_relay_view(row) if row is not None else None

    def list_relay_entries(
        self,
        *,
        state: str | None = None,
        limit: int = 50,
    ) -> list[RelayEntryView]:
        """List relay entries by delivery state: pending, failed, published or abandoned."""

        if state is not None and state not in RELAY_STATES:
            raise ValueError(f"Unknown relay entry state: {state!r}")
        with Session(self.engine) as session:
            statement = select(RelayEntry).order_by(col(RelayEntry.created_at).desc()).limit(limit)
            if state == "pending":
                statement = statement.where(
                    col(RelayEntry.published).is_(False),
                    col(RelayEntry.permanently_failed).is_(False),
                    col(RelayEntry.error).is_(None),
                )
            elif state == "failed":
                statement = statement.where(
                    col(RelayEntry.published).is_(False),
                    col(RelayEntry.permanently_failed).is_(False),
                    col(RelayEntry.error).is_not(None),
                )
            elif state == "published":
                statement = statement.where(col(RelayEntry.published).is_(True))
            elif state == "abandoned":
                statement = statement.where(col(RelayEntry.permanently_failed).is_(True))
            rows = session.exec(statement).all()
        return [_to_relay_view(row) for row in rows]

    def _fail_in_session(
        self,
        *,
        session: Session,
        job_id: str,
        error: str,
        processing_time_ms: int | None,
        now: datetime,
    ) -> bool:
        while True:
            row = session.get(Job, job_id, populate_existing=True)
            if row is None or row.status not in _ACTIVE_STATUSES:
                return False
            previous = JobStatus(row.status)
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == previous.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error=error,
                    result_id=None,
                    completed_at=to_db_datetime(now),
                    processing_time_ms=processing_time_ms,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                continue
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=previous,
                status_to=JobStatus.FAILED,
                details={"error": error},
            )
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _new_job_row(
    *,
    job_id: str,
    payload: JobPayload,
    metadata: dict[str, Any] | None,
    now: datetime,
) -> Job:
    row = Job(
        job_id=job_id,
        job_type=payload.job_type.value,
        status=JobStatus.QUEUED.value,
        repo_id=payload.repo.repo_id,
        repo_full_name=payload.repo.full_name,
        metadata_json=(
            json.dumps(metadata, ensure_ascii=False, sort_keys=True) if metadata else None
        ),
        created_at=to_db_datetime(now),
        updated_at=to_db_datetime(now),
    )
    if isinstance(payload, PrAnalysisPayload):
        row.pr_number = payload.pr_number
        row.pr_action = payload.action
        row.head_ref = payload.head_ref
        row.base_ref = payload.base_ref
        row.head_sha = payload.head_sha
    elif isinstance(payload, PushAnalysisPayload):
        row.ref = payload.ref
        row.before_sha = payload.before_sha
        row.after_sha = payload.after_sha
        row.changed_files_json = json.dumps(list(payload.changed_files), ensure_ascii=False)
        row.commit_count = payload.commit_count
    elif isinstance(payload, DeltaAnalysisPayload):
        row.before_sha = payload.base_sha
        row.after_sha = payload.head_sha
        row.head_sha = payload.head_sha
    return row


def _load_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_job_view(row: Job) -> JobView:
    changed_files: tuple[str, ...] = ()
    if row.changed_files_json:
        parsed = json.loads(row.changed_files_json)
        if isinstance(parsed, list):
            changed_files = tuple(str(item) for item in parsed)
    return JobView(
        job_id=row.job_id,
        job_type=JobType(row.job_type),
        status=JobStatus(row.status),
        repo_id=row.repo_id,
        repo_full_name=row.repo_full_name,
        pr_number=row.pr_number,
        pr_action=row.pr_action,
        head_sha=row.head_sha,
        head_ref=row.head_ref,
        base_ref=row.base_ref,
        ref=row.ref,
        before_sha=row.before_sha,
        after_sha=row.after_sha,
        changed_files=changed_files,
        commit_count=row.commit_count,
        metadata=_load_dict(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        dispatched_at=optional_utc(row.dispatched_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        result_id=row.result_id,
        error=row.error,
        processing_time_ms=row.processing_time_ms,
    )


def _to_relay_view(row: RelayEntry) -> RelayEntryView:
    return RelayEntryView(
        entry_id=row.entry_id,
        job_id=row.job_id,
        topic=row.topic,
        payload=_load_dict(row.payload_json),
        published=row.published,
        message_id=row.message_id,
        error=row.error,
        retry_count=row.retry_count,
        permanently_failed=row.permanently_failed,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        last_attempt_at=optional_utc(row.last_attempt_at),
        published_at=optional_utc(row.published_at),
    )


def _to_result_view(row: JobResult) -> JobResultView:
    return JobResultView(
        result_id=row.result_id,
        job_id=row.job_id,
        job_type=JobType(row.job_type),
        repo_id=row.repo_id,
        repo_full_name=row.repo_full_name,
        status=row.status,
        analysis=_load_dict(row.analysis_json),
        processing_time_ms=row.processing_time_ms,
        created_at=to_utc_aware_datetime(row.created_at),
    )
