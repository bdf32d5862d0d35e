"""Domain models for jobs, relay entries, results and bus messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Forward-only job lifecycle states."""

    QUEUED = "queued"
    DISPATCHED = "dispatched"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


class JobType(str, Enum):
    """Job variants; each has its own payload and processing routine."""

    INITIAL_INGESTION = "initial-ingestion"
    PR_ANALYSIS = "pr-analysis"
    PUSH_ANALYSIS = "push-analysis"
    DELTA_ANALYSIS = "delta-analysis"


class DeliveryFailureClass(str, Enum):
    """Normalized publish failure classes used by relay retry policy."""

    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


class BusMessageStatus(str, Enum):
    """Delivery states of a message stored on the bus."""

    PENDING = "pending"
    LEASED = "leased"
    ACKED = "acked"
    DEAD = "dead"


@dataclass(slots=True, frozen=True)
class RepoRef:
    """Target repository reference."""

    repo_id: str
    full_name: str


@dataclass(slots=True, frozen=True)
class InitialIngestionPayload:
    """Full-repository ingestion request."""

    repo: RepoRef

    @property
    def job_type(self) -> JobType:
        return JobType.INITIAL_INGESTION


@dataclass(slots=True, frozen=True)
class PrAnalysisPayload:
    """Pull request analysis request."""

    repo: RepoRef
    pr_number: int
    action: str
    head_ref: str | None = None
    base_ref: str | None = None
    head_sha: str | None = None

    @property
    def job_type(self) -> JobType:
        return JobType.PR_ANALYSIS


@dataclass(slots=True, frozen=True)
class PushAnalysisPayload:
    """Default-branch push analysis request."""

    repo: RepoRef
    ref: str
    before_sha: str | None = None
    after_sha: str | None = None
    changed_files: tuple[str, ...] = ()
    commit_count: int = 0

    @property
    def job_type(self) -> JobType:
        return JobType.PUSH_ANALYSIS


@dataclass(slots=True, frozen=True)
class DeltaAnalysisPayload:
    """Analysis of the changes between two revisions."""

    repo: RepoRef
    base_sha: str
    head_sha: str

    @property
    def job_type(self) -> JobType:
        return JobType.DELTA_ANALYSIS


JobPayload = (
    InitialIngestionPayload | PrAnalysisPayload | PushAnalysisPayload | DeltaAnalysisPayload
)


@dataclass(slots=True)
class WebhookDeliveryWrite:
    """Webhook delivery log entry written together with the job it produced."""

    delivery_id: str
    event: str
    repo_id: str
    repo_full_name: str
    action: str | None = None


@dataclass(slots=True)
class WebhookDeliveryView:
    """Recorded webhook delivery."""

    delivery_id: str
    event: str
    repo_id: str
    repo_full_name: str
    action: str | None
    processed: bool
    job_id: str | None
    received_at: datetime


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI, HTTP and worker logic."""

    job_id: str
    job_type: JobType
    status: JobStatus
    repo_id: str
    repo_full_name: str
    pr_number: int | None
    pr_action: str | None
    head_sha: str | None
    head_ref: str | None
    base_ref: str | None
    ref: str | None
    before_sha: str | None
    after_sha: str | None
    changed_files: tuple[str, ...]
    commit_count: int | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    dispatched_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    result_id: str | None
    error: str | None
    processing_time_ms: int | None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RelayEntryView:
    """Outbound queue item staged for the message bus."""

    entry_id: str
    job_id: str
    topic: str
    payload: dict[str, Any]
    published: bool
    message_id: str | None
    error: str | None
    retry_count: int
    permanently_failed: bool
    created_at: datetime
    updated_at: datetime
    last_attempt_at: datetime | None
    published_at: datetime | None


@dataclass(slots=True)
class JobResultView:
    """Immutable output of a completed job."""

    result_id: str
    job_id: str
    job_type: JobType
    repo_id: str
    repo_full_name: str
    status: str
    analysis: dict[str, Any]
    processing_time_ms: int
    created_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job with event stream and relay entries."""

    job: JobView
    events: list[JobEventView]
    relay_entries: list[RelayEntryView]


@dataclass(slots=True)
class BusMessageView:
    """Message leased from the bus by a consumer."""

    message_id: str
    topic: str
    data: dict[str, Any]
    status: BusMessageStatus
    delivery_attempts: int
    published_at: datetime
    leased_until: datetime | None = None
    last_error: str | None = None


class ClaimOutcome(str, Enum):
    """Result of a worker trying to move a job to in-progress."""

    CLAIMED = "claimed"
    RECLAIMED_STALE = "reclaimed_stale"
    DUPLICATE_TERMINAL = "duplicate_terminal"
    BUSY = "busy"
    MISSING = "missing"


@dataclass(slots=True)
class JobClaim:
    """Claim outcome with the job state observed at claim time."""

    outcome: ClaimOutcome
    job: JobView | None


def payload_to_descriptor(job_id: str, payload: JobPayload) -> dict[str, Any]:
    """Serialize a job payload into the flat bus message body."""

    descriptor: dict[str, Any] = {
        "job_id": job_id,
        "job_type": payload.job_type.value,
        "repo_id": payload.repo.repo_id,
        "repo_full_name": payload.repo.full_name,
    }
    if isinstance(payload, PrAnalysisPayload):
        descriptor.update(
            {
                "pr_number": payload.pr_number,
                "pr_action": payload.action,
                "head_ref": payload.head_ref,
                "base_ref": payload.base_ref,
                "head_sha": payload.head_sha,
            },
        )
    elif isinstance(payload, PushAnalysisPayload):
        descriptor.update(
            {
                "ref": payload.ref,
                "before_sha": payload.before_sha,
                "after_sha": payload.after_sha,
                "changed_files": list(payload.changed_files),
                "commit_count": payload.commit_count,
            },
        )
    elif isinstance(payload, DeltaAnalysisPayload):
        descriptor.update({"base_sha": payload.base_sha, "head_sha": payload.head_sha})
    return descriptor


def descriptor_to_payload(data: dict[str, Any]) -> tuple[str, JobPayload]:
    """Parse a bus message body back into job id and typed payload.

    Raises ``ValueError`` for bodies that do not describe a known job variant.
    """

    job_id = _require_str(data, "job_id")
    try:
        job_type = JobType(_require_str(data, "job_type"))
    except ValueError as error:
        raise ValueError(f"Unknown job type in message: {data.get('job_type')!r}") from error
    repo = RepoRef(
        repo_id=_require_str(data, "repo_id"),
        full_name=_require_str(data, "repo_full_name"),
    )

    if job_type is JobType.INITIAL_INGESTION:
        return job_id, InitialIngestionPayload(repo=repo)
    if job_type is JobType.PR_ANALYSIS:
        pr_number = data.get("pr_number")
        if not isinstance(pr_number, int) or isinstance(pr_number, bool):
            raise ValueError(f"Message field pr_number must be an integer: {pr_number!r}")
        return job_id, PrAnalysisPayload(
            repo=repo,
            pr_number=pr_number,
            action=_require_str(data, "pr_action"),
            head_ref=_optional_str(data, "head_ref"),
            base_ref=_optional_str(data, "base_ref"),
            head_sha=_optional_str(data, "head_sha"),
        )
    if job_type is JobType.PUSH_ANALYSIS:
        changed_files = data.get("changed_files") or []
        if not isinstance(changed_files, list) or not all(
            isinstance(item, str) for item in changed_files
        ):
            raise ValueError("Message field changed_files must be a list of paths.")
        commit_count = data.get("commit_count") or 0
        return job_id, PushAnalysisPayload(
            repo=repo,
            ref=_require_str(data, "ref"),
            before_sha=_optional_str(data, "before_sha"),
            after_sha=_optional_str(data, "after_sha"),
            changed_files=tuple(changed_files),
            commit_count=int(commit_count),
        )
    return job_id, DeltaAnalysisPayload(
        repo=repo,
        base_sha=_require_str(data, "base_sha"),
        head_sha=_require_str(data, "head_sha"),
    )


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Message field {key} is required.")
    return value


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    return str(value)
