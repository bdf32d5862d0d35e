"""Event intake: turn webhooks and manual requests into queued jobs."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from repo_docgen.pipeline.errors import (
    AuthenticationError,
    DuplicateDeliveryError,
    ValidationError,
)
from repo_docgen.pipeline.models import (
    DeltaAnalysisPayload,
    InitialIngestionPayload,
    JobPayload,
    JobType,
    PrAnalysisPayload,
    PushAnalysisPayload,
    RepoRef,
    WebhookDeliveryWrite,
)
from repo_docgen.pipeline.publisher import RelayChannel
from repo_docgen.pipeline.repository import PipelineRepository

logger = logging.getLogger(__name__)

ACCEPTED_PR_ACTIONS = frozenset({"opened", "synchronize", "closed"})
SIGNATURE_PREFIX = "sha256="


@dataclass(slots=True)
class WebhookResult:
    """Outcome of one webhook delivery."""

    delivery_id: str
    event: str
    job_id: str | None
    duplicate: bool = False

    @property
    def job_created(self) -> bool:
        return self.job_id is not None and not self.duplicate

    @property
    def message(self) -> str:
        if self.duplicate:
            return "Webhook already processed"
        if self.job_id is not None:
            return "Webhook processed and job created"
        return "Webhook received but no job created"


def compute_signature(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature of a raw request body."""

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a webhook signature with a constant-time comparison."""

    if not signature:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


class EventIntake:
    """Validates triggers and stores each accepted one as a job plus relay entry."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PipelineRepository,
        topic: str,
        channel: RelayChannel | None = None,
        webhook_secret: str | None = None,
        default_branches: Iterable[str] = ("main", "master"),
    ) -> None:
        self.repository = repository
        self.topic = topic
        self.channel = channel
        self.webhook_secret = webhook_secret
        self.default_branches = tuple(default_branches)

    def submit(
        self,
        payload: JobPayload,
        *,
        metadata: dict[str, Any] | None = None,
        delivery: WebhookDeliveryWrite | None = None,
    ) -> str | None:
        """Create a queued job for an accepted trigger.

        Returns the job id, or ``None`` when the trigger is filtered out.
        Raises ``ValidationError`` when a required field is missing.
        """

        validate_payload(payload)
        reason = self._rejection_reason(payload)
        if reason is not None:
            logger.info(
                "No job created for %s on %s: %s",
                payload.job_type.value,
                payload.repo.full_name,
                reason,
            )
            return None

        job, entry = self.repository.create_job(
            payload,
            topic=self.topic,
            metadata=metadata,
            delivery=delivery,
        )
        logger.info(
            "Queued %s job %s for %s (relay entry %s)",
            job.job_type.value,
            job.job_id,
            job.repo_full_name,
            entry.entry_id,
        )
        if self.channel is not None:
            self.channel.notify(entry.entry_id)
        return job.job_id

    def handle_webhook(
        self,
        *,
        event: str,
        delivery_id: str,
        signature: str | None,
        body: bytes,
    ) -> WebhookResult:
        """Authenticate and route one signed webhook delivery."""

        if not self.webhook_secret:
            logger.warning("Rejected webhook %s: no webhook secret configured", delivery_id)
            raise AuthenticationError("Webhook secret is not configured.")
        if not verify_signature(body, signature, self.webhook_secret):
            logger.warning("Invalid webhook signature for delivery %s", delivery_id)
            raise AuthenticationError("Invalid webhook signature.")

        if not event:
            raise ValidationError("Missing X-GitHub-Event header.")
        if not delivery_id:
            raise ValidationError("Missing X-GitHub-Delivery header.")
        try:
            data = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise ValidationError(f"Webhook body is not valid JSON: {error}") from error
        if not isinstance(data, dict):
            raise ValidationError("Webhook body must be a JSON object.")

        logger.info(
            "GitHub webhook received: event=%s delivery=%s repo=%s",
            event,
            delivery_id,
            (data.get("repository") or {}).get("full_name"),
        )

        existing = self.repository.find_delivery(delivery_id)
        if existing is not None:
            logger.info(
                "Webhook delivery %s already recorded (job %s); skipping",
                delivery_id,
                existing.job_id,
            )
            return WebhookResult(
                delivery_id=delivery_id,
                event=event,
                job_id=existing.job_id,
                duplicate=True,
            )

        delivery = _delivery_write(delivery_id=delivery_id, event=event, data=data)
        job_id: str | None = None
        try:
            if event == "pull_request":
                payload, metadata = _pull_request_payload(data)
                job_id = self.submit(payload, metadata=metadata, delivery=delivery)
            elif event == "push":
                payload, metadata = _push_payload(data)
                job_id = self.submit(payload, metadata=metadata, delivery=delivery)
            else:
                logger.info("Ignoring event type: %s", event)

            if job_id is None:
                self.repository.record_ignored_delivery(delivery)
        except DuplicateDeliveryError:
            existing = self.repository.find_delivery(delivery_id)
            existing_job_id = existing.job_id if existing is not None else None
            logger.info(
                "Webhook delivery %s was recorded by a concurrent request (job %s)",
                delivery_id,
                existing_job_id,
            )
            return WebhookResult(
                delivery_id=delivery_id,
                event=event,
                job_id=existing_job_id,
                duplicate=True,
            )
        return WebhookResult(delivery_id=delivery_id, event=event, job_id=job_id)

    def _rejection_reason(self, payload: JobPayload) -> str | None:
        if isinstance(payload, PrAnalysisPayload) and payload.action not in ACCEPTED_PR_ACTIONS:
            return f"ignoring PR action {payload.action!r}"
        if isinstance(payload, PushAnalysisPayload) and not any(
            payload.ref.endswith(f"/{branch}") for branch in self.default_branches
        ):
            return f"ignoring push to ref {payload.ref!r}"
        return None


def validate_payload(payload: JobPayload) -> None:
    """Raise ``ValidationError`` when a trigger misses a required field."""

    if not payload.repo.repo_id.strip():
        raise ValidationError("Repository id is required.")
    if not payload.repo.full_name.strip():
        raise ValidationError("Repository full name is required.")
    if isinstance(payload, PrAnalysisPayload):
        if payload.pr_number <= 0:
            raise ValidationError(f"PR number must be positive, got {payload.pr_number}.")
        if not payload.action.strip():
            raise ValidationError("PR action is required.")
    elif isinstance(payload, PushAnalysisPayload):
        if not payload.ref.strip():
            raise ValidationError("Push ref is required.")
    elif isinstance(payload, DeltaAnalysisPayload):
        if not payload.base_sha.strip() or not payload.head_sha.strip():
            raise ValidationError("Delta analysis requires both base and head revisions.")


def build_manual_payload(  # noqa: PLR0913
    job_type: JobType,
    *,
    repo_id: str,
    repo_full_name: str,
    pr_number: int | None = None,
    pr_action: str | None = None,
    ref: str | None = None,
    changed_files: Iterable[str] = (),
    base_sha: str | None = None,
    head_sha: str | None = None,
) -> JobPayload:
    """Build a typed payload for an operator-triggered job."""

    repo = RepoRef(repo_id=repo_id.strip(), full_name=repo_full_name.strip())
    if job_type is JobType.INITIAL_INGESTION:
        return InitialIngestionPayload(repo=repo)
    if job_type is JobType.PR_ANALYSIS:
        if pr_number is None:
            raise ValidationError("PR number is required for pr-analysis jobs.")
        return PrAnalysisPayload(
            repo=repo,
            pr_number=pr_number,
            action=pr_action or "opened",
            head_sha=head_sha,
        )
    if job_type is JobType.PUSH_ANALYSIS:
        if not ref:
            raise ValidationError("Ref is required for push-analysis jobs.")
        files = _ordered_unique(changed_files)
        return PushAnalysisPayload(
            repo=repo,
            ref=ref,
            before_sha=base_sha,
            after_sha=head_sha,
            changed_files=files,
            commit_count=0,
        )
    if not base_sha or not head_sha:
        raise ValidationError("Base and head revisions are required for delta-analysis jobs.")
    return DeltaAnalysisPayload(repo=repo, base_sha=base_sha, head_sha=head_sha)


def extract_changed_files(commits: Iterable[dict[str, Any]]) -> tuple[str, ...]:
    """Collect modified and added paths across commits, first-seen order, no duplicates."""

    paths: list[str] = []
    for commit in commits:
        for key in ("modified", "added"):
            for path in commit.get(key) or []:
                if isinstance(path, str) and path:
                    paths.append(path)
    return _ordered_unique(paths)


def _pull_request_payload(data: dict[str, Any]) -> tuple[PrAnalysisPayload, dict[str, Any]]:
    repo = _repo_ref(data)
    pr = data.get("pull_request")
    if not isinstance(pr, dict):
        raise ValidationError("pull_request event without pull_request object.")
    number = pr.get("number")
    if not isinstance(number, int) or isinstance(number, bool):
        raise ValidationError("pull_request.number is required.")
    head = pr.get("head") or {}
    base = pr.get("base") or {}
    payload = PrAnalysisPayload(
        repo=repo,
        pr_number=number,
        action=str(data.get("action") or ""),
        head_ref=head.get("ref"),
        base_ref=base.get("ref"),
        head_sha=head.get("sha"),
    )
    metadata = {
        "sender": (data.get("sender") or {}).get("login"),
        "pr_state": pr.get("state"),
    }
    return payload, metadata


def _push_payload(data: dict[str, Any]) -> tuple[PushAnalysisPayload, dict[str, Any]]:
    repo = _repo_ref(data)
    commits = [commit for commit in data.get("commits") or [] if isinstance(commit, dict)]
    payload = PushAnalysisPayload(
        repo=repo,
        ref=str(data.get("ref") or ""),
        before_sha=data.get("before"),
        after_sha=data.get("after"),
        changed_files=extract_changed_files(commits),
        commit_count=len(commits),
    )
    metadata = {"sender": (data.get("sender") or {}).get("login")}
    return payload, metadata


def _repo_ref(data: dict[str, Any]) -> RepoRef:
    repository = data.get("repository")
    if not isinstance(repository, dict):
        raise ValidationError("Webhook payload has no repository object.")
    repo_id = repository.get("id")
    full_name = repository.get("full_name")
    if repo_id is None or str(repo_id).strip() == "":
        raise ValidationError("repository.id is required.")
    if not isinstance(full_name, str) or not full_name.strip():
        raise ValidationError("repository.full_name is required.")
    return RepoRef(repo_id=str(repo_id), full_name=full_name)


def _delivery_write(*, delivery_id: str, event: str, data: dict[str, Any]) -> WebhookDeliveryWrite:
    repository = data.get("repository") if isinstance(data.get("repository"), dict) else {}
    action = data.get("action")
    return WebhookDeliveryWrite(
        delivery_id=delivery_id,
        event=event,
        repo_id=str(repository.get("id") or ""),
        repo_full_name=str(repository.get("full_name") or ""),
        action=action if isinstance(action, str) else None,
    )


def _ordered_unique(values: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return tuple(ordered)
