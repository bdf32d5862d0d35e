"""Error taxonomy of the job dispatch pipeline."""

from __future__ import annotations

from datetime import datetime


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ValidationError(PipelineError):
    """Trigger payload is malformed or misses a required field."""


class AuthenticationError(PipelineError):
    """Webhook signature is missing or does not match the request body."""


class TransientDeliveryError(PipelineError):
    """Message bus is temporarily unable to accept a publish."""


class PermanentDeliveryError(PipelineError):
    """Relay entry can no longer be delivered without operator attention."""


class DuplicateDeliveryError(PipelineError):
    """Webhook delivery id was recorded by a concurrent request."""

    def __init__(self, delivery_id: str) -> None:
        super().__init__(f"Webhook delivery already recorded: {delivery_id}")
        self.delivery_id = delivery_id


class ProcessingError(PipelineError):
    """Job routine failed; ``retryable`` controls bus redelivery."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class JobNotFoundError(ProcessingError):
    """Delivered message references a job that does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", retryable=False)
        self.job_id = job_id


class JobBusyError(ProcessingError):
    """Job is in progress on another worker and is not stale yet."""

    def __init__(self, job_id: str, *, retry_at: datetime) -> None:
        super().__init__(f"Job {job_id} is already in progress.", retryable=True)
        self.job_id = job_id
        self.retry_at = retry_at
