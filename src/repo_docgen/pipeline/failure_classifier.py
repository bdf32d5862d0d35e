"""Deterministic publish failure classification for relay retry policy."""

from __future__ import annotations

import json
from dataclasses import dataclass

from repo_docgen.pipeline.errors import PermanentDeliveryError, TransientDeliveryError
from repo_docgen.pipeline.models import DeliveryFailureClass

DELIVERY_FAILURE_CLASSIFIER_VERSION = 1

_NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "permission denied",
    "forbidden",
    "unauthorized",
    "invalid topic",
    "invalid argument",
    "message too large",
    "payload too large",
    "not serializable",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "unavailable",
    "timed out",
    "timeout",
    "deadline exceeded",
    "connection reset",
    "connection refused",
    "database is locked",
    "topic not found",
    "try again",
)


@dataclass(slots=True)
class DeliveryFailureClassification:
    """Normalized publish failure classification result."""

    failure_class: DeliveryFailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class is DeliveryFailureClass.TRANSIENT

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": DELIVERY_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_delivery_failure(error: BaseException) -> DeliveryFailureClassification:
    """Classify a publish failure; anything unrecognized is treated as transient."""

    if isinstance(error, PermanentDeliveryError):
        return DeliveryFailureClassification(
            failure_class=DeliveryFailureClass.NON_RETRYABLE,
            matched_rule="permanent_delivery_error",
            matched_pattern=None,
        )
    if isinstance(error, TransientDeliveryError):
        return DeliveryFailureClassification(
            failure_class=DeliveryFailureClass.TRANSIENT,
            matched_rule="transient_delivery_error",
            matched_pattern=None,
        )
    if isinstance(error, (TypeError, json.JSONDecodeError)):
        return DeliveryFailureClassification(
            failure_class=DeliveryFailureClass.NON_RETRYABLE,
            matched_rule="serialization_error",
            matched_pattern=None,
        )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _NON_RETRYABLE_PATTERNS)
    if pattern is not None:
        return DeliveryFailureClassification(
            failure_class=DeliveryFailureClass.NON_RETRYABLE,
            matched_rule="non_retryable_message",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return DeliveryFailureClassification(
            failure_class=DeliveryFailureClass.TRANSIENT,
            matched_rule="transient_message",
            matched_pattern=pattern,
        )

    if isinstance(error, (ConnectionError, TimeoutError, OSError)):
        return DeliveryFailureClassification(
            failure_class=DeliveryFailureClass.TRANSIENT,
            matched_rule="network_error",
            matched_pattern=None,
        )

    return DeliveryFailureClassification(
        failure_class=DeliveryFailureClass.TRANSIENT,
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
