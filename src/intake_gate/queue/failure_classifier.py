"""Deterministic classification of executor exceptions for retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from intake_gate.errors import (
    ActionFailure,
    FatalActionFailure,
    TransientActionFailure,
    UpstreamRateLimited,
)
from intake_gate.models import ActionOutcome

ACTION_FAILURE_CLASSIFIER_VERSION = 2

_THROTTLE_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "try again later",
)
_THROTTLE_STATUS_CODES: tuple[str, ...] = ("429",)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "internal server error",
    "connection reset",
    "connection refused",
    "connection aborted",
    "network error",
    "could not resolve host",
)
_TRANSIENT_STATUS_CODES: tuple[str, ...] = ("500", "502", "503", "504")


@dataclass(slots=True)
class ActionFailureClassification:
    """Normalized failure classification result."""

    outcome: ActionOutcome
    reason_code: str
    matched_rule: str
    matched_pattern: str | None
    retry_after: int | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for work item events."""

        return {
            "classifier_version": ACTION_FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_action_failure(error: Exception) -> ActionFailureClassification:
    """Map an exception raised by an executor to an action outcome.

    Typed ``ActionFailure`` subclasses win; anything else falls back to
    message patterns and is treated as fatal when nothing matches.
    """

    if isinstance(error, UpstreamRateLimited):
        return ActionFailureClassification(
            outcome=ActionOutcome.RATE_LIMITED,
            reason_code=error.code,
            matched_rule="typed_rate_limited",
            matched_pattern=None,
            retry_after=error.retry_after,
        )
    if isinstance(error, TransientActionFailure):
        return ActionFailureClassification(
            outcome=ActionOutcome.RETRYABLE_ERROR,
            reason_code=error.code,
            matched_rule="typed_transient",
            matched_pattern=None,
        )
    if isinstance(error, FatalActionFailure):
        return ActionFailureClassification(
            outcome=ActionOutcome.FATAL_ERROR,
            reason_code=error.code,
            matched_rule="typed_fatal",
            matched_pattern=None,
        )

    haystack = _normalize_text(error)

    pattern = _first_match(haystack, _THROTTLE_PATTERNS) or _first_status_code(
        haystack,
        _THROTTLE_STATUS_CODES,
    )
    if pattern is not None:
        return ActionFailureClassification(
            outcome=ActionOutcome.RATE_LIMITED,
            reason_code="rate_limited",
            matched_rule="throttle",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS) or _first_status_code(
        haystack,
        _TRANSIENT_STATUS_CODES,
    )
    if pattern is not None or isinstance(error, (TimeoutError, ConnectionError)):
        return ActionFailureClassification(
            outcome=ActionOutcome.RETRYABLE_ERROR,
            reason_code="transient",
            matched_rule="generic_transient" if pattern is not None else "transient_exception",
            matched_pattern=pattern,
        )

    return ActionFailureClassification(
        outcome=ActionOutcome.FATAL_ERROR,
        reason_code=error.code if isinstance(error, ActionFailure) else "fatal",
        matched_rule="fallback_fatal",
        matched_pattern=None,
    )


def _normalize_text(error: Exception) -> str:
    return f"{type(error).__name__}: {error}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _first_status_code(haystack: str, codes: tuple[str, ...]) -> str | None:
    """Match a status code only as a standalone number, never inside an id."""

    for code in codes:
        if re.search(rf"(?<!\d){code}(?!\d)", haystack):
            return code
    return None
