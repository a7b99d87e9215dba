"""Error taxonomy for intake, admission and action execution."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


class StorageFailure(RuntimeError):
    """Persistence error; always fatal to the current cycle."""


@dataclass(slots=True)
class AdmissionDenied(Exception):
    """Quota exhausted for an endpoint. Flow control, not a fault."""

    endpoint: str
    reason: str
    retry_after: timedelta

    def __str__(self) -> str:
        return (
            f"Admission denied for {self.endpoint}: {self.reason} "
            f"(retry after {int(self.retry_after.total_seconds())}s)"
        )


@dataclass(slots=True)
class SourceError(Exception):
    """Upstream fetch failed; the cycle continues without ingesting."""

    message: str
    code: str = "source_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class ActionFailure(Exception):
    """Base class for failures raised by action executors."""

    message: str
    code: str = "action_failure"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class TransientActionFailure(ActionFailure):
    """Network or 5xx-class failure; retried on a later cycle."""

    code: str = "transient"


@dataclass(slots=True)
class FatalActionFailure(ActionFailure):
    """Non-retryable failure such as a malformed payload."""

    code: str = "fatal"


@dataclass(slots=True)
class UpstreamRateLimited(TransientActionFailure):
    """Upstream rejected the call with a throttle response (HTTP 429)."""

    code: str = "rate_limited"
    retry_after: int | None = None
