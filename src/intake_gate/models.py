"""Domain models for the intake queue, usage windows and dispatch cycles."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

LOWEST_URGENCY_PRIORITY = 100


class WorkItemStatus(str, Enum):
    """Durable work item lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {WorkItemStatus.COMPLETED, WorkItemStatus.FAILED}


class WorkOutcome(str, Enum):
    """Outcome recorded for a claimed work item."""

    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"


class WindowKind(str, Enum):
    """Overlapping quota buckets that must all permit a call."""

    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"

    @property
    def length(self) -> timedelta:
        return WINDOW_LENGTHS[self]


WINDOW_LENGTHS: dict[WindowKind, timedelta] = {
    WindowKind.SHORT: timedelta(minutes=15),
    WindowKind.MEDIUM: timedelta(hours=1),
    WindowKind.LONG: timedelta(days=1),
}


class CallerPriority(str, Enum):
    """Caller urgency presented to the rate limiter."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActionOutcome(str, Enum):
    """Result class reported by an action executor."""

    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable_error"
    FATAL_ERROR = "fatal_error"
    RATE_LIMITED = "rate_limited"


@dataclass(slots=True)
class EndpointLimits:
    """Static quota configuration for one upstream endpoint."""

    name: str
    short_limit: int | None = None
    medium_limit: int | None = None
    long_limit: int | None = None
    fair_share: bool = True
    priority_exempt: bool = False
    max_retries: int | None = None

    def limit_for(self, kind: WindowKind) -> int | None:
        if kind == WindowKind.SHORT:
            return self.short_limit
        if kind == WindowKind.MEDIUM:
            return self.medium_limit
        return self.long_limit

    def configured_windows(self) -> list[tuple[WindowKind, int]]:
        windows: list[tuple[WindowKind, int]] = []
        for kind in WindowKind:
            limit = self.limit_for(kind)
            if limit is not None:
                windows.append((kind, limit))
        return windows


@dataclass(slots=True)
class WorkItemWrite:
    """Inbound item as handed over by the upstream source."""

    item_id: str
    payload: str
    item_type: str = "item"
    priority: int = LOWEST_URGENCY_PRIORITY
    received_at: datetime | None = None


@dataclass(slots=True)
class WorkItemView:
    """Readable work item state."""

    item_id: str
    item_type: str
    payload: str
    status: WorkItemStatus
    priority: int
    retry_count: int
    max_retries: int
    last_error: str | None
    claimed_by: str | None
    claimed_at: datetime | None
    received_at: datetime
    processed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class WorkItemEventView:
    """Work item transition entry for audit trail."""

    event_id: int
    item_id: str
    event_type: str
    status_from: WorkItemStatus | None
    status_to: WorkItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IngestResult:
    """Counters for one ingest call."""

    inserted: int = 0
    refreshed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.refreshed + self.skipped


@dataclass(slots=True)
class QueueStats:
    """Work item counts by status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    with_errors: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed


@dataclass(slots=True)
class UsageWindowView:
    """One usage counter bucket with per-caller breakdown."""

    endpoint: str
    window_kind: WindowKind
    window_start: datetime
    used: int
    per_caller_usage: dict[str, int]
    upstream_remaining: int | None = None
    upstream_reset_at: datetime | None = None
    reconciled_used: int | None = None

    @property
    def window_end(self) -> datetime:
        return self.window_start + self.window_kind.length

    @property
    def used_since_reconcile(self) -> int:
        if self.reconciled_used is None:
            return self.used
        return max(0, self.used - self.reconciled_used)

    def used_as_of(self, now: datetime) -> int:
        """Usage still charged at ``now``.

        Once the upstream reset has passed, the count reported by the
        upstream no longer applies; only calls booked after it was
        reconciled are kept.
        """

        if self.upstream_reset_at is None or now < self.upstream_reset_at:
            return self.used
        return self.used_since_reconcile


@dataclass(slots=True)
class AdmissionDecision:
    """Answer to a can-proceed query."""

    allowed: bool
    retry_after: timedelta | None = None
    reason: str | None = None
    window_kind: WindowKind | None = None


@dataclass(slots=True)
class WindowCapacity:
    """Remaining capacity for one window kind."""

    window_kind: WindowKind
    limit: int
    used: int
    remaining: int
    resets_at: datetime


@dataclass(slots=True)
class CallerAllocation:
    """Fair-share allocation of one caller in one window kind."""

    window_kind: WindowKind
    allowance: int
    used_by_caller: int
    active_callers: int

    @property
    def remaining(self) -> int:
        return max(0, self.allowance - self.used_by_caller)


@dataclass(slots=True)
class RateLimitHeaders:
    """Authoritative quota info reported by the upstream API."""

    limit: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None
    retry_after_seconds: int | None = None


@dataclass(slots=True)
class CheckpointView:
    """Durable fetch cursor for one upstream source."""

    source: str
    cursor: str | None
    last_ingest_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class FetchResult:
    """One upstream fetch batch."""

    items: list[WorkItemWrite]
    newest_id: str | None = None
    headers: dict[str, str] | None = None


@dataclass(slots=True)
class ActionResult:
    """Action executor verdict for one work item."""

    outcome: ActionOutcome
    error: str | None = None
    headers: dict[str, str] | None = None


@dataclass(slots=True)
class CycleSummary:
    """Aggregate counters for one dispatcher cycle."""

    fetched: int = 0
    ingested: int = 0
    refreshed: int = 0
    skipped: int = 0
    checkpoint: str | None = None
    fetch_skipped_reason: str | None = None
    affordable: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0
    drain_skipped_reason: str | None = None
