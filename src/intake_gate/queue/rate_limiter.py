"""Multi-window admission control with fair-share and priority-exempt tiers."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from intake_gate.errors import AdmissionDenied
from intake_gate.models import (
    AdmissionDecision,
    CallerAllocation,
    CallerPriority,
    EndpointLimits,
    UsageWindowView,
    WindowCapacity,
    WindowKind,
)
from intake_gate.queue.headers import parse_rate_limit_headers
from intake_gate.queue.usage_store import UsageStore
from intake_gate.storage.common import utc_now

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(slots=True)
class _WindowCheck:
    kind: WindowKind
    limit: int
    window: UsageWindowView
    allowance: int | None
    remaining: int
    denial: str | None
    retry_after: timedelta | None


def aligned_window_start(kind: WindowKind, now: datetime) -> datetime:
    """Floor ``now`` to the window boundary: ``floor(now / size) * size``."""

    size = int(kind.length.total_seconds())
    elapsed = int((now.astimezone(UTC) - _EPOCH).total_seconds())
    return _EPOCH + timedelta(seconds=(elapsed // size) * size)


class RateLimiter:
    """Decides whether a caller may hit an endpoint now, and books the usage.

    Every configured window kind must allow the call. Fair-share endpoints
    split each window's limit across active callers; priority-exempt
    endpoints and critical callers are only held to the window total.
    """

    def __init__(
        self,
        *,
        usage_store: UsageStore,
        endpoints: Mapping[str, EndpointLimits],
        known_callers: tuple[str, ...] = (),
        clock: Callable[[], datetime] = utc_now,
        header_window: WindowKind = WindowKind.SHORT,
    ) -> None:
        self.usage_store = usage_store
        self.endpoints = dict(endpoints)
        self.known_callers = known_callers
        self.clock = clock
        self.header_window = header_window

    def can_proceed(
        self,
        endpoint: str,
        caller: str,
        priority: CallerPriority = CallerPriority.MEDIUM,
    ) -> AdmissionDecision:
        """Check every window kind; deny if any one of them is exhausted."""

        checks = self._evaluate(endpoint=endpoint, caller=caller, priority=priority)
        denied = [check for check in checks if check.denial is not None]
        if not denied:
            return AdmissionDecision(allowed=True)

        binding = max(denied, key=lambda check: check.retry_after or timedelta(0))
        return AdmissionDecision(
            allowed=False,
            retry_after=binding.retry_after,
            reason=f"{binding.denial} ({binding.kind.value} window)",
            window_kind=binding.kind,
        )

    def require(
        self,
        endpoint: str,
        caller: str,
        priority: CallerPriority = CallerPriority.MEDIUM,
    ) -> None:
        """Raise AdmissionDenied when the call is not allowed right now."""

        decision = self.can_proceed(endpoint, caller, priority)
        if not decision.allowed:
            raise AdmissionDenied(
                endpoint=endpoint,
                reason=decision.reason or "denied",
                retry_after=decision.retry_after or timedelta(0),
            )

    def affordable(
        self,
        endpoint: str,
        caller: str,
        priority: CallerPriority = CallerPriority.MEDIUM,
        *,
        cap: int,
    ) -> int:
        """How many calls the caller may issue now, bounded by ``cap``."""

        if cap <= 0:
            return 0
        checks = self._evaluate(endpoint=endpoint, caller=caller, priority=priority)
        if any(check.denial is not None for check in checks):
            return 0
        remaining = min((check.remaining for check in checks), default=cap)
        return max(0, min(cap, remaining))

    def record(
        self,
        endpoint: str,
        caller: str,
        success: bool,
        headers: Mapping[str, str] | None = None,
        *,
        rate_limited: bool = False,
    ) -> None:
        """Book one attempted call.

        A failure that is itself an upstream throttle is not charged; any
        other attempt consumed quota and is. Headers, when present,
        overwrite the local estimate for the header window.
        """

        limits = self._limits(endpoint)
        now = self.clock()
        charge = success or not rate_limited
        if charge:
            for kind, _limit in limits.configured_windows():
                self.usage_store.increment(
                    endpoint,
                    kind,
                    aligned_window_start(kind, now),
                    caller,
                )

        parsed = parse_rate_limit_headers(headers)
        if parsed is None:
            return
        reset_at = parsed.reset_at
        if reset_at is None and parsed.retry_after_seconds is not None:
            reset_at = now + timedelta(seconds=max(0, parsed.retry_after_seconds))
        kind = self.header_window
        self.usage_store.reconcile(
            endpoint,
            parsed.remaining,
            reset_at,
            window_kind=kind,
            window_start=aligned_window_start(kind, now),
            limit=parsed.limit or limits.limit_for(kind),
        )

    def remaining_capacity(self, endpoint: str) -> list[WindowCapacity]:
        """Remaining total capacity per window kind, regardless of caller."""

        limits = self._limits(endpoint)
        now = self.clock()
        capacity: list[WindowCapacity] = []
        for kind, limit in limits.configured_windows():
            window = self.usage_store.get(endpoint, kind, aligned_window_start(kind, now))
            capacity.append(
                WindowCapacity(
                    window_kind=kind,
                    limit=limit,
                    used=window.used_as_of(now),
                    remaining=max(0, limit - window.used_as_of(now)),
                    resets_at=_resets_at(window=window, now=now),
                ),
            )
        return capacity

    def caller_allocation(
        self,
        endpoint: str,
        caller: str,
        priority: CallerPriority = CallerPriority.MEDIUM,
    ) -> list[CallerAllocation]:
        """Per-window allowance and usage for one caller."""

        checks = self._evaluate(endpoint=endpoint, caller=caller, priority=priority)
        active = len(self._active_callers(checks=checks, caller=caller))
        return [
            CallerAllocation(
                window_kind=check.kind,
                allowance=check.allowance if check.allowance is not None else check.limit,
                used_by_caller=check.window.per_caller_usage.get(caller, 0),
                active_callers=active,
            )
            for check in checks
        ]

    def _evaluate(
        self,
        *,
        endpoint: str,
        caller: str,
        priority: CallerPriority,
    ) -> list[_WindowCheck]:
        limits = self._limits(endpoint)
        now = self.clock()
        windows = [
            (kind, limit, self.usage_store.get(endpoint, kind, aligned_window_start(kind, now)))
            for kind, limit in limits.configured_windows()
        ]
        fair = (
            limits.fair_share
            and not limits.priority_exempt
            and priority != CallerPriority.CRITICAL
        )
        active = len(
            self._active_callers(
                checks=[window for _kind, _limit, window in windows],
                caller=caller,
            ),
        )

        checks: list[_WindowCheck] = []
        for kind, limit, window in windows:
            used_total = window.used_as_of(now)
            used_by_caller = window.per_caller_usage.get(caller, 0)
            allowance: int | None = None
            denial: str | None = None
            retry_after: timedelta | None = None
            remaining = max(0, limit - used_total)

            if fair:
                allowance = limit // max(1, active)
                remaining = min(remaining, max(0, allowance - used_by_caller))
                if allowance == 0:
                    denial = "starved"
                    retry_after = kind.length
                elif used_by_caller >= allowance:
                    denial = "caller_share_exhausted"
            if denial is None and used_total >= limit:
                denial = "window_exhausted"
            if denial == "window_exhausted":
                retry_after = _reopens_at(window=window, limit=limit, now=now) - now
            elif denial == "caller_share_exhausted":
                retry_after = window.window_end - now

            checks.append(
                _WindowCheck(
                    kind=kind,
                    limit=limit,
                    window=window,
                    allowance=allowance,
                    remaining=remaining,
                    denial=denial,
                    retry_after=retry_after,
                ),
            )
        if any(check.denial is not None for check in checks):
            logger.debug(
                "Admission denied for %s caller=%s priority=%s: %s",
                endpoint,
                caller,
                priority.value,
                ", ".join(
                    f"{check.kind.value}={check.denial}" for check in checks if check.denial
                ),
            )
        return checks

    def _active_callers(
        self,
        *,
        checks: list[_WindowCheck] | list[UsageWindowView],
        caller: str,
    ) -> set[str]:
        active = set(self.known_callers)
        active.add(caller)
        for item in checks:
            window = item.window if isinstance(item, _WindowCheck) else item
            active.update(name for name, used in window.per_caller_usage.items() if used > 0)
        return active

    def _limits(self, endpoint: str) -> EndpointLimits:
        limits = self.endpoints.get(endpoint)
        if limits is None:
            raise ValueError(f"Unknown endpoint: {endpoint}")
        return limits


def _resets_at(*, window: UsageWindowView, now: datetime) -> datetime:
    window_end = window.window_end
    upstream = window.upstream_reset_at
    if upstream is not None and now < upstream < window_end:
        return upstream
    return window_end


def _reopens_at(*, window: UsageWindowView, limit: int, now: datetime) -> datetime:
    """When an exhausted window admits again.

    The upstream reset only helps if the calls booked since the reconcile
    leave room under the limit.
    """

    reset_at = _resets_at(window=window, now=now)
    if reset_at < window.window_end and window.used_since_reconcile >= limit:
        return window.window_end
    return reset_at
