"""Rate limit header extraction for upstream responses."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime

from intake_gate.models import RateLimitHeaders

LIMIT_HEADER = "x-rate-limit-limit"
REMAINING_HEADER = "x-rate-limit-remaining"
RESET_HEADER = "x-rate-limit-reset"
RETRY_AFTER_HEADER = "retry-after"


def parse_rate_limit_headers(headers: Mapping[str, str] | None) -> RateLimitHeaders | None:
    """Extract quota fields; returns None when no rate limit header is present."""

    if not headers:
        return None
    normalized = {str(key).strip().lower(): str(value).strip() for key, value in headers.items()}

    limit = _parse_int(normalized.get(LIMIT_HEADER))
    remaining = _parse_int(normalized.get(REMAINING_HEADER))
    reset_epoch = _parse_int(normalized.get(RESET_HEADER))
    retry_after = _parse_int(normalized.get(RETRY_AFTER_HEADER))
    if limit is None and remaining is None and reset_epoch is None and retry_after is None:
        return None

    reset_at = (
        datetime.fromtimestamp(reset_epoch, tz=UTC)
        if reset_epoch is not None and reset_epoch > 0
        else None
    )
    return RateLimitHeaders(
        limit=limit if limit is not None and limit > 0 else None,
        remaining=remaining,
        reset_at=reset_at,
        retry_after_seconds=retry_after,
    )


def _parse_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    value = raw.replace(",", "").strip()
    if not value.lstrip("-").isdigit():
        return None
    return int(value)
