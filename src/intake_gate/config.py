"""Runtime configuration for the intake queue and rate limiter."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from intake_gate.models import EndpointLimits


def default_endpoints() -> dict[str, EndpointLimits]:
    """Upstream quota table used when INTAKE_GATE_ENDPOINTS is not set."""

    return {
        "search_tweets": EndpointLimits(
            name="search_tweets",
            short_limit=180,
            medium_limit=720,
            long_limit=17_280,
            fair_share=True,
        ),
        "post_tweet": EndpointLimits(
            name="post_tweet",
            short_limit=50,
            medium_limit=200,
            long_limit=2_400,
            fair_share=False,
            priority_exempt=True,
        ),
        "reply_tweet": EndpointLimits(
            name="reply_tweet",
            short_limit=50,
            medium_limit=200,
            long_limit=2_400,
            fair_share=False,
            priority_exempt=True,
        ),
        "fetch_mentions": EndpointLimits(
            name="fetch_mentions",
            short_limit=75,
            medium_limit=300,
            long_limit=7_200,
            fair_share=True,
        ),
        "get_user": EndpointLimits(
            name="get_user",
            short_limit=75,
            medium_limit=300,
            long_limit=7_200,
            fair_share=True,
        ),
    }


@dataclass(slots=True)
class QueueSettings:
    """Work queue settings."""

    max_retries: int = 3
    max_batch: int = 10
    stale_processing_seconds: int = 1_800


@dataclass(slots=True)
class DispatchSettings:
    """Dispatcher identity and endpoint wiring."""

    caller_id: str = "default"
    source: str = "mentions"
    fetch_endpoint: str | None = "fetch_mentions"
    action_endpoint: str = "reply_tweet"
    known_callers: tuple[str, ...] = ()
    action_cadence_seconds: int = 60


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".intake_gate.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    endpoints: dict[str, EndpointLimits] = field(default_factory=default_endpoints)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        fetch_endpoint = os.getenv("INTAKE_GATE_FETCH_ENDPOINT", "fetch_mentions").strip()
        settings = cls(
            db_path=db_path or Path(os.getenv("INTAKE_GATE_DB_PATH", ".intake_gate.db")),
            sqlite_busy_timeout_ms=int(os.getenv("INTAKE_GATE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                max_retries=int(os.getenv("INTAKE_GATE_MAX_RETRIES", "3")),
                max_batch=int(os.getenv("INTAKE_GATE_MAX_BATCH", "10")),
                stale_processing_seconds=int(
                    os.getenv("INTAKE_GATE_STALE_PROCESSING_SECONDS", "1800"),
                ),
            ),
            dispatch=DispatchSettings(
                caller_id=os.getenv("INTAKE_GATE_CALLER_ID", "default").strip(),
                source=os.getenv("INTAKE_GATE_SOURCE", "mentions").strip(),
                fetch_endpoint=fetch_endpoint or None,
                action_endpoint=os.getenv("INTAKE_GATE_ACTION_ENDPOINT", "reply_tweet").strip(),
                known_callers=_collect_callers(),
                action_cadence_seconds=int(
                    os.getenv("INTAKE_GATE_ACTION_CADENCE_SECONDS", "60"),
                ),
            ),
            endpoints=_collect_endpoints(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error on inconsistent settings."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("INTAKE_GATE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.max_retries <= 0:
            raise ValueError("INTAKE_GATE_MAX_RETRIES must be > 0.")
        if self.queue.max_batch <= 0:
            raise ValueError("INTAKE_GATE_MAX_BATCH must be > 0.")
        if self.queue.stale_processing_seconds <= 0:
            raise ValueError("INTAKE_GATE_STALE_PROCESSING_SECONDS must be > 0.")
        if not self.dispatch.caller_id:
            raise ValueError("INTAKE_GATE_CALLER_ID must not be empty.")
        if not self.dispatch.source:
            raise ValueError("INTAKE_GATE_SOURCE must not be empty.")
        if self.dispatch.action_cadence_seconds < 0:
            raise ValueError("INTAKE_GATE_ACTION_CADENCE_SECONDS must be >= 0.")
        if self.dispatch.action_endpoint not in self.endpoints:
            raise ValueError(
                f"Unknown action endpoint {self.dispatch.action_endpoint!r}; "
                "add it to INTAKE_GATE_ENDPOINTS.",
            )
        fetch_endpoint = self.dispatch.fetch_endpoint
        if fetch_endpoint is not None and fetch_endpoint not in self.endpoints:
            raise ValueError(
                f"Unknown fetch endpoint {fetch_endpoint!r}; add it to INTAKE_GATE_ENDPOINTS.",
            )
        for endpoint in self.endpoints.values():
            if not endpoint.configured_windows():
                raise ValueError(f"Endpoint {endpoint.name!r} has no window limits.")
            for kind, limit in endpoint.configured_windows():
                if limit < 0:
                    raise ValueError(
                        f"Endpoint {endpoint.name!r} {kind.value} limit must be >= 0, got {limit}.",
                    )
            if endpoint.max_retries is not None and endpoint.max_retries <= 0:
                raise ValueError(f"Endpoint {endpoint.name!r} retries must be > 0.")


def _collect_callers() -> tuple[str, ...]:
    raw = os.getenv("INTAKE_GATE_CALLERS", "").strip()
    if not raw:
        return ()
    deduped: list[str] = []
    for part in raw.split(","):
        caller = part.strip()
        if caller and caller not in deduped:
            deduped.append(caller)
    return tuple(deduped)


def _collect_endpoints() -> dict[str, EndpointLimits]:
    raw = os.getenv("INTAKE_GATE_ENDPOINTS", "").strip()
    if not raw:
        return default_endpoints()

    endpoints: dict[str, EndpointLimits] = {}
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        endpoint = parse_endpoint_spec(token)
        endpoints[endpoint.name] = endpoint
    return endpoints


def parse_endpoint_spec(token: str) -> EndpointLimits:
    """Parse ``name:short/medium/long[:flag,...]``; ``-`` leaves a window unlimited."""

    pieces = [piece.strip() for piece in token.split(":")]
    if len(pieces) not in {2, 3} or not pieces[0]:
        raise ValueError(
            "Invalid INTAKE_GATE_ENDPOINTS entry: "
            f"{token!r}. Expected format '<name>:<short>/<medium>/<long>[:<flags>]'.",
        )
    name, limits_raw = pieces[0], pieces[1]
    limit_parts = [value.strip() for value in limits_raw.split("/")]
    if len(limit_parts) != 3:
        raise ValueError(
            f"Invalid INTAKE_GATE_ENDPOINTS limits for {name!r}: {limits_raw!r} "
            "(expected three values separated by '/')",
        )
    short_limit, medium_limit, long_limit = (
        _parse_limit(name=name, value=value) for value in limit_parts
    )

    fair_share = False
    priority_exempt = False
    max_retries: int | None = None
    flags = pieces[2] if len(pieces) == 3 else ""
    for flag_raw in flags.split(","):
        flag = flag_raw.strip().lower()
        if not flag:
            continue
        if flag == "fair":
            fair_share = True
        elif flag == "exempt":
            priority_exempt = True
        elif flag.startswith("retries="):
            try:
                max_retries = int(flag.split("=", 1)[1])
            except ValueError as error:
                raise ValueError(
                    f"Invalid retries flag for endpoint {name!r}: {flag_raw!r}",
                ) from error
        else:
            raise ValueError(
                f"Unknown flag {flag_raw!r} for endpoint {name!r}; "
                "expected fair, exempt or retries=N",
            )

    return EndpointLimits(
        name=name,
        short_limit=short_limit,
        medium_limit=medium_limit,
        long_limit=long_limit,
        fair_share=fair_share,
        priority_exempt=priority_exempt,
        max_retries=max_retries,
    )


def _parse_limit(*, name: str, value: str) -> int | None:
    if value in {"", "-"}:
        return None
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid limit for endpoint {name!r}: {value!r}") from error
