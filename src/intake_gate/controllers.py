"""Controllers for queue operations CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from intake_gate.config import Settings
from intake_gate.models import WorkItemStatus
from intake_gate.queue.checkpoint import Checkpoint
from intake_gate.queue.rate_limiter import RateLimiter
from intake_gate.queue.usage_store import UsageStore
from intake_gate.queue.work_queue import WorkQueue
from intake_gate.storage.common import utc_now
from intake_gate.storage.database import Database


@dataclass(slots=True)
class InitDbCommand:
    """CLI inputs for schema initialization."""

    db_path: Path | None


@dataclass(slots=True)
class QueueListCommand:
    """CLI inputs for queue listing."""

    db_path: Path | None
    status: WorkItemStatus | None
    limit: int


@dataclass(slots=True)
class QueueReapCommand:
    """CLI inputs for stale claim recovery."""

    db_path: Path | None
    older_than_seconds: int | None


@dataclass(slots=True)
class LimitsShowCommand:
    """CLI inputs for quota inspection."""

    db_path: Path | None
    endpoint: str | None
    caller: str | None


@dataclass(slots=True)
class CheckpointSetCommand:
    """CLI inputs for seeding the fetch cursor."""

    db_path: Path | None
    cursor: str


@dataclass(slots=True)
class UsagePruneCommand:
    """CLI inputs for usage window retention."""

    db_path: Path | None
    keep_days: int


@dataclass(slots=True)
class UsageClearCommand:
    """CLI inputs for resetting recorded usage."""

    db_path: Path | None
    endpoint: str | None


class IntakeCliController:
    """Coordinates operations command execution."""

    def init_db(self, command: InitDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings):
            pass
        return [f"Schema ready: {settings.db_path}"]

    def queue_stats(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _database(settings) as database:
            stats = WorkQueue(database, max_retries=settings.queue.max_retries).stats()
        return [
            f"Work items: {stats.total}",
            f"  pending={stats.pending} processing={stats.processing} "
            f"completed={stats.completed} failed={stats.failed}",
            f"  with_errors={stats.with_errors}",
        ]

    def queue_list(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            items = WorkQueue(database, max_retries=settings.queue.max_retries).list_items(
                status=command.status,
                limit=command.limit,
            )
        if not items:
            return ["No work items."]
        lines: list[str] = []
        for item in items:
            lines.append(
                f"{item.item_id} type={item.item_type} status={item.status.value} "
                f"priority={item.priority} retries={item.retry_count}/{item.max_retries} "
                f"received_at={item.received_at.isoformat()} "
                f"claimed_by={item.claimed_by or '-'}",
            )
            if item.last_error:
                lines.append(f"  last_error: {item.last_error}")
        return lines

    def queue_reap(self, command: QueueReapCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        seconds = command.older_than_seconds or settings.queue.stale_processing_seconds
        with _database(settings) as database:
            released = WorkQueue(
                database,
                max_retries=settings.queue.max_retries,
            ).release_stale(timedelta(seconds=seconds))
        return [f"Released stale claims: {released} (older than {seconds}s)"]

    def limits_show(self, command: LimitsShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.endpoint is not None and command.endpoint not in settings.endpoints:
            raise ValueError(f"Unknown endpoint: {command.endpoint}")
        names = [command.endpoint] if command.endpoint else sorted(settings.endpoints)
        caller = command.caller or settings.dispatch.caller_id

        lines: list[str] = []
        with _database(settings) as database:
            limiter = RateLimiter(
                usage_store=UsageStore(database),
                endpoints=settings.endpoints,
                known_callers=settings.dispatch.known_callers,
            )
            for name in names:
                limits = settings.endpoints[name]
                flags = [
                    flag
                    for flag, enabled in (
                        ("fair", limits.fair_share),
                        ("exempt", limits.priority_exempt),
                    )
                    if enabled
                ]
                lines.append(f"{name} [{','.join(flags) or '-'}]")
                allocations = {
                    allocation.window_kind: allocation
                    for allocation in limiter.caller_allocation(name, caller)
                }
                for capacity in limiter.remaining_capacity(name):
                    allocation = allocations.get(capacity.window_kind)
                    share = (
                        f" {caller}={allocation.used_by_caller}/{allocation.allowance}"
                        if allocation is not None
                        and limits.fair_share
                        and not limits.priority_exempt
                        else ""
                    )
                    lines.append(
                        f"  {capacity.window_kind.value}: used={capacity.used}/{capacity.limit} "
                        f"remaining={capacity.remaining} "
                        f"resets_at={capacity.resets_at.isoformat()}{share}",
                    )
        return lines

    def checkpoint_show(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _database(settings) as database:
            state = Checkpoint(database, source=settings.dispatch.source).state()
        if state is None:
            return [f"Checkpoint {settings.dispatch.source}: none"]
        last_ingest = state.last_ingest_at.isoformat() if state.last_ingest_at else "-"
        return [
            f"Checkpoint {state.source}: cursor={state.cursor or '-'} "
            f"last_ingest_at={last_ingest} updated_at={state.updated_at.isoformat()}",
        ]

    def checkpoint_set(self, command: CheckpointSetCommand) -> list[str]:
        """Seed the cursor by hand so a fresh deployment skips the backlog."""

        cursor = command.cursor.strip()
        if not cursor:
            raise ValueError("Checkpoint cursor must not be empty")
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            Checkpoint(database, source=settings.dispatch.source).advance(cursor)
        return [f"Checkpoint {settings.dispatch.source}: cursor={cursor}"]

    def usage_prune(self, command: UsagePruneCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        cutoff = utc_now() - timedelta(days=command.keep_days)
        with _database(settings) as database:
            removed = UsageStore(database).prune_before(cutoff)
        return [f"Usage windows pruned: {removed} (cutoff={cutoff.isoformat()})"]

    def usage_clear(self, command: UsageClearCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.endpoint is not None and command.endpoint not in settings.endpoints:
            raise ValueError(f"Unknown endpoint: {command.endpoint}")
        with _database(settings) as database:
            removed = UsageStore(database).clear(command.endpoint)
        return [f"Usage windows cleared: {removed} ({command.endpoint or 'all endpoints'})"]


@contextmanager
def _database(settings: Settings) -> Iterator[Database]:
    database = Database(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        database.init_schema()
        yield database
    finally:
        database.close()
