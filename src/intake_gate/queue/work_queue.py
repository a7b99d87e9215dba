"""Durable work item queue with conditional status transitions."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy import func, literal_column
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from intake_gate.models import (
    IngestResult,
    QueueStats,
    WorkItemEventView,
    WorkItemStatus,
    WorkItemView,
    WorkItemWrite,
    WorkOutcome,
)
from intake_gate.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from intake_gate.storage.database import Database
from intake_gate.storage.sqlmodel_models import WorkItem, WorkItemEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class WorkQueue:
    """Work item persistence backed by SQLModel + SQLite.

    Every transition is a conditional ``UPDATE ... WHERE status = ...``
    checked by rowcount, so a row is only ever moved by one process.
    """

    def __init__(
        self,
        database: Database,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_retries <= 0:
            raise ValueError("max_retries must be > 0")
        self.database = database
        self.max_retries = max_retries
        self.clock = clock

    def ingest(self, items: Iterable[WorkItemWrite]) -> IngestResult:
        """Insert new items as pending in one transaction.

        Pending rows that reappear get their payload, priority and type
        refreshed. Rows already claimed or finished are left untouched.
        """

        now = to_db_datetime(self.clock())
        result = IngestResult()
        seen: set[str] = set()
        with self.database.session() as session:
            for item in items:
                if item.item_id in seen:
                    result.skipped += 1
                    continue
                seen.add(item.item_id)

                received_at = to_db_datetime(item.received_at) if item.received_at else now
                inserted = session.exec(
                    sqlite_insert(WorkItem)
                    .values(
                        item_id=item.item_id,
                        item_type=item.item_type,
                        payload=item.payload,
                        status=WorkItemStatus.PENDING.value,
                        priority=item.priority,
                        retry_count=0,
                        max_retries=self.max_retries,
                        received_at=received_at,
                        created_at=now,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(),
                )
                if inserted.rowcount == 1:
                    result.inserted += 1
                    self._add_event(
                        session=session,
                        item_id=item.item_id,
                        event_type="ingested",
                        status_from=None,
                        status_to=WorkItemStatus.PENDING,
                        details={"item_type": item.item_type, "priority": item.priority},
                    )
                    continue

                refreshed = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.item_id) == item.item_id,
                        col(WorkItem.status) == WorkItemStatus.PENDING.value,
                    )
                    .values(
                        item_type=item.item_type,
                        payload=item.payload,
                        priority=item.priority,
                        updated_at=now,
                    ),
                )
                if refreshed.rowcount == 1:
                    result.refreshed += 1
                    self._add_event(
                        session=session,
                        item_id=item.item_id,
                        event_type="refreshed",
                        status_from=WorkItemStatus.PENDING,
                        status_to=WorkItemStatus.PENDING,
                        details={"priority": item.priority},
                    )
                else:
                    result.skipped += 1
            session.commit()

        logger.debug(
            "Ingested batch: inserted=%d refreshed=%d skipped=%d",
            result.inserted,
            result.refreshed,
            result.skipped,
        )
        return result

    def claim_batch(self, limit: int, *, owner: str) -> list[WorkItemView]:
        """Atomically move up to ``limit`` pending items to processing."""

        if limit <= 0:
            return []

        claimed_ids: list[str] = []
        while len(claimed_ids) < limit:
            now = to_db_datetime(self.clock())
            with self.database.session() as session:
                candidates = session.exec(
                    select(WorkItem.item_id)
                    .where(WorkItem.status == WorkItemStatus.PENDING.value)
                    .order_by(
                        col(WorkItem.priority).asc(),
                        col(WorkItem.received_at).asc(),
                        literal_column("work_items.rowid").asc(),
                    )
                    .limit(limit - len(claimed_ids)),
                ).all()
                if not candidates:
                    break

                for item_id in candidates:
                    result = session.exec(
                        sa_update(WorkItem)
                        .where(
                            col(WorkItem.item_id) == item_id,
                            col(WorkItem.status) == WorkItemStatus.PENDING.value,
                        )
                        .values(
                            status=WorkItemStatus.PROCESSING.value,
                            claimed_by=owner,
                            claimed_at=now,
                            updated_at=now,
                        ),
                    )
                    if result.rowcount != 1:
                        continue
                    claimed_ids.append(item_id)
                    self._add_event(
                        session=session,
                        item_id=item_id,
                        event_type="claimed",
                        status_from=WorkItemStatus.PENDING,
                        status_to=WorkItemStatus.PROCESSING,
                        details={"owner": owner},
                    )
                session.commit()

        if not claimed_ids:
            return []
        with self.database.session() as session:
            rows = session.exec(
                select(WorkItem).where(col(WorkItem.item_id).in_(claimed_ids)),
            ).all()
        by_id = {row.item_id: row for row in rows}
        return [_to_item_view(by_id[item_id]) for item_id in claimed_ids if item_id in by_id]

    def mark_outcome(  # noqa: PLR0913
        self,
        item_id: str,
        outcome: WorkOutcome,
        error: str | None = None,
        *,
        owner: str | None = None,
        details: dict[str, object] | None = None,
    ) -> WorkItemView | None:
        """Apply an outcome to a processing item; None when it no longer applies."""

        now = to_db_datetime(self.clock())
        with self.database.session() as session:
            statement = select(WorkItem).where(
                WorkItem.item_id == item_id,
                WorkItem.status == WorkItemStatus.PROCESSING.value,
            )
            if owner is not None:
                statement = statement.where(WorkItem.claimed_by == owner)
            row = session.exec(statement).one_or_none()
            if row is None:
                return None

            values: dict[str, object] = {"updated_at": now}
            retry_count = row.retry_count
            if outcome == WorkOutcome.COMPLETED:
                status_to = WorkItemStatus.COMPLETED
                values.update(processed_at=now)
            else:
                retry_count += 1
                values.update(retry_count=retry_count, last_error=error)
                if outcome == WorkOutcome.RETRY and retry_count < row.max_retries:
                    status_to = WorkItemStatus.PENDING
                    values.update(claimed_by=None, claimed_at=None)
                else:
                    status_to = WorkItemStatus.FAILED
                    values.update(processed_at=now)
            values["status"] = status_to.value

            result = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.PROCESSING.value,
                    col(WorkItem.retry_count) == row.retry_count,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            event_details: dict[str, object] = dict(details or {})
            event_details["outcome"] = outcome.value
            event_details["retry_count"] = retry_count
            if error:
                event_details["error"] = error
            self._add_event(
                session=session,
                item_id=item_id,
                event_type=_event_type_for(status_to),
                status_from=WorkItemStatus.PROCESSING,
                status_to=status_to,
                details=event_details,
            )
            session.commit()
            updated = session.exec(select(WorkItem).where(WorkItem.item_id == item_id)).one()
            view = _to_item_view(updated)

        if view.status == WorkItemStatus.FAILED:
            logger.warning(
                "Work item %s failed after %d attempt(s): %s",
                item_id,
                view.retry_count,
                error,
            )
        else:
            logger.debug("Work item %s -> %s", item_id, view.status.value)
        return view

    def release(
        self,
        item_ids: Iterable[str],
        *,
        owner: str | None = None,
        reason: str,
        error: str | None = None,
        details: dict[str, object] | None = None,
    ) -> int:
        """Return claimed items to pending without counting an attempt.

        ``error`` is kept as ``last_error`` when the release follows a failed
        call that must not use up the retry budget, such as an upstream throttle.
        """

        now = to_db_datetime(self.clock())
        values: dict[str, object] = {
            "status": WorkItemStatus.PENDING.value,
            "claimed_by": None,
            "claimed_at": None,
            "updated_at": now,
        }
        event_details: dict[str, object] = {**(details or {}), "reason": reason}
        if error is not None:
            values["last_error"] = error
            event_details["error"] = error
        released = 0
        with self.database.session() as session:
            for item_id in item_ids:
                statement = sa_update(WorkItem).where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.PROCESSING.value,
                )
                if owner is not None:
                    statement = statement.where(col(WorkItem.claimed_by) == owner)
                result = session.exec(statement.values(**values))
                if result.rowcount != 1:
                    continue
                released += 1
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type="released",
                    status_from=WorkItemStatus.PROCESSING,
                    status_to=WorkItemStatus.PENDING,
                    details=event_details,
                )
            session.commit()
        if released:
            logger.info("Released %d claimed item(s): %s", released, reason)
        return released

    def release_stale(self, older_than: timedelta) -> int:
        """Release processing items whose claim is older than ``older_than``."""

        cutoff = to_db_datetime(self.clock() - older_than)
        with self.database.session() as session:
            stale_ids = session.exec(
                select(WorkItem.item_id).where(
                    WorkItem.status == WorkItemStatus.PROCESSING.value,
                    col(WorkItem.claimed_at) < cutoff,
                ),
            ).all()
        if not stale_ids:
            return 0
        return self.release(
            stale_ids,
            reason=f"stale claim older than {int(older_than.total_seconds())}s",
        )

    def get(self, item_id: str) -> WorkItemView | None:
        with self.database.session() as session:
            row = session.exec(select(WorkItem).where(WorkItem.item_id == item_id)).one_or_none()
        return _to_item_view(row) if row is not None else None

    def list_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        limit: int = 50,
    ) -> list[WorkItemView]:
        """List items in claim order, optionally filtered by status."""

        with self.database.session() as session:
            statement = select(WorkItem).order_by(
                col(WorkItem.priority).asc(),
                col(WorkItem.received_at).asc(),
                literal_column("work_items.rowid").asc(),
            )
            if status is not None:
                statement = statement.where(WorkItem.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_item_view(row) for row in rows]

    def events(self, item_id: str) -> list[WorkItemEventView]:
        """Return the transition history of one item, oldest first."""

        with self.database.session() as session:
            rows = session.exec(
                select(WorkItemEvent)
                .where(WorkItemEvent.item_id == item_id)
                .order_by(col(WorkItemEvent.created_at).asc(), col(WorkItemEvent.id).asc()),
            ).all()

        events: list[WorkItemEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                WorkItemEventView(
                    event_id=row.id or 0,
                    item_id=row.item_id,
                    event_type=row.event_type,
                    status_from=(
                        WorkItemStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=WorkItemStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def stats(self) -> QueueStats:
        """Counts by status plus the number of items carrying an error."""

        with self.database.session() as session:
            counts = session.exec(
                select(WorkItem.status, func.count()).group_by(WorkItem.status),
            ).all()
            with_errors = session.exec(
                select(func.count()).select_from(WorkItem).where(
                    col(WorkItem.last_error).is_not(None),
                ),
            ).one()

        stats = QueueStats(with_errors=int(with_errors))
        for status, count in counts:
            if status == WorkItemStatus.PENDING.value:
                stats.pending = int(count)
            elif status == WorkItemStatus.PROCESSING.value:
                stats.processing = int(count)
            elif status == WorkItemStatus.COMPLETED.value:
                stats.completed = int(count)
            elif status == WorkItemStatus.FAILED.value:
                stats.failed = int(count)
        return stats

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        item_id: str,
        event_type: str,
        status_from: WorkItemStatus | None,
        status_to: WorkItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkItemEvent(
                item_id=item_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


def _event_type_for(status: WorkItemStatus) -> str:
    if status == WorkItemStatus.COMPLETED:
        return "completed"
    if status == WorkItemStatus.PENDING:
        return "retry_scheduled"
    return "failed"


def _to_item_view(row: WorkItem) -> WorkItemView:
    return WorkItemView(
        item_id=row.item_id,
        item_type=row.item_type,
        payload=row.payload,
        status=WorkItemStatus(row.status),
        priority=row.priority,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        last_error=row.last_error,
        claimed_by=row.claimed_by,
        claimed_at=optional_utc(row.claimed_at),
        received_at=to_utc_aware_datetime(row.received_at),
        processed_at=optional_utc(row.processed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
