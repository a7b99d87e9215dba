"""Durable per-endpoint, per-window API usage counters."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from intake_gate.models import UsageWindowView, WindowKind
from intake_gate.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from intake_gate.storage.database import Database
from intake_gate.storage.sqlmodel_models import UsageWindow, UsageWindowCaller

logger = logging.getLogger(__name__)


class UsageStore:
    """Usage window persistence backed by SQLModel + SQLite."""

    def __init__(self, database: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.database = database
        self.clock = clock

    def get(self, endpoint: str, window_kind: WindowKind, window_start: datetime) -> UsageWindowView:
        """Read one window; a window never touched reads as zero usage."""

        with self.database.session() as session:
            return self._read_window(
                session=session,
                endpoint=endpoint,
                window_kind=window_kind,
                window_start=window_start,
            )

    def increment(
        self,
        endpoint: str,
        window_kind: WindowKind,
        window_start: datetime,
        caller: str,
    ) -> UsageWindowView:
        """Atomically add one call to the window total and to the caller's share."""

        now = to_db_datetime(self.clock())
        db_start = to_db_datetime(window_start)
        with self.database.session() as session:
            self._ensure_window(
                session=session,
                endpoint=endpoint,
                window_kind=window_kind,
                window_start=db_start,
                now=now,
            )
            session.exec(
                sqlite_insert(UsageWindowCaller)
                .values(
                    endpoint=endpoint,
                    window_kind=window_kind.value,
                    window_start=db_start,
                    caller=caller,
                    used=0,
                )
                .on_conflict_do_nothing(),
            )
            session.exec(
                sa_update(UsageWindow)
                .where(
                    col(UsageWindow.endpoint) == endpoint,
                    col(UsageWindow.window_kind) == window_kind.value,
                    col(UsageWindow.window_start) == db_start,
                )
                .values(used=col(UsageWindow.used) + 1, updated_at=now),
            )
            session.exec(
                sa_update(UsageWindowCaller)
                .where(
                    col(UsageWindowCaller.endpoint) == endpoint,
                    col(UsageWindowCaller.window_kind) == window_kind.value,
                    col(UsageWindowCaller.window_start) == db_start,
                    col(UsageWindowCaller.caller) == caller,
                )
                .values(used=col(UsageWindowCaller.used) + 1),
            )
            session.commit()
            return self._read_window(
                session=session,
                endpoint=endpoint,
                window_kind=window_kind,
                window_start=window_start,
            )

    def reconcile(  # noqa: PLR0913
        self,
        endpoint: str,
        remaining: int | None,
        reset_at: datetime | None,
        *,
        window_kind: WindowKind,
        window_start: datetime,
        limit: int | None,
    ) -> UsageWindowView:
        """Overwrite the local estimate with the quota the upstream reports.

        The reconciled count is remembered so that it can be dropped once the
        upstream reset passes. A report with a remaining count replaces the
        stored reset time, even with none.
        """

        now = to_db_datetime(self.clock())
        db_start = to_db_datetime(window_start)
        values: dict[str, object] = {"updated_at": now}
        if remaining is not None:
            values["upstream_remaining"] = remaining
            values["upstream_reset_at"] = to_db_datetime(reset_at) if reset_at else None
            if limit is not None:
                values["used"] = max(0, limit - remaining)
                values["reconciled_used"] = values["used"]
        elif reset_at is not None:
            values["upstream_reset_at"] = to_db_datetime(reset_at)

        with self.database.session() as session:
            self._ensure_window(
                session=session,
                endpoint=endpoint,
                window_kind=window_kind,
                window_start=db_start,
                now=now,
            )
            session.exec(
                sa_update(UsageWindow)
                .where(
                    col(UsageWindow.endpoint) == endpoint,
                    col(UsageWindow.window_kind) == window_kind.value,
                    col(UsageWindow.window_start) == db_start,
                )
                .values(**values),
            )
            session.commit()
            view = self._read_window(
                session=session,
                endpoint=endpoint,
                window_kind=window_kind,
                window_start=window_start,
            )

        logger.debug(
            "Reconciled %s %s window: used=%d remaining=%s reset_at=%s",
            endpoint,
            window_kind.value,
            view.used,
            remaining,
            reset_at.isoformat() if reset_at is not None else None,
        )
        return view

    def list_windows(
        self,
        *,
        endpoint: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[UsageWindowView]:
        """List stored windows, newest first, for audit and reporting."""

        with self.database.session() as session:
            statement = select(UsageWindow).order_by(col(UsageWindow.window_start).desc())
            if endpoint is not None:
                statement = statement.where(UsageWindow.endpoint == endpoint)
            if since is not None:
                statement = statement.where(
                    col(UsageWindow.window_start) >= to_db_datetime(since),
                )
            rows = session.exec(statement.limit(limit)).all()
            callers = self._callers_by_window(session=session, rows=rows)

        return [
            _to_window_view(
                row,
                per_caller=callers.get(
                    (row.endpoint, row.window_kind, to_db_datetime(row.window_start)),
                    {},
                ),
            )
            for row in rows
        ]

    def prune_before(self, cutoff: datetime) -> int:
        """Delete windows that started before cutoff; returns removed window count."""

        db_cutoff = to_db_datetime(cutoff)
        with self.database.session() as session:
            session.exec(
                sa_delete(UsageWindowCaller).where(
                    col(UsageWindowCaller.window_start) < db_cutoff,
                ),
            )
            result = session.exec(
                sa_delete(UsageWindow).where(col(UsageWindow.window_start) < db_cutoff),
            )
            session.commit()
            removed = int(result.rowcount or 0)
        if removed:
            logger.info("Pruned %d usage windows older than %s", removed, cutoff.isoformat())
        return removed

    def clear(self, endpoint: str | None = None) -> int:
        """Forget recorded usage, for one endpoint or for all of them."""

        with self.database.session() as session:
            callers = sa_delete(UsageWindowCaller)
            windows = sa_delete(UsageWindow)
            if endpoint is not None:
                callers = callers.where(col(UsageWindowCaller.endpoint) == endpoint)
                windows = windows.where(col(UsageWindow.endpoint) == endpoint)
            session.exec(callers)
            result = session.exec(windows)
            session.commit()
            removed = int(result.rowcount or 0)
        logger.warning("Cleared %d usage windows for %s", removed, endpoint or "all endpoints")
        return removed

    def _ensure_window(
        self,
        *,
        session: Session,
        endpoint: str,
        window_kind: WindowKind,
        window_start: datetime,
        now: datetime,
    ) -> None:
        session.exec(
            sqlite_insert(UsageWindow)
            .values(
                endpoint=endpoint,
                window_kind=window_kind.value,
                window_start=window_start,
                used=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(),
        )

    def _read_window(
        self,
        *,
        session: Session,
        endpoint: str,
        window_kind: WindowKind,
        window_start: datetime,
    ) -> UsageWindowView:
        db_start = to_db_datetime(window_start)
        row = session.exec(
            select(UsageWindow).where(
                UsageWindow.endpoint == endpoint,
                UsageWindow.window_kind == window_kind.value,
                UsageWindow.window_start == db_start,
            ),
        ).one_or_none()
        if row is None:
            return UsageWindowView(
                endpoint=endpoint,
                window_kind=window_kind,
                window_start=to_utc_aware_datetime(window_start),
                used=0,
                per_caller_usage={},
            )
        caller_rows = session.exec(
            select(UsageWindowCaller).where(
                UsageWindowCaller.endpoint == endpoint,
                UsageWindowCaller.window_kind == window_kind.value,
                UsageWindowCaller.window_start == db_start,
            ),
        ).all()
        return _to_window_view(
            row,
            per_caller={caller.caller: caller.used for caller in caller_rows},
        )

    def _callers_by_window(
        self,
        *,
        session: Session,
        rows: list[UsageWindow] | tuple[UsageWindow, ...],
    ) -> dict[tuple[str, str, datetime], dict[str, int]]:
        if not rows:
            return {}
        endpoints = {row.endpoint for row in rows}
        oldest = min(to_db_datetime(row.window_start) for row in rows)
        caller_rows = session.exec(
            select(UsageWindowCaller).where(
                col(UsageWindowCaller.endpoint).in_(endpoints),
                col(UsageWindowCaller.window_start) >= oldest,
            ),
        ).all()
        grouped: dict[tuple[str, str, datetime], dict[str, int]] = defaultdict(dict)
        for caller in caller_rows:
            key = (caller.endpoint, caller.window_kind, to_db_datetime(caller.window_start))
            grouped[key][caller.caller] = caller.used
        return grouped


def _to_window_view(row: UsageWindow, *, per_caller: dict[str, int]) -> UsageWindowView:
    return UsageWindowView(
        endpoint=row.endpoint,
        window_kind=WindowKind(row.window_kind),
        window_start=to_utc_aware_datetime(row.window_start),
        used=row.used,
        per_caller_usage=dict(per_caller),
        upstream_remaining=row.upstream_remaining,
        reconciled_used=row.reconciled_used,
        upstream_reset_at=optional_utc(row.upstream_reset_at),
    )
