"""Minimum spacing between actions of one class."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import select

from intake_gate.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from intake_gate.storage.database import Database
from intake_gate.storage.sqlmodel_models import CadenceMark


class CadencePolicy:
    """Durable last-action marks keyed by action class."""

    def __init__(self, database: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.database = database
        self.clock = clock

    def last(self, key: str) -> datetime | None:
        with self.database.session() as session:
            row = session.exec(select(CadenceMark).where(CadenceMark.key == key)).one_or_none()
        return to_utc_aware_datetime(row.marked_at) if row is not None else None

    def allows(self, key: str, min_interval: timedelta) -> bool:
        return self.wait_time(key, min_interval) <= timedelta(0)

    def wait_time(self, key: str, min_interval: timedelta) -> timedelta:
        """Time left until ``key`` may act again; zero when it may act now."""

        marked_at = self.last(key)
        if marked_at is None:
            return timedelta(0)
        remaining = marked_at + min_interval - self.clock()
        return max(remaining, timedelta(0))

    def touch(self, key: str, at: datetime | None = None) -> datetime:
        marked_at = at or self.clock()
        db_marked_at = to_db_datetime(marked_at)
        with self.database.session() as session:
            session.exec(
                sqlite_insert(CadenceMark)
                .values(key=key, marked_at=db_marked_at)
                .on_conflict_do_update(
                    index_elements=["key"],
                    set_={"marked_at": db_marked_at},
                ),
            )
            session.commit()
        return marked_at
