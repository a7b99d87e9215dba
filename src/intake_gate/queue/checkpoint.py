"""Durable fetch cursor per upstream source."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import select

from intake_gate.models import CheckpointView
from intake_gate.storage.common import optional_utc, to_db_datetime, to_utc_aware_datetime, utc_now
from intake_gate.storage.database import Database
from intake_gate.storage.sqlmodel_models import Checkpoint as CheckpointRow

logger = logging.getLogger(__name__)


class Checkpoint:
    """Cursor of the newest upstream item already persisted in the queue.

    Advance only after ``WorkQueue.ingest`` returned: a crash in between
    leaves the old cursor, and the refetched items re-ingest as no-ops.
    """

    def __init__(
        self,
        database: Database,
        *,
        source: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not source:
            raise ValueError("Checkpoint source must not be empty")
        self.database = database
        self.source = source
        self.clock = clock

    def get(self) -> str | None:
        state = self.state()
        return state.cursor if state is not None else None

    def state(self) -> CheckpointView | None:
        with self.database.session() as session:
            row = session.exec(
                select(CheckpointRow).where(CheckpointRow.source == self.source),
            ).one_or_none()
        if row is None:
            return None
        return CheckpointView(
            source=row.source,
            cursor=row.cursor,
            last_ingest_at=optional_utc(row.last_ingest_at),
            updated_at=to_utc_aware_datetime(row.updated_at),
        )

    def advance(self, cursor: str | None) -> CheckpointView | None:
        """Persist a new cursor; an empty cursor leaves the stored one in place."""

        if not cursor:
            return self.state()

        now = to_db_datetime(self.clock())
        with self.database.session() as session:
            session.exec(
                sqlite_insert(CheckpointRow)
                .values(source=self.source, cursor=cursor, last_ingest_at=now, updated_at=now)
                .on_conflict_do_update(
                    index_elements=["source"],
                    set_={"cursor": cursor, "last_ingest_at": now, "updated_at": now},
                ),
            )
            session.commit()
        logger.info("Checkpoint %s advanced to %s", self.source, cursor)
        return self.state()
