"""Shared SQLite engine and transaction scope for queue components."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from intake_gate.errors import StorageFailure
from intake_gate.storage.alembic_runner import upgrade_head
from intake_gate.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)
DEFAULT_BUSY_TIMEOUT_MS = 5_000


class Database:
    """One SQLite file shared by usage store, work queue, checkpoints and cadence.

    Components receive the instance explicitly, so several independent
    queues can live side by side (one file each).
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise StorageFailure(f"Schema migration failed for {self.db_path}: {error}") from error
        logger.debug("Schema ready at %s", self.db_path)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open one session; any SQLAlchemy error surfaces as StorageFailure.

        Callers commit explicitly. Uncommitted work is rolled back on exit.
        """

        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise StorageFailure(f"Storage operation failed: {error}") from error
