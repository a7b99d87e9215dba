"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from intake_gate.storage.database import Database

# Aligned to every window boundary (midnight UTC).
EPOCH_ALIGNED_START = datetime(2026, 10, 18, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock shared by all components under test."""

    def __init__(self, now: datetime = EPOCH_ALIGNED_START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[Database]:
    database = Database(tmp_path / "intake.db")
    database.init_schema()
    yield database
    database.close()
