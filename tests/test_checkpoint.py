from __future__ import annotations

import allure
import pytest

from intake_gate.models import WorkItemWrite
from intake_gate.queue.checkpoint import Checkpoint
from intake_gate.queue.work_queue import WorkQueue
from intake_gate.storage.database import Database
from tests.conftest import FakeClock

pytestmark = [
    allure.epic("Intake Gate"),
    allure.feature("Fetch Checkpoint"),
]


def test_checkpoint_starts_empty_and_advances(database: Database, clock: FakeClock) -> None:
    checkpoint = Checkpoint(database, source="mentions", clock=clock)
    assert checkpoint.get() is None
    assert checkpoint.state() is None

    checkpoint.advance("100")
    clock.advance(minutes=1)
    state = checkpoint.advance("105")

    assert checkpoint.get() == "105"
    assert state is not None
    assert state.last_ingest_at == clock()
    assert state.updated_at == clock()


def test_empty_cursor_is_a_noop(database: Database, clock: FakeClock) -> None:
    checkpoint = Checkpoint(database, source="mentions", clock=clock)
    checkpoint.advance("100")

    checkpoint.advance(None)
    checkpoint.advance("")

    assert checkpoint.get() == "100"


def test_sources_are_independent(database: Database, clock: FakeClock) -> None:
    Checkpoint(database, source="mentions", clock=clock).advance("7")

    assert Checkpoint(database, source="search", clock=clock).get() is None
    with pytest.raises(ValueError, match="source"):
        Checkpoint(database, source="", clock=clock)


def test_crash_between_ingest_and_advance_refetches_without_duplicates(
    database: Database,
    clock: FakeClock,
) -> None:
    work_queue = WorkQueue(database, clock=clock)
    checkpoint = Checkpoint(database, source="mentions", clock=clock)
    batch = [WorkItemWrite(item_id=str(item_id), payload="{}") for item_id in (1, 2, 3)]

    work_queue.ingest(batch)
    # process dies here, before checkpoint.advance("3")
    assert checkpoint.get() is None

    result = work_queue.ingest(batch)
    checkpoint.advance("3")

    assert result.inserted == 0
    assert work_queue.stats().total == 3
    assert checkpoint.get() == "3"
