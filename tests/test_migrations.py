from pathlib import Path

import allure
import pytest
from sqlalchemy import inspect, text

import intake_gate
from intake_gate.storage.alembic_runner import MIGRATIONS_DIR, head_revision
from intake_gate.storage.database import Database

pytestmark = [
    allure.epic("Intake Gate"),
    allure.feature("Storage & Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    database = Database(tmp_path / "migrations.db")
    database.init_schema()

    with database.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    assert version == "20261018_0001"
    assert str(journal_mode).lower() == "wal"

    inspector = inspect(database.engine)
    assert sorted(inspector.get_table_names()) == [
        "alembic_version",
        "cadence_marks",
        "checkpoints",
        "usage_window_callers",
        "usage_windows",
        "work_item_events",
        "work_items",
    ]
    indexes = {index["name"] for index in inspector.get_indexes("work_items")}
    assert "idx_work_items_queue" in indexes
    database.close()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    database = Database(tmp_path / "repeat.db")
    database.init_schema()
    database.init_schema()

    with database.engine.connect() as connection:
        versions = connection.execute(text("SELECT version_num FROM alembic_version")).all()
    assert len(versions) == 1
    database.close()


def test_migrations_ship_inside_the_package(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    package_dir = Path(intake_gate.__file__).resolve().parent
    assert MIGRATIONS_DIR.is_relative_to(package_dir)
    assert (MIGRATIONS_DIR / "env.py").is_file()
    assert head_revision() == "20261018_0001"

    monkeypatch.chdir(tmp_path)
    database = Database(tmp_path / "elsewhere.db")
    database.init_schema()

    with database.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == head_revision()
    database.close()
