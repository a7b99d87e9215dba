"""Schema migrations shipped inside the package and applied with Alembic."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def migration_config(db_path: Path) -> Config:
    """Alembic config for one database; needs no alembic.ini on disk."""

    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision() -> str | None:
    return ScriptDirectory(str(MIGRATIONS_DIR)).get_current_head()


def upgrade_head(db_path: Path) -> None:
    """Apply migrations up to head for the given SQLite database."""

    command.upgrade(migration_config(db_path), "head")
