"""SQLite persistence for queue, usage windows, checkpoints and cadence marks."""

from intake_gate.storage.database import Database

__all__ = ["Database"]
