"""SQLModel ORM tables for the intake queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKeyConstraint, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class WorkItem(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_items_queue", "status", "priority", "received_at"),)

    item_id: str = Field(primary_key=True)
    item_type: str = Field(index=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: int = Field(default=100)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    claimed_by: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    received_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemEvent(SQLModel, table=True):
    __tablename__ = "work_item_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_item_events_item_time", "item_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    item_id: str = Field(foreign_key="work_items.item_id")
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageWindow(SQLModel, table=True):
    __tablename__ = "usage_windows"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint(
            "endpoint",
            "window_kind",
            "window_start",
            name="pk_usage_windows",
        ),
    )

    endpoint: str
    window_kind: str
    window_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    used: int = Field(default=0)
    upstream_remaining: int | None = None
    reconciled_used: int | None = None
    upstream_reset_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageWindowCaller(SQLModel, table=True):
    __tablename__ = "usage_window_callers"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint(
            "endpoint",
            "window_kind",
            "window_start",
            "caller",
            name="pk_usage_window_callers",
        ),
        ForeignKeyConstraint(
            ["endpoint", "window_kind", "window_start"],
            ["usage_windows.endpoint", "usage_windows.window_kind", "usage_windows.window_start"],
            ondelete="CASCADE",
        ),
    )

    endpoint: str
    window_kind: str
    window_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    caller: str
    used: int = Field(default=0)


class Checkpoint(SQLModel, table=True):
    __tablename__ = "checkpoints"  # type: ignore[bad-override]

    source: str = Field(primary_key=True)
    cursor: str | None = None
    last_ingest_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CadenceMark(SQLModel, table=True):
    __tablename__ = "cadence_marks"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    marked_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
