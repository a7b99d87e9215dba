"""Intake queue baseline: work items, usage windows, checkpoints, cadence marks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("item_type", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_work_items_item_type", "work_items", ["item_type"], unique=False)
    op.create_index("ix_work_items_status", "work_items", ["status"], unique=False)
    op.create_index("ix_work_items_claimed_by", "work_items", ["claimed_by"], unique=False)
    op.create_index(
        "idx_work_items_queue",
        "work_items",
        ["status", "priority", "received_at"],
        unique=False,
    )

    op.create_table(
        "work_item_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.item_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_work_item_events_event_type",
        "work_item_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_work_item_events_item_time",
        "work_item_events",
        ["item_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "usage_windows",
        sa.Column("endpoint", sa.String(), nullable=False),
        sa.Column("window_kind", sa.String(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("upstream_remaining", sa.Integer(), nullable=True),
        sa.Column("reconciled_used", sa.Integer(), nullable=True),
        sa.Column("upstream_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint(
            "endpoint",
            "window_kind",
            "window_start",
            name="pk_usage_windows",
        ),
    )

    op.create_table(
        "usage_window_callers",
        sa.Column("endpoint", sa.String(), nullable=False),
        sa.Column("window_kind", sa.String(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("caller", sa.String(), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(
            ["endpoint", "window_kind", "window_start"],
            ["usage_windows.endpoint", "usage_windows.window_kind", "usage_windows.window_start"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint(
            "endpoint",
            "window_kind",
            "window_start",
            "caller",
            name="pk_usage_window_callers",
        ),
    )

    op.create_table(
        "checkpoints",
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("cursor", sa.String(), nullable=True),
        sa.Column("last_ingest_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("source"),
    )

    op.create_table(
        "cadence_marks",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("marked_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("cadence_marks")
    op.drop_table("checkpoints")
    op.drop_table("usage_window_callers")
    op.drop_table("usage_windows")
    op.drop_index("idx_work_item_events_item_time", table_name="work_item_events")
    op.drop_index("ix_work_item_events_event_type", table_name="work_item_events")
    op.drop_table("work_item_events")
    op.drop_index("idx_work_items_queue", table_name="work_items")
    op.drop_index("ix_work_items_claimed_by", table_name="work_items")
    op.drop_index("ix_work_items_status", table_name="work_items")
    op.drop_index("ix_work_items_item_type", table_name="work_items")
    op.drop_table("work_items")
