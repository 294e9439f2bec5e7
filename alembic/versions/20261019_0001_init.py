"""init schema (records + pending operations + metadata + conflicts + reference cache + events)

Revision ID: 20261019_0001
Revises: None
Create Date: 2026-10-19 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def upgrade() -> None:
    if not _table_exists("offline_records"):
        op.create_table(
            "offline_records",
            sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
            sa.Column("entity_type", sa.String(length=64), nullable=False),
            sa.Column("data", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("created_at_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
            sa.Column("synced_at_ms", sa.BigInteger(), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("last_error", sa.Text(), nullable=True),
        )
        op.create_index("ix_offline_records_entity_type", "offline_records", ["entity_type"])
        op.create_index("ix_offline_records_status", "offline_records", ["status"])
        op.create_index("ix_offline_records_created_at_ms", "offline_records", ["created_at_ms"])
        op.create_index("ix_offline_records_synced_at_ms", "offline_records", ["synced_at_ms"])

    if not _table_exists("pending_operations"):
        op.create_table(
            "pending_operations",
            sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("entity_type", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.String(length=128), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("3")),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
            sa.Column("next_retry_at_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
            sa.Column("last_attempt_at_ms", sa.BigInteger(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("conflict_id", sa.String(length=36), nullable=True),
        )
        for column in (
            "seq",
            "entity_type",
            "entity_id",
            "priority",
            "attempts",
            "next_retry_at_ms",
            "created_at_ms",
            "conflict_id",
        ):
            op.create_index(f"ix_pending_operations_{column}", "pending_operations", [column])

    if not _table_exists("sync_metadata"):
        op.create_table(
            "sync_metadata",
            sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
            sa.Column("last_sync_ms", sa.BigInteger(), nullable=True),
            sa.Column("pending_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("conflict_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("error_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.text("0")),
            sa.Column("last_online_check_ms", sa.BigInteger(), nullable=True),
            sa.Column(
                "total_offline_actions", sa.Integer(), nullable=False, server_default=sa.text("0")
            ),
            sa.Column("successful_syncs", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("schema_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        )

    if not _table_exists("conflicts"):
        op.create_table(
            "conflicts",
            sa.Column("conflict_id", sa.String(length=36), primary_key=True, nullable=False),
            sa.Column("operation_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("entity_type", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.String(length=128), nullable=False),
            sa.Column("local_data", sa.JSON(), nullable=True),
            sa.Column("server_data", sa.JSON(), nullable=True),
            sa.Column("resolution", sa.String(length=20), nullable=True),
            sa.Column("resolved_at_ms", sa.BigInteger(), nullable=True),
            sa.Column("resolved_by", sa.String(length=128), nullable=True),
            sa.Column("created_at_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        )
        for column in (
            "operation_id",
            "entity_type",
            "entity_id",
            "resolution",
            "resolved_at_ms",
            "created_at_ms",
        ):
            op.create_index(f"ix_conflicts_{column}", "conflicts", [column])

    if not _table_exists("reference_cache"):
        op.create_table(
            "reference_cache",
            sa.Column("type", sa.String(length=64), primary_key=True, nullable=False),
            sa.Column("items", sa.JSON(), nullable=True),
            sa.Column("version", sa.String(length=32), nullable=False),
            sa.Column("last_updated_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        )
        op.create_index("ix_reference_cache_last_updated_ms", "reference_cache", ["last_updated_ms"])

    if not _table_exists("events"):
        op.create_table(
            "events",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("timestamp_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
            sa.Column("entity_type", sa.String(length=64), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
        op.create_index("ix_events_type", "events", ["type"])
        op.create_index("ix_events_timestamp_ms", "events", ["timestamp_ms"])


def downgrade() -> None:
    for table in (
        "events",
        "reference_cache",
        "conflicts",
        "sync_metadata",
        "pending_operations",
        "offline_records",
    ):
        if _table_exists(table):
            op.drop_table(table)
