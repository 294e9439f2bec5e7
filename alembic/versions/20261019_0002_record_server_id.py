"""offline_records.server_id (server id reconciliation after create)

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def _column_exists(table_name: str, column_name: str) -> bool:
    insp = inspect(op.get_bind())
    return column_name in {c["name"] for c in insp.get_columns(table_name)}


def _index_exists(table_name: str, index_name: str) -> bool:
    insp = inspect(op.get_bind())
    return index_name in {ix["name"] for ix in insp.get_indexes(table_name)}


def upgrade() -> None:
    if not _column_exists("offline_records", "server_id"):
        with op.batch_alter_table("offline_records") as batch:
            batch.add_column(sa.Column("server_id", sa.String(length=128), nullable=True))
    if not _index_exists("offline_records", "ix_offline_records_server_id"):
        op.create_index("ix_offline_records_server_id", "offline_records", ["server_id"])
    op.execute("UPDATE sync_metadata SET schema_version = 2")


def downgrade() -> None:
    if _index_exists("offline_records", "ix_offline_records_server_id"):
        op.drop_index("ix_offline_records_server_id", table_name="offline_records")
    if _column_exists("offline_records", "server_id"):
        with op.batch_alter_table("offline_records") as batch:
            batch.drop_column("server_id")
    op.execute("UPDATE sync_metadata SET schema_version = 1")
