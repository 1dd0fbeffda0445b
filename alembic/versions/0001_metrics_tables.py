"""metrics time-series tables

Revision ID: 0001_metrics_tables
Revises:
Create Date: 2026-10-18 00:00:00
"""

import sqlalchemy as sa
from alembic import op


revision = "0001_metrics_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "app_metrics_points",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("cpu_percent", sa.Float(), nullable=False),
        sa.Column("memory_mb", sa.Float(), nullable=False),
        sa.Column("memory_limit_mb", sa.Float(), nullable=False),
        sa.Column("network_rx_bytes", sa.BigInteger(), nullable=False),
        sa.Column("network_tx_bytes", sa.BigInteger(), nullable=False),
        sa.Column("requests_per_min", sa.Float(), nullable=True),
        sa.Column("containers", sa.Integer(), nullable=False),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("app_metrics_collected_at_idx", "app_metrics_points", ["collected_at"])
    op.create_index("app_metrics_app_collected_idx", "app_metrics_points", ["app_id", "collected_at"])

    op.create_table(
        "system_metrics_points",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("cpu_percent", sa.Float(), nullable=False),
        sa.Column("memory_mb", sa.Float(), nullable=False),
        sa.Column("memory_limit_mb", sa.Float(), nullable=False),
        sa.Column("network_rx_bytes", sa.BigInteger(), nullable=False),
        sa.Column("network_tx_bytes", sa.BigInteger(), nullable=False),
        sa.Column("requests_per_min", sa.Float(), nullable=True),
        sa.Column("active_containers", sa.Integer(), nullable=False),
        sa.Column("active_apps", sa.Integer(), nullable=False),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("system_metrics_collected_at_idx", "system_metrics_points", ["collected_at"])

    op.create_table(
        "app_status_points",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("status_points_collected_at_idx", "app_status_points", ["collected_at"])
    op.create_index("status_points_app_collected_idx", "app_status_points", ["app_id", "collected_at"])


def downgrade() -> None:
    op.drop_table("app_status_points")
    op.drop_table("system_metrics_points")
    op.drop_table("app_metrics_points")
