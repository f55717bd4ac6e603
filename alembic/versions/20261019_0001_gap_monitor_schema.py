"""Create instruments, contracts, ticks, gap observations, alerts and alert config.

Revision ID: 001_gap_monitor_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_gap_monitor_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "instruments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instrument_id", sa.Integer(), nullable=False),
        sa.Column("symbol", sa.String(64), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instrument_id"], ["instruments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("symbol"),
    )
    op.create_index("idx_contracts_instrument_expiry", "contracts", ["instrument_id", "expiry_date"])

    op.create_table(
        "ticks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price", sa.Numeric(18, 4), nullable=False),
        sa.Column("volume", sa.Integer(), nullable=False),
        sa.Column("oi", sa.Integer(), nullable=True),
        sa.Column("bid", sa.Numeric(18, 4), nullable=True),
        sa.Column("bid_qty", sa.Integer(), nullable=True),
        sa.Column("ask", sa.Numeric(18, 4), nullable=True),
        sa.Column("ask_qty", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contract_id", "ts", name="uq_ticks_contract_ts"),
    )

    op.create_table(
        "gap_observations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instrument_id", sa.Integer(), nullable=False),
        sa.Column("trade_date", sa.Date(), nullable=False),
        sa.Column("time_slot", sa.String(5), nullable=False),
        sa.Column("gap_1", sa.Numeric(18, 4), nullable=True),
        sa.Column("gap_2", sa.Numeric(18, 4), nullable=True),
        sa.Column("price_1", sa.Numeric(18, 4), nullable=True),
        sa.Column("price_2", sa.Numeric(18, 4), nullable=True),
        sa.Column("price_3", sa.Numeric(18, 4), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instrument_id"], ["instruments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("instrument_id", "trade_date", "time_slot", name="uq_gap_observations_slot"),
    )
    op.create_index("idx_gap_observations_trade_date", "gap_observations", ["trade_date"])

    op.create_table(
        "gap_alerts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instrument_id", sa.Integer(), nullable=False),
        sa.Column("instrument_name", sa.String(64), nullable=False),
        sa.Column("time_slot", sa.String(5), nullable=False),
        sa.Column("alert_type", sa.String(8), nullable=False),
        sa.Column("current_value", sa.Numeric(18, 4), nullable=False),
        sa.Column("baseline_value", sa.Numeric(18, 4), nullable=False),
        sa.Column("deviation_percent", sa.Numeric(12, 2), nullable=False),
        sa.Column("baseline_date", sa.Date(), nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instrument_id"], ["instruments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_gap_alerts_instrument_triggered",
        "gap_alerts",
        ["instrument_id", "triggered_at"],
    )

    op.create_table(
        "gap_alert_config",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instrument_id", sa.Integer(), nullable=True),
        sa.Column("percent_threshold", sa.Numeric(8, 2), nullable=False),
        sa.Column("cooldown_minutes", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instrument_id"], ["instruments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_gap_alert_config_instrument", "gap_alert_config", ["instrument_id"])


def downgrade() -> None:
    op.drop_index("idx_gap_alert_config_instrument", table_name="gap_alert_config")
    op.drop_table("gap_alert_config")
    op.drop_index("idx_gap_alerts_instrument_triggered", table_name="gap_alerts")
    op.drop_table("gap_alerts")
    op.drop_index("idx_gap_observations_trade_date", table_name="gap_observations")
    op.drop_table("gap_observations")
    op.drop_table("ticks")
    op.drop_index("idx_contracts_instrument_expiry", table_name="contracts")
    op.drop_table("contracts")
    op.drop_table("instruments")
