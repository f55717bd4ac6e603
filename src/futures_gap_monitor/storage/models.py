"""SQLAlchemy models for persistent storage.

This module defines the database schema for instruments, their listed
contracts, raw ticks, per-slot gap observations, fired alerts and
alert thresholds.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class InstrumentModel(Base):
    """An underlying with listed futures (e.g. NIFTY)."""

    __tablename__ = "instruments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class ContractModel(Base):
    """A listed futures contract of an instrument."""

    __tablename__ = "contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("instruments.id", ondelete="CASCADE"), nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_contracts_instrument_expiry", "instrument_id", "expiry_date"),)


class TickModel(Base):
    """Append-only tick prints per contract."""

    __tablename__ = "ticks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False
    )
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    volume: Mapped[int] = mapped_column(Integer, nullable=False)
    oi: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bid: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    bid_qty: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ask: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    ask_qty: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (UniqueConstraint("contract_id", "ts", name="uq_ticks_contract_ts"),)


class GapObservationModel(Base):
    """Calendar-spread gaps for one instrument, day and HH:MM slot.

    Rewriting the same slot overwrites the stored values.
    """

    __tablename__ = "gap_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("instruments.id", ondelete="CASCADE"), nullable=False
    )
    trade_date: Mapped[date] = mapped_column(Date, nullable=False)
    time_slot: Mapped[str] = mapped_column(String(5), nullable=False)
    gap_1: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    gap_2: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    price_1: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    price_2: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    price_3: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("instrument_id", "trade_date", "time_slot", name="uq_gap_observations_slot"),
        Index("idx_gap_observations_trade_date", "trade_date"),
    )


class GapAlertModel(Base):
    """A fired gap deviation alert."""

    __tablename__ = "gap_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("instruments.id", ondelete="CASCADE"), nullable=False
    )
    instrument_name: Mapped[str] = mapped_column(String(64), nullable=False)
    time_slot: Mapped[str] = mapped_column(String(5), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(8), nullable=False)
    current_value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    baseline_value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    deviation_percent: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    baseline_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_gap_alerts_instrument_triggered", "instrument_id", "triggered_at"),
    )


class AlertConfigModel(Base):
    """Alert thresholds; a row with no instrument is the global default."""

    __tablename__ = "gap_alert_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("instruments.id", ondelete="CASCADE"), nullable=True
    )
    percent_threshold: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_gap_alert_config_instrument", "instrument_id"),)
