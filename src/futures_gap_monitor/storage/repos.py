"""Repository pattern implementations for data access.

This module provides data access abstractions for instruments and their
contracts, raw ticks, gap observations, fired alerts and alert thresholds.
Upserts use ``INSERT ... ON CONFLICT`` on PostgreSQL and SQLite.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from futures_gap_monitor.ingestor.models import Contract, Tick
from futures_gap_monitor.storage.models import (
    AlertConfigModel,
    ContractModel,
    GapAlertModel,
    GapObservationModel,
    InstrumentModel,
    TickModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _as_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _as_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


@dataclass
class InstrumentDTO:
    """Data transfer object for instruments."""

    id: int
    name: str
    is_active: bool = True

    @classmethod
    def from_model(cls, model: InstrumentModel) -> InstrumentDTO:
        return cls(id=model.id, name=model.name, is_active=model.is_active)


class InstrumentRepository:
    """Repository for instruments."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_or_create(self, name: str) -> InstrumentDTO:
        result = await self.session.execute(select(InstrumentModel).where(InstrumentModel.name == name))
        model = result.scalar_one_or_none()
        if model is None:
            model = InstrumentModel(name=name, is_active=True)
            self.session.add(model)
            await self.session.flush()
        return InstrumentDTO.from_model(model)

    async def list_active(self) -> list[InstrumentDTO]:
        result = await self.session.execute(
            select(InstrumentModel).where(InstrumentModel.is_active.is_(True)).order_by(InstrumentModel.id)
        )
        return [InstrumentDTO.from_model(m) for m in result.scalars().all()]


class ContractRepository:
    """Repository for listed contracts (the instrument/leg directory)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, *, instrument_id: int, symbol: str, expiry_date: date) -> int:
        """Insert or update a contract by symbol, returning its id."""
        stmt = _insert(self.session, ContractModel).values(
            instrument_id=instrument_id,
            symbol=symbol,
            expiry_date=expiry_date,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["symbol"],
            set_={
                "instrument_id": stmt.excluded.instrument_id,
                "expiry_date": stmt.excluded.expiry_date,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        result = await self.session.execute(select(ContractModel.id).where(ContractModel.symbol == symbol))
        return int(result.scalar_one())

    async def list_active_legs(self, as_of: date) -> list[Contract]:
        """Unexpired contracts of active instruments ordered by instrument and expiry."""
        stmt = (
            select(ContractModel, InstrumentModel.name)
            .join(InstrumentModel, InstrumentModel.id == ContractModel.instrument_id)
            .where(InstrumentModel.is_active.is_(True))
            .where(ContractModel.expiry_date >= as_of)
            .order_by(ContractModel.instrument_id, ContractModel.expiry_date, ContractModel.id)
        )
        result = await self.session.execute(stmt)
        return [
            Contract(
                contract_id=contract.id,
                instrument_id=contract.instrument_id,
                instrument_name=name,
                symbol=contract.symbol,
                expiry_date=contract.expiry_date,
            )
            for contract, name in result.all()
        ]


class TickRepository:
    """Repository for append-only ticks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, contract_id: int, ticks: Iterable[Tick]) -> int:
        """Insert ticks, ignoring prints already stored for the same timestamp."""
        rows = [
            {
                "contract_id": contract_id,
                "ts": tick.timestamp,
                "price": tick.price,
                "volume": tick.volume,
                "oi": tick.oi,
                "bid": tick.bid,
                "bid_qty": tick.bid_qty,
                "ask": tick.ask,
                "ask_qty": tick.ask_qty,
            }
            for tick in ticks
        ]
        if not rows:
            return 0
        stmt = _insert(self.session, TickModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["contract_id", "ts"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return max(int(result.rowcount or 0), 0)

    async def count_for_contract(self, contract_id: int) -> int:
        result = await self.session.execute(
            select(sa.func.count()).select_from(TickModel).where(TickModel.contract_id == contract_id)
        )
        return int(result.scalar_one())


@dataclass
class GapObservationDTO:
    """Data transfer object for gap observations."""

    instrument_id: int
    trade_date: date
    time_slot: str
    gap_1: Decimal | None
    gap_2: Decimal | None
    price_1: Decimal | None
    price_2: Decimal | None
    price_3: Decimal | None

    @classmethod
    def from_model(cls, model: GapObservationModel) -> GapObservationDTO:
        return cls(
            instrument_id=model.instrument_id,
            trade_date=model.trade_date,
            time_slot=model.time_slot,
            gap_1=model.gap_1,
            gap_2=model.gap_2,
            price_1=model.price_1,
            price_2=model.price_2,
            price_3=model.price_3,
        )


@dataclass(frozen=True)
class BaselineRow:
    """Aggregated gaps for one instrument and time slot over a date range."""

    instrument_id: int
    time_slot: str
    avg_gap_1: Decimal | None
    avg_gap_2: Decimal | None
    baseline_date: date | None
    days: int


class GapObservationRepository:
    """Repository for per-slot gap observations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: GapObservationDTO) -> GapObservationDTO:
        """Insert a new slot or overwrite the gap and price fields of an existing one."""
        values = {
            "instrument_id": dto.instrument_id,
            "trade_date": dto.trade_date,
            "time_slot": dto.time_slot,
            "gap_1": dto.gap_1,
            "gap_2": dto.gap_2,
            "price_1": dto.price_1,
            "price_2": dto.price_2,
            "price_3": dto.price_3,
        }
        now = datetime.now(UTC)
        stmt = _insert(self.session, GapObservationModel).values(**values, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["instrument_id", "trade_date", "time_slot"],
            set_={
                "gap_1": stmt.excluded.gap_1,
                "gap_2": stmt.excluded.gap_2,
                "price_1": stmt.excluded.price_1,
                "price_2": stmt.excluded.price_2,
                "price_3": stmt.excluded.price_3,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def get(self, instrument_id: int, trade_date: date, time_slot: str) -> GapObservationDTO | None:
        result = await self.session.execute(
            select(GapObservationModel).where(
                GapObservationModel.instrument_id == instrument_id,
                GapObservationModel.trade_date == trade_date,
                GapObservationModel.time_slot == time_slot,
            )
        )
        model = result.scalar_one_or_none()
        return GapObservationDTO.from_model(model) if model else None

    async def list_for_instrument(
        self,
        instrument_id: int,
        *,
        start: date,
        end: date,
    ) -> list[GapObservationDTO]:
        result = await self.session.execute(
            select(GapObservationModel)
            .where(GapObservationModel.instrument_id == instrument_id)
            .where(GapObservationModel.trade_date >= start)
            .where(GapObservationModel.trade_date <= end)
            .order_by(GapObservationModel.trade_date, GapObservationModel.time_slot)
        )
        return [GapObservationDTO.from_model(m) for m in result.scalars().all()]

    async def compute_baselines(self, *, start: date, end: date) -> list[BaselineRow]:
        """Mean gaps per (instrument, time slot) over ``[start, end]`` in one grouped query."""
        stmt = (
            select(
                GapObservationModel.instrument_id,
                GapObservationModel.time_slot,
                sa.func.avg(GapObservationModel.gap_1),
                sa.func.avg(GapObservationModel.gap_2),
                sa.func.max(GapObservationModel.trade_date),
                sa.func.count(sa.distinct(GapObservationModel.trade_date)),
            )
            .where(GapObservationModel.trade_date >= start)
            .where(GapObservationModel.trade_date <= end)
            .group_by(GapObservationModel.instrument_id, GapObservationModel.time_slot)
        )
        result = await self.session.execute(stmt)
        return [
            BaselineRow(
                instrument_id=int(instrument_id),
                time_slot=str(time_slot),
                avg_gap_1=_as_decimal(avg_1),
                avg_gap_2=_as_decimal(avg_2),
                baseline_date=_as_date(max_date),
                days=int(n_days),
            )
            for instrument_id, time_slot, avg_1, avg_2, max_date, n_days in result.all()
        ]

    async def delete_older_than(self, cutoff: date) -> int:
        """Delete observations dated before ``cutoff``. Returns rows removed."""
        result = await self.session.execute(
            delete(GapObservationModel).where(GapObservationModel.trade_date < cutoff)
        )
        await self.session.flush()
        return int(result.rowcount or 0)


@dataclass
class GapAlertDTO:
    """Data transfer object for fired alerts."""

    instrument_id: int
    instrument_name: str
    time_slot: str
    alert_type: str
    current_value: Decimal
    baseline_value: Decimal
    deviation_percent: Decimal
    triggered_at: datetime
    baseline_date: date | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: GapAlertModel) -> GapAlertDTO:
        return cls(
            id=model.id,
            instrument_id=model.instrument_id,
            instrument_name=model.instrument_name,
            time_slot=model.time_slot,
            alert_type=model.alert_type,
            current_value=model.current_value,
            baseline_value=model.baseline_value,
            deviation_percent=model.deviation_percent,
            baseline_date=model.baseline_date,
            triggered_at=model.triggered_at,
        )


class GapAlertRepository:
    """Repository for fired alerts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: GapAlertDTO) -> GapAlertDTO:
        model = GapAlertModel(
            instrument_id=dto.instrument_id,
            instrument_name=dto.instrument_name,
            time_slot=dto.time_slot,
            alert_type=dto.alert_type,
            current_value=dto.current_value,
            baseline_value=dto.baseline_value,
            deviation_percent=dto.deviation_percent,
            baseline_date=dto.baseline_date,
            triggered_at=dto.triggered_at,
        )
        self.session.add(model)
        await self.session.flush()
        dto.id = model.id
        return dto

    async def list_recent(self, *, instrument_id: int | None = None, limit: int = 100) -> list[GapAlertDTO]:
        stmt = select(GapAlertModel).order_by(GapAlertModel.triggered_at.desc(), GapAlertModel.id.desc())
        if instrument_id is not None:
            stmt = stmt.where(GapAlertModel.instrument_id == instrument_id)
        result = await self.session.execute(stmt.limit(limit))
        return [GapAlertDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class AlertConfigDTO:
    """Data transfer object for alert thresholds."""

    instrument_id: int | None
    percent_threshold: Decimal
    cooldown_minutes: int
    is_active: bool = True

    @classmethod
    def from_model(cls, model: AlertConfigModel) -> AlertConfigDTO:
        return cls(
            instrument_id=model.instrument_id,
            percent_threshold=model.percent_threshold,
            cooldown_minutes=model.cooldown_minutes,
            is_active=model.is_active,
        )


class AlertConfigRepository:
    """Repository for alert thresholds."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_active(self, instrument_id: int | None) -> AlertConfigDTO | None:
        """Latest active row for ``instrument_id`` (``None`` selects the global row)."""
        stmt = select(AlertConfigModel).where(AlertConfigModel.is_active.is_(True))
        if instrument_id is None:
            stmt = stmt.where(AlertConfigModel.instrument_id.is_(None))
        else:
            stmt = stmt.where(AlertConfigModel.instrument_id == instrument_id)
        stmt = stmt.order_by(AlertConfigModel.updated_at.desc(), AlertConfigModel.id.desc()).limit(1)
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return AlertConfigDTO.from_model(model) if model else None

    async def insert(self, dto: AlertConfigDTO) -> AlertConfigDTO:
        self.session.add(
            AlertConfigModel(
                instrument_id=dto.instrument_id,
                percent_threshold=dto.percent_threshold,
                cooldown_minutes=dto.cooldown_minutes,
                is_active=dto.is_active,
            )
        )
        await self.session.flush()
        return dto
