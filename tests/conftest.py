"""Pytest configuration and fixtures."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from futures_gap_monitor.storage.database import DatabaseManager
from futures_gap_monitor.storage.models import Base
from futures_gap_monitor.storage.repos import (
    ContractRepository,
    GapObservationDTO,
    GapObservationRepository,
    InstrumentRepository,
)


@pytest.fixture
async def async_engine():
    """Create an async in-memory SQLite engine with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db_manager(async_engine) -> DatabaseManager:
    """Database manager bound to the in-memory engine."""
    return DatabaseManager.from_engine(async_engine)


@pytest.fixture
async def nifty(db_manager: DatabaseManager) -> int:
    """Instrument NIFTY with three listed contracts; returns the instrument id."""
    async with db_manager.get_async_session() as session:
        instrument = await InstrumentRepository(session).get_or_create("NIFTY")
        contracts = ContractRepository(session)
        await contracts.upsert(instrument_id=instrument.id, symbol="NIFTY24JANFUT", expiry_date=date(2024, 1, 25))
        await contracts.upsert(instrument_id=instrument.id, symbol="NIFTY24FEBFUT", expiry_date=date(2024, 2, 29))
        await contracts.upsert(instrument_id=instrument.id, symbol="NIFTY24MARFUT", expiry_date=date(2024, 3, 28))
    return instrument.id


@pytest.fixture
def seed_observations(db_manager: DatabaseManager):
    """Returns a coroutine storing one observation per day for a time slot."""

    async def seed(
        instrument_id: int,
        days: list[date],
        *,
        time_slot: str = "10:15",
        gap_1: str | None = "1",
        gap_2: str | None = "-2",
    ) -> None:
        async with db_manager.get_async_session() as session:
            repo = GapObservationRepository(session)
            for day in days:
                await repo.upsert(
                    GapObservationDTO(
                        instrument_id=instrument_id,
                        trade_date=day,
                        time_slot=time_slot,
                        gap_1=Decimal(gap_1) if gap_1 is not None else None,
                        gap_2=Decimal(gap_2) if gap_2 is not None else None,
                        price_1=Decimal("100"),
                        price_2=Decimal("101"),
                        price_3=Decimal("99"),
                    )
                )

    return seed
