"""Tests for alert threshold resolution."""

from decimal import Decimal

import pytest

from futures_gap_monitor.detector.alert_config import AlertConfigResolver
from futures_gap_monitor.storage.repos import AlertConfigDTO, AlertConfigRepository


async def add_config(db_manager, instrument_id: int | None, percent: str, cooldown: int, *, active: bool = True) -> None:
    async with db_manager.get_async_session() as session:
        await AlertConfigRepository(session).insert(
            AlertConfigDTO(
                instrument_id=instrument_id,
                percent_threshold=Decimal(percent),
                cooldown_minutes=cooldown,
                is_active=active,
            )
        )


class TestAlertConfigResolver:
    """Tests for AlertConfigResolver."""

    @pytest.mark.asyncio
    async def test_defaults_without_rows(self, db_manager, nifty: int) -> None:
        resolver = AlertConfigResolver(db_manager.get_async_session)

        thresholds = await resolver.resolve(nifty)

        assert thresholds.percent_threshold == Decimal("15")
        assert thresholds.cooldown_minutes == 30
        assert thresholds.source == "default"

    @pytest.mark.asyncio
    async def test_global_row_used(self, db_manager, nifty: int) -> None:
        await add_config(db_manager, None, "20", 45)
        resolver = AlertConfigResolver(db_manager.get_async_session)

        thresholds = await resolver.resolve(nifty)

        assert thresholds.percent_threshold == Decimal("20")
        assert thresholds.cooldown_minutes == 45
        assert thresholds.source == "global"

    @pytest.mark.asyncio
    async def test_instrument_row_overrides_global(self, db_manager, nifty: int) -> None:
        await add_config(db_manager, None, "20", 45)
        await add_config(db_manager, nifty, "5", 10)
        resolver = AlertConfigResolver(db_manager.get_async_session)

        thresholds = await resolver.resolve(nifty)

        assert thresholds.percent_threshold == Decimal("5")
        assert thresholds.source == "instrument"

    @pytest.mark.asyncio
    async def test_inactive_rows_ignored(self, db_manager, nifty: int) -> None:
        await add_config(db_manager, nifty, "5", 10, active=False)
        resolver = AlertConfigResolver(db_manager.get_async_session)

        assert (await resolver.resolve(nifty)).source == "default"

    @pytest.mark.asyncio
    async def test_cached_until_reload(self, db_manager, nifty: int) -> None:
        resolver = AlertConfigResolver(db_manager.get_async_session)
        assert (await resolver.resolve(nifty)).source == "default"

        await add_config(db_manager, nifty, "5", 10)
        assert (await resolver.resolve(nifty)).source == "default"

        resolver.reload()
        assert (await resolver.resolve(nifty)).percent_threshold == Decimal("5")

    @pytest.mark.asyncio
    async def test_configured_defaults(self, db_manager, nifty: int) -> None:
        resolver = AlertConfigResolver(
            db_manager.get_async_session, default_percent=Decimal("25"), default_cooldown_minutes=5
        )

        thresholds = await resolver.resolve(nifty)

        assert thresholds.percent_threshold == Decimal("25")
        assert thresholds.cooldown_minutes == 5
