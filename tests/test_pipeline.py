"""Tests for the main pipeline orchestrator."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from futures_gap_monitor.config import Settings
from futures_gap_monitor.ingestor.models import Tick
from futures_gap_monitor.ingestor.tick_client import TickSourceError, VendorAuthError
from futures_gap_monitor.pipeline import GapMonitorPipeline, PipelineState
from futures_gap_monitor.spread.alignment import AlignmentMode
from futures_gap_monitor.storage.repos import (
    ContractRepository,
    GapAlertRepository,
    GapObservationRepository,
    InstrumentRepository,
    TickRepository,
)

IST = ZoneInfo("Asia/Kolkata")
# Monday 2024-01-15 10:20 IST
MONDAY_MORNING = datetime(2024, 1, 15, 4, 50, tzinfo=UTC)


class FakeTickSource:
    """Serves ticks at 10:15 local time on the requested day.

    near=100, next=102, far=101 unless overridden per symbol.
    """

    def __init__(self) -> None:
        self.prices = {"NIFTY24JANFUT": "100", "NIFTY24FEBFUT": "102", "NIFTY24MARFUT": "101"}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    async def fetch_ticks(self, symbol: str, start: datetime, end: datetime) -> list[Tick]:
        self.calls.append(symbol)
        if symbol in self.errors:
            raise self.errors[symbol]
        price = self.prices.get(symbol)
        if price is None:
            return []
        offset = sorted(self.prices).index(symbol)
        ts = datetime.combine(start.astimezone(IST).date(), datetime.min.time(), tzinfo=IST).replace(
            hour=10, minute=15, second=offset
        )
        return [Tick(timestamp=ts, price=Decimal(price), volume=50)]


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("GAP_BASELINE_DAYS_MIN", "1")
    monkeypatch.delenv("DRY_RUN", raising=False)
    return Settings()


@pytest.fixture
def tick_source() -> FakeTickSource:
    return FakeTickSource()


@pytest.fixture
def sink() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def clock():
    state = {"now": MONDAY_MORNING}

    def now() -> datetime:
        return state["now"]

    now.state = state  # type: ignore[attr-defined]
    return now


@pytest.fixture
async def pipeline(settings, db_manager, nifty, tick_source, sink, notifier, clock) -> GapMonitorPipeline:
    pipeline = GapMonitorPipeline(
        settings,
        db_manager=db_manager,
        tick_source=tick_source,
        sink=sink,
        notifier=notifier,
        clock=clock,
    )
    await pipeline.initialize()
    yield pipeline
    await pipeline.close()


@pytest.fixture
async def seeded_baselines(db_manager, nifty, seed_observations) -> None:
    """gap_1=1.0, gap_2=-2.0 at 10:15 on the three previous days."""
    days = [date(2024, 1, 10), date(2024, 1, 11), date(2024, 1, 12)]
    await seed_observations(nifty, days, time_slot="10:15", gap_1="1", gap_2="-2")


class TestPipelineInit:
    """Tests for pipeline construction and lifecycle."""

    def test_initial_state(self, settings) -> None:
        pipeline = GapMonitorPipeline(settings)

        assert pipeline.state == PipelineState.STOPPED
        assert pipeline.stats.cycles_run == 0
        assert not pipeline.is_running

    def test_dry_run_override(self, settings) -> None:
        pipeline = GapMonitorPipeline(settings, dry_run=True)
        assert pipeline._dry_run is True

    @pytest.mark.asyncio
    async def test_operations_require_initialize(self, settings, db_manager) -> None:
        pipeline = GapMonitorPipeline(settings, db_manager=db_manager, tick_source=FakeTickSource())

        with pytest.raises(RuntimeError):
            await pipeline.evaluate_cycle()

    @pytest.mark.asyncio
    async def test_live_client_requires_vendor_credentials(self, settings, db_manager) -> None:
        pipeline = GapMonitorPipeline(settings, db_manager=db_manager, sink=AsyncMock(), notifier=AsyncMock())

        with pytest.raises(ValueError, match="VENDOR_USERNAME"):
            await pipeline.initialize()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, settings, db_manager, nifty, tick_source, sink, notifier, clock) -> None:
        clock.state["now"] = datetime(2024, 1, 13, 5, 0, tzinfo=UTC)  # Saturday
        pipeline = GapMonitorPipeline(
            settings,
            db_manager=db_manager,
            tick_source=tick_source,
            sink=sink,
            notifier=notifier,
            clock=clock,
        )

        async with pipeline:
            assert pipeline.state == PipelineState.RUNNING
            assert pipeline.stats.started_at is not None
            assert pipeline.stats.baseline_refreshes == 1

        assert pipeline.state == PipelineState.STOPPED
        assert tick_source.calls == []

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, pipeline: GapMonitorPipeline, clock) -> None:
        clock.state["now"] = datetime(2024, 1, 13, 5, 0, tzinfo=UTC)
        await pipeline.start()
        try:
            with pytest.raises(RuntimeError):
                await pipeline.start()
        finally:
            await pipeline.stop()


class TestTradingWindow:
    def test_weekday_session(self, pipeline: GapMonitorPipeline) -> None:
        assert pipeline.is_trading_time(MONDAY_MORNING)
        assert not pipeline.is_trading_time(datetime(2024, 1, 15, 3, 0, tzinfo=UTC))  # 08:30 IST
        assert not pipeline.is_trading_time(datetime(2024, 1, 15, 10, 30, tzinfo=UTC))  # 16:00 IST
        assert not pipeline.is_trading_time(datetime(2024, 1, 13, 5, 0, tzinfo=UTC))  # Saturday


class TestEvaluateCycle:
    """Tests for live evaluation cycles."""

    @pytest.mark.asyncio
    async def test_cycle_stores_and_alerts(
        self, pipeline: GapMonitorPipeline, seeded_baselines, db_manager, nifty, sink
    ) -> None:
        await pipeline.refresh_baselines()

        result = await pipeline.evaluate_cycle()
        await pipeline.alert_engine.drain()

        assert result.ok
        assert result.mode is AlignmentMode.LIVE
        assert result.instruments_processed == 1
        assert result.observations_stored == 1
        assert result.alerts_fired == 2

        async with db_manager.get_async_session() as session:
            observation = await GapObservationRepository(session).get(nifty, date(2024, 1, 15), "10:15")
            alerts = await GapAlertRepository(session).list_recent(instrument_id=nifty)
            contract_ids = {c.symbol: c.contract_id for c in await ContractRepository(session).list_active_legs(date(2024, 1, 15))}
            near_ticks = await TickRepository(session).count_for_contract(contract_ids["NIFTY24JANFUT"])

        assert observation is not None
        assert observation.gap_1 == Decimal("2")
        assert observation.gap_2 == Decimal("-1")
        assert sorted(a.deviation_percent for a in alerts) == [Decimal("50.00"), Decimal("100.00")]
        assert near_ticks == 1
        assert sink.publish.await_count == 2

    @pytest.mark.asyncio
    async def test_repeated_cycle_overwrites_slot(
        self, pipeline: GapMonitorPipeline, db_manager, nifty, tick_source
    ) -> None:
        await pipeline.evaluate_cycle()
        tick_source.prices["NIFTY24FEBFUT"] = "103"
        await pipeline.evaluate_cycle()

        async with db_manager.get_async_session() as session:
            rows = await GapObservationRepository(session).list_for_instrument(
                nifty, start=date(2024, 1, 15), end=date(2024, 1, 15)
            )
        assert len(rows) == 1
        assert rows[0].gap_1 == Decimal("3")

    @pytest.mark.asyncio
    async def test_failed_instrument_does_not_stop_cycle(
        self, pipeline: GapMonitorPipeline, db_manager, tick_source
    ) -> None:
        async with db_manager.get_async_session() as session:
            bank = await InstrumentRepository(session).get_or_create("BANKNIFTY")
            contracts = ContractRepository(session)
            for symbol, expiry in (("BANK24JAN", date(2024, 1, 25)), ("BANK24FEB", date(2024, 2, 29))):
                await contracts.upsert(instrument_id=bank.id, symbol=symbol, expiry_date=expiry)
        tick_source.errors["BANK24JAN"] = TickSourceError("boom")
        tick_source.errors["BANK24FEB"] = TickSourceError("boom")

        result = await pipeline.evaluate_cycle()

        assert result.instruments_total == 2
        assert result.instruments_processed == 1
        assert result.instruments_skipped == 1
        assert result.legs_failed == 2
        assert result.ok

    @pytest.mark.asyncio
    async def test_persistence_failure_is_reported(
        self, pipeline: GapMonitorPipeline, monkeypatch: pytest.MonkeyPatch, sink
    ) -> None:
        monkeypatch.setattr(GapObservationRepository, "upsert", AsyncMock(side_effect=RuntimeError("disk full")))

        result = await pipeline.evaluate_cycle()

        assert not result.ok
        assert [f.stage for f in result.failures] == ["persist"]
        assert "disk full" in result.failures[0].message
        assert result.alerts_fired == 0
        assert pipeline.stats.errors == 1

    @pytest.mark.asyncio
    async def test_deadline_skips_remaining_instruments(
        self, pipeline: GapMonitorPipeline, settings, tick_source
    ) -> None:
        settings.schedule.deadline_seconds = 0.0

        result = await pipeline.evaluate_cycle()

        assert result.instruments_past_deadline == 1
        assert result.instruments_processed == 0
        assert tick_source.calls == []

    @pytest.mark.asyncio
    async def test_auth_failure_aborts_and_notifies_once(
        self, pipeline: GapMonitorPipeline, tick_source, notifier
    ) -> None:
        tick_source.errors["NIFTY24JANFUT"] = VendorAuthError("login failed", attempts=5)

        first = await pipeline.evaluate_cycle()
        second = await pipeline.evaluate_cycle()

        assert first.aborted and second.aborted
        assert notifier.notify_operators.await_count == 1

        del tick_source.errors["NIFTY24JANFUT"]
        assert (await pipeline.evaluate_cycle()).ok

        tick_source.errors["NIFTY24JANFUT"] = VendorAuthError("login failed", attempts=5)
        await pipeline.evaluate_cycle()
        assert notifier.notify_operators.await_count == 2

    @pytest.mark.asyncio
    async def test_each_crash_streak_notifies_once(
        self, pipeline: GapMonitorPipeline, notifier, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        real_load = pipeline._load_instruments
        broken_load = AsyncMock(side_effect=RuntimeError("database unavailable"))

        monkeypatch.setattr(pipeline, "_load_instruments", broken_load)
        await pipeline._run_scheduled_cycle()
        await pipeline._run_scheduled_cycle()
        assert notifier.notify_operators.await_count == 1

        monkeypatch.setattr(pipeline, "_load_instruments", real_load)
        await pipeline._run_scheduled_cycle()
        assert pipeline.stats.cycles_run == 1

        monkeypatch.setattr(pipeline, "_load_instruments", broken_load)
        await pipeline._run_scheduled_cycle()

        assert notifier.notify_operators.await_count == 2
        assert pipeline.stats.cycles_failed == 3
        subject, body = notifier.notify_operators.await_args.args
        assert subject == "Gap evaluation cycle failed"
        assert "database unavailable" in body


class TestBackfill:
    """Tests for historical reconstruction."""

    @pytest.mark.asyncio
    async def test_backfill_stores_without_alerting(
        self, pipeline: GapMonitorPipeline, seeded_baselines, db_manager, nifty, sink
    ) -> None:
        await pipeline.refresh_baselines()

        result = await pipeline.backfill_date(date(2024, 1, 12))
        await pipeline.alert_engine.drain()

        assert result.mode is AlignmentMode.BACKFILL
        assert result.observations_stored == 1
        assert result.alerts_fired == 0
        sink.publish.assert_not_awaited()
        async with db_manager.get_async_session() as session:
            observation = await GapObservationRepository(session).get(nifty, date(2024, 1, 12), "10:15")
        assert observation is not None
        assert observation.gap_1 == Decimal("2")

    @pytest.mark.asyncio
    async def test_backfill_future_date_rejected(self, pipeline: GapMonitorPipeline) -> None:
        with pytest.raises(ValueError):
            await pipeline.backfill_date(date(2024, 1, 16))

    @pytest.mark.asyncio
    async def test_backfill_range_skips_weekends(self, pipeline: GapMonitorPipeline) -> None:
        results = await pipeline.backfill_range(date(2024, 1, 12), date(2024, 1, 15))

        assert [r.trade_date for r in results] == [date(2024, 1, 12), date(2024, 1, 15)]

    @pytest.mark.asyncio
    async def test_backfill_range_order_checked(self, pipeline: GapMonitorPipeline) -> None:
        with pytest.raises(ValueError):
            await pipeline.backfill_range(date(2024, 1, 15), date(2024, 1, 12))


class TestMaintenance:
    """Tests for baseline refresh, config reload and retention."""

    @pytest.mark.asyncio
    async def test_refresh_and_get_baseline(self, pipeline: GapMonitorPipeline, seeded_baselines, nifty) -> None:
        count = await pipeline.refresh_baselines()

        assert count == 1
        entry = pipeline.get_baseline(nifty, "10:15")
        assert entry is not None
        assert entry.baseline_gap_1 == Decimal("1")
        assert pipeline.get_baseline(nifty, "15:00") is None

    @pytest.mark.asyncio
    async def test_purge_history(self, pipeline: GapMonitorPipeline, db_manager, nifty, seed_observations) -> None:
        await seed_observations(nifty, [date(2023, 12, 1), date(2024, 1, 10)])

        deleted = await pipeline.purge_history()

        assert deleted == 1
        assert pipeline.stats.rows_purged == 1
        async with db_manager.get_async_session() as session:
            rows = await GapObservationRepository(session).list_for_instrument(
                nifty, start=date(2023, 1, 1), end=date(2024, 12, 31)
            )
        assert [r.trade_date for r in rows] == [date(2024, 1, 10)]

    @pytest.mark.asyncio
    async def test_reload_alert_config(self, pipeline: GapMonitorPipeline) -> None:
        pipeline.reload_alert_config()

    def test_today_is_exchange_local(self, pipeline: GapMonitorPipeline, clock) -> None:
        clock.state["now"] = datetime(2024, 1, 15, 19, 0, tzinfo=UTC)  # 00:30 IST next day
        assert pipeline.today() == date(2024, 1, 16)
        assert pipeline.local_now().utcoffset() == timedelta(hours=5, minutes=30)
