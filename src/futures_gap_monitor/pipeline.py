"""Main pipeline orchestrator for the futures gap monitor.

This module provides the GapMonitorPipeline class that wires together the
vendor client, leg alignment, gap storage, baselines and alerting, and
runs the periodic evaluation, baseline refresh and retention loops.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
from redis.asyncio import Redis

from futures_gap_monitor.alerter.channels.discord import DiscordChannel
from futures_gap_monitor.alerter.channels.telegram import TelegramChannel
from futures_gap_monitor.alerter.dispatcher import AlertChannel, AlertDispatcher, OperatorNotifier
from futures_gap_monitor.alerter.realtime import LoggingSink, RealtimeSink, RedisRealtimeSink
from futures_gap_monitor.config import Settings, get_settings
from futures_gap_monitor.detector.alert_config import AlertConfigResolver
from futures_gap_monitor.detector.gap_deviation import GapAlertEngine
from futures_gap_monitor.ingestor.models import InstrumentLegs, LegRank, rank_legs
from futures_gap_monitor.ingestor.rate_limiter import SlidingWindowRateLimiter
from futures_gap_monitor.ingestor.tick_client import TickHistoryClient, VendorAuthenticator, VendorAuthError
from futures_gap_monitor.spread.alignment import AlignmentMode, LegAlignmentEngine, TickSource
from futures_gap_monitor.spread.baseline import BaselineCache, BaselineEntry
from futures_gap_monitor.spread.gaps import GapSnapshot, compute_gaps
from futures_gap_monitor.storage.database import DatabaseManager
from futures_gap_monitor.storage.repos import (
    ContractRepository,
    GapObservationDTO,
    GapObservationRepository,
    TickRepository,
)

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    cycles_run: int = 0
    cycles_failed: int = 0
    observations_stored: int = 0
    alerts_fired: int = 0
    baseline_refreshes: int = 0
    rows_purged: int = 0
    errors: int = 0
    last_cycle_at: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class InstrumentFailure:
    """An instrument whose observations could not be stored."""

    instrument_id: int
    instrument_name: str
    stage: str
    message: str


@dataclass
class CycleResult:
    """Outcome of one evaluation (live) or reconstruction (backfill) pass."""

    mode: AlignmentMode
    trade_date: date
    started_at: datetime
    finished_at: datetime | None = None
    instruments_total: int = 0
    instruments_processed: int = 0
    instruments_skipped: int = 0
    instruments_past_deadline: int = 0
    legs_failed: int = 0
    observations_stored: int = 0
    alerts_fired: int = 0
    aborted: bool = False
    failures: list[InstrumentFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.aborted


class GapMonitorPipeline:
    """Main pipeline orchestrator for the futures gap monitor.

    Pipeline flow:
        Leg directory → Leg Alignment (rate limited) → Gap Computation →
        Gap store → Deviation & Alert Engine → Alert store / real-time sink

    Collaborators not passed in are built from settings in
    :meth:`initialize`; tests inject fakes.

    Example:
        ```python
        from futures_gap_monitor.config import get_settings
        from futures_gap_monitor.pipeline import GapMonitorPipeline

        pipeline = GapMonitorPipeline(get_settings())
        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        db_manager: DatabaseManager | None = None,
        tick_source: TickSource | None = None,
        sink: RealtimeSink | None = None,
        notifier: OperatorNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, alerts are stored but not published. Overrides settings.dry_run.
            db_manager: Database manager (built from DATABASE_URL if omitted).
            tick_source: Tick source (the vendor client if omitted).
            sink: Real-time sink (Redis pub/sub if omitted).
            notifier: Operator notifier (Discord/Telegram if omitted).
            clock: Returns the current UTC-aware time.
            rng: Random source for backfill sampling.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._clock = clock or (lambda: datetime.now(UTC))
        self._rng = rng
        self._tz: ZoneInfo = self._settings.market.tz

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()
        self._initialized = False

        self._db_manager = db_manager
        self._tick_source = tick_source
        self._sink = sink
        self._notifier = notifier
        self._owns_db = db_manager is None

        # Components (initialized in initialize())
        self._redis: Redis | None = None
        self._http: httpx.AsyncClient | None = None
        self._rate_limiter: SlidingWindowRateLimiter | None = None
        self._alignment: LegAlignmentEngine | None = None
        self._baselines: BaselineCache | None = None
        self._alert_config: AlertConfigResolver | None = None
        self._alert_engine: GapAlertEngine | None = None

        self._auth_failure_notified = False
        self._cycle_failure_notified = False

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._cycle_task: asyncio.Task[None] | None = None
        self._baseline_task: asyncio.Task[None] | None = None
        self._retention_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter | None:
        return self._rate_limiter

    @property
    def alert_engine(self) -> GapAlertEngine | None:
        return self._alert_engine

    @property
    def baselines(self) -> BaselineCache | None:
        return self._baselines

    def local_now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    def today(self) -> date:
        """Exchange-local calendar date."""
        return self.local_now().date()

    def is_trading_time(self, at: datetime | None = None) -> bool:
        """Weekday inside the configured session hours (exchange-local)."""
        local = (at or self._clock()).astimezone(self._tz)
        market = self._settings.market
        return local.weekday() < 5 and market.session_open <= local.time() <= market.session_close

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the pipeline.

        Initializes all components, primes the baseline cache and starts the
        background loops.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self.initialize()
            await self.refresh_baselines()
            self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Stops all background loops, waits for in-flight alert publications
        and releases connections.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def initialize(self) -> None:
        """Build every collaborator that was not injected."""
        if self._initialized:
            return
        settings = self._settings

        if self._db_manager is None:
            logger.debug("Initializing database...")
            self._db_manager = DatabaseManager(settings.database.url)
            if self._db_manager.is_sqlite:
                await self._db_manager.ensure_schema()

        if self._tick_source is None:
            logger.debug("Initializing tick vendor client...")
            settings.validate_requirements()
            username, password = settings.vendor.username, settings.vendor.password
            if username is None or password is None:
                raise RuntimeError("Vendor credentials disappeared after validation")
            self._rate_limiter = SlidingWindowRateLimiter(
                per_second=settings.rate_limit.per_second,
                per_minute=settings.rate_limit.per_minute,
                per_hour=settings.rate_limit.per_hour,
            )
            self._http = httpx.AsyncClient(timeout=settings.vendor.timeout_seconds)
            authenticator = VendorAuthenticator(
                self._http,
                auth_url=settings.vendor.auth_url,
                username=username,
                password=password.get_secret_value(),
                rate_limiter=self._rate_limiter,
                max_attempts=settings.vendor.auth_max_attempts,
                base_delay=settings.vendor.retry_base_delay_seconds,
            )
            self._tick_source = TickHistoryClient(
                self._http,
                history_url=settings.vendor.history_url,
                authenticator=authenticator,
                rate_limiter=self._rate_limiter,
                tz=self._tz,
                max_retries=settings.vendor.max_retries,
                retry_base_delay=settings.vendor.retry_base_delay_seconds,
            )

        if self._sink is None:
            if self._dry_run:
                self._sink = LoggingSink()
            else:
                logger.debug("Initializing Redis real-time sink...")
                self._redis = Redis.from_url(settings.redis.url)
                self._sink = RedisRealtimeSink(self._redis)

        if self._notifier is None:
            self._notifier = OperatorNotifier(
                AlertDispatcher(self._build_alert_channels()),
                recipients=settings.operator_recipients,
                dry_run=self._dry_run,
            )

        self._alignment = LegAlignmentEngine(
            self._tick_source,
            min_volume=settings.alignment.min_volume,
            tolerance=timedelta(seconds=settings.alignment.tolerance_seconds),
            sample_size=settings.alignment.backfill_sample_size,
            rng=self._rng,
        )

        min_days, max_days = settings.baseline.window()
        self._baselines = BaselineCache(
            self._db_manager.get_async_session,
            min_days=min_days,
            max_days=max_days,
            today=self.today,
        )
        self._alert_config = AlertConfigResolver(
            self._db_manager.get_async_session,
            default_percent=Decimal(str(settings.alert.percent_threshold)),
            default_cooldown_minutes=settings.alert.cooldown_minutes,
        )
        self._alert_engine = GapAlertEngine(
            self._db_manager.get_async_session,
            self._baselines,
            self._alert_config,
            self._sink,
            clock=self._clock,
            event_name=settings.alert.event_name,
        )

        self._initialized = True
        logger.info("All components initialized")

    def _build_alert_channels(self) -> list[AlertChannel]:
        """Build list of enabled operator notification channels."""
        channels: list[AlertChannel] = []
        settings = self._settings

        if settings.discord.enabled and settings.discord.webhook_url:
            channels.append(DiscordChannel(settings.discord.webhook_url.get_secret_value()))
            logger.info("Discord channel enabled")

        if settings.telegram.enabled:
            bot_token = settings.telegram.bot_token
            chat_id = settings.telegram.chat_id
            if bot_token and chat_id:
                channels.append(TelegramChannel(bot_token.get_secret_value(), chat_id))
                logger.info("Telegram channel enabled")

        if not channels:
            logger.warning("No operator notification channels configured")

        return channels

    def _require(self) -> tuple[DatabaseManager, LegAlignmentEngine, BaselineCache, GapAlertEngine]:
        if (
            not self._initialized
            or self._db_manager is None
            or self._alignment is None
            or self._baselines is None
            or self._alert_engine is None
        ):
            raise RuntimeError("Pipeline components are not initialized; call initialize() first")
        return self._db_manager, self._alignment, self._baselines, self._alert_engine

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def evaluate_cycle(self) -> CycleResult:
        """Run one live ingestion and alert pass over every active instrument."""
        now_local = self.local_now()
        day = now_local.date()
        market = self._settings.market
        start = datetime.combine(day, market.session_open, tzinfo=self._tz)
        end = min(now_local, datetime.combine(day, market.session_close, tzinfo=self._tz))
        return await self._run_cycle(day, start, end, AlignmentMode.LIVE, suppress_alerts=False)

    async def backfill_date(self, day: date) -> CycleResult:
        """Reconstruct sampled gap observations for a past trading day.

        Alerts are not raised for reconstructed history.
        """
        if day > self.today():
            raise ValueError(f"Cannot backfill a future date: {day.isoformat()}")
        market = self._settings.market
        start = datetime.combine(day, market.session_open, tzinfo=self._tz)
        end = datetime.combine(day, market.session_close, tzinfo=self._tz)
        return await self._run_cycle(day, start, end, AlignmentMode.BACKFILL, suppress_alerts=True)

    async def backfill_range(self, start: date, end: date) -> list[CycleResult]:
        """Backfill every weekday in ``[start, end]``."""
        if start > end:
            raise ValueError("start must not be after end")
        results: list[CycleResult] = []
        day = start
        while day <= end:
            if day.weekday() < 5:
                results.append(await self.backfill_date(day))
            day += timedelta(days=1)
        return results

    async def refresh_baselines(self) -> int:
        """Rebuild the baseline cache from stored observations."""
        _, _, baselines, _ = self._require()
        count = await baselines.refresh()
        self._stats.baseline_refreshes += 1
        return count

    def get_baseline(self, instrument_id: int, time_slot: str) -> BaselineEntry | None:
        """Read a cached baseline; None when the slot lacks history."""
        _, _, baselines, _ = self._require()
        return baselines.get_baseline(instrument_id, time_slot)

    def reload_alert_config(self) -> None:
        """Drop cached thresholds so edits to the config table take effect."""
        if self._alert_config is None:
            raise RuntimeError("Pipeline components are not initialized; call initialize() first")
        self._alert_config.reload()

    async def purge_history(self) -> int:
        """Delete gap observations older than the retention period."""
        db, _, _, _ = self._require()
        cutoff = self.today() - timedelta(days=self._settings.retention.retention_days)
        async with db.get_async_session() as session:
            deleted = await GapObservationRepository(session).delete_older_than(cutoff)
        self._stats.rows_purged += deleted
        logger.info("Purged %d gap observations dated before %s", deleted, cutoff.isoformat())
        return deleted

    # ------------------------------------------------------------------
    # Cycle internals
    # ------------------------------------------------------------------

    async def _load_instruments(self, day: date) -> list[InstrumentLegs]:
        db, _, _, _ = self._require()
        async with db.get_async_session() as session:
            contracts = await ContractRepository(session).list_active_legs(day)
        return rank_legs(contracts, day)

    async def _run_cycle(
        self,
        day: date,
        start: datetime,
        end: datetime,
        mode: AlignmentMode,
        *,
        suppress_alerts: bool,
    ) -> CycleResult:
        self._require()
        result = CycleResult(mode=mode, trade_date=day, started_at=self._clock())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.schedule.deadline_seconds

        instruments = await self._load_instruments(day)
        result.instruments_total = len(instruments)

        for index, instrument in enumerate(instruments):
            remaining = deadline - loop.time()
            if remaining <= 0:
                result.instruments_past_deadline = len(instruments) - index
                logger.warning(
                    "Cycle deadline reached; skipping %d remaining instruments",
                    result.instruments_past_deadline,
                )
                break
            try:
                await asyncio.wait_for(
                    self._process_instrument(instrument, start, end, mode, result, suppress_alerts=suppress_alerts),
                    timeout=remaining,
                )
            except TimeoutError:
                result.instruments_past_deadline = len(instruments) - index
                logger.warning(
                    "Cycle deadline reached while processing %s; skipping %d instruments",
                    instrument.instrument_name,
                    result.instruments_past_deadline,
                )
                break
            except VendorAuthError as e:
                result.aborted = True
                await self._on_auth_failure(e)
                break

        if not result.aborted:
            self._auth_failure_notified = False

        result.finished_at = self._clock()
        self._stats.observations_stored += result.observations_stored
        self._stats.alerts_fired += result.alerts_fired
        if result.failures:
            self._stats.errors += len(result.failures)
            self._stats.last_error = result.failures[-1].message

        logger.info(
            "%s cycle for %s: %d/%d instruments processed, %d skipped, %d past deadline, "
            "%d observations, %d alerts, %d failures",
            mode.value,
            day.isoformat(),
            result.instruments_processed,
            result.instruments_total,
            result.instruments_skipped,
            result.instruments_past_deadline,
            result.observations_stored,
            result.alerts_fired,
            len(result.failures),
        )
        if self._rate_limiter is not None:
            logger.debug("Rate limiter usage: %s", self._rate_limiter.get_stats().to_dict())
        return result

    async def _process_instrument(
        self,
        instrument: InstrumentLegs,
        start: datetime,
        end: datetime,
        mode: AlignmentMode,
        result: CycleResult,
        *,
        suppress_alerts: bool,
    ) -> None:
        db, alignment, _, alert_engine = self._require()

        aligned = await alignment.align(instrument, start, end, mode)
        result.legs_failed += len(aligned.failed_legs)
        if not aligned.points:
            result.instruments_skipped += 1
            logger.warning(
                "Skipping %s: not enough aligned leg data (legs present: %s)",
                instrument.instrument_name,
                ", ".join(leg.rank.value for leg in instrument.legs()) or "none",
            )
            return

        snapshots = [compute_gaps(point, instrument.instrument_id, self._tz) for point in aligned.points]

        try:
            async with db.get_async_session() as session:
                tick_repo = TickRepository(session)
                for rank in LegRank:
                    leg = instrument.get(rank)
                    if leg is None:
                        continue
                    ticks = [p.ticks()[rank] for p in aligned.points if rank in p.ticks()]
                    await tick_repo.insert_many(leg.contract_id, ticks)

                observations = GapObservationRepository(session)
                for snapshot in snapshots:
                    await observations.upsert(_observation_dto(snapshot))
        except Exception as e:
            logger.error("Failed to store gaps for %s: %s", instrument.instrument_name, e)
            result.failures.append(
                InstrumentFailure(
                    instrument_id=instrument.instrument_id,
                    instrument_name=instrument.instrument_name,
                    stage="persist",
                    message=str(e),
                )
            )
            return

        result.instruments_processed += 1
        result.observations_stored += len(snapshots)

        if suppress_alerts:
            return
        for snapshot in snapshots:
            alerts = await alert_engine.evaluate(snapshot, instrument_name=instrument.instrument_name)
            result.alerts_fired += len(alerts)

    async def _on_auth_failure(self, error: VendorAuthError) -> None:
        logger.error("Tick vendor authentication failed after %d attempts: %s", error.attempts, error)
        self._stats.errors += 1
        self._stats.last_error = str(error)
        if self._auth_failure_notified or self._notifier is None:
            return
        self._auth_failure_notified = True
        cause = error.last_exception or error
        await self._notifier.notify_operators(
            "Tick vendor login failing",
            f"Login failed {error.attempts} times in a row; gap evaluation is paused "
            f"until it recovers.\nLast error: {cause}",
        )

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    def _start_background_services(self) -> None:
        """Start background loops."""
        settings = self._settings
        logger.debug("Starting evaluation loop...")
        self._cycle_task = asyncio.create_task(self._run_cycle_loop())
        logger.debug("Starting baseline refresh loop...")
        self._baseline_task = asyncio.create_task(
            self._run_periodic("baseline refresh", settings.baseline.refresh_interval_seconds, self.refresh_baselines)
        )
        logger.debug("Starting retention loop...")
        self._retention_task = asyncio.create_task(
            self._run_periodic("retention", settings.retention.sweep_interval_seconds, self.purge_history)
        )

    async def _wait_or_stop(self, timeout: float) -> bool:
        """Sleep for ``timeout`` seconds; True if stop was requested meanwhile."""
        if not self._stop_event:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except TimeoutError:
            return False

    async def _run_cycle_loop(self) -> None:
        if not self._stop_event:
            return
        interval = self._settings.schedule.interval_seconds
        while not self._stop_event.is_set():
            try:
                await self._run_scheduled_cycle()
            except asyncio.CancelledError:
                break
            if await self._wait_or_stop(interval):
                break

    async def _run_scheduled_cycle(self) -> None:
        """Run one loop iteration; operators hear about the first crash of each failure streak."""
        if not self.is_trading_time():
            logger.debug("Outside trading hours; skipping cycle")
            return
        try:
            await self.evaluate_cycle()
        except Exception as e:
            self._stats.cycles_failed += 1
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.exception("Evaluation cycle failed")
            if not self._cycle_failure_notified and self._notifier is not None:
                self._cycle_failure_notified = True
                await self._notifier.notify_operators(
                    "Gap evaluation cycle failed",
                    f"{type(e).__name__}: {e}",
                )
            return
        self._cycle_failure_notified = False
        self._stats.cycles_run += 1
        self._stats.last_cycle_at = datetime.now(UTC)

    async def _run_periodic(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]) -> None:
        if not self._stop_event:
            return
        while not self._stop_event.is_set():
            if await self._wait_or_stop(interval):
                break
            try:
                await func()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.warning("%s loop error: %s", name.capitalize(), e)

    async def _stop_background_services(self) -> None:
        """Stop background loops."""
        for attr in ("_cycle_task", "_baseline_task", "_retention_task"):
            task: asyncio.Task[None] | None = getattr(self, attr)
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                setattr(self, attr, None)

        if self._alert_engine:
            await self._alert_engine.drain()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._http:
            await self._http.aclose()
            self._http = None

        if self._db_manager and self._owns_db:
            await self._db_manager.dispose_async()

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def close(self) -> None:
        """Release resources after one-shot operations (no background loops)."""
        if self._alert_engine:
            await self._alert_engine.drain()
        await self._cleanup()

    async def run(self) -> None:
        """Start the pipeline and run until interrupted.

        Example:
            ```python
            pipeline = GapMonitorPipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> GapMonitorPipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()


def _observation_dto(snapshot: GapSnapshot) -> GapObservationDTO:
    return GapObservationDTO(
        instrument_id=snapshot.instrument_id,
        trade_date=snapshot.trade_date,
        time_slot=snapshot.time_slot,
        gap_1=snapshot.gap_1,
        gap_2=snapshot.gap_2,
        price_1=snapshot.price_1,
        price_2=snapshot.price_2,
        price_3=snapshot.price_3,
    )
