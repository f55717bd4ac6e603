"""Gap deviation detection against trailing baselines.

This module provides the GapAlertEngine that compares each stored gap
observation with its (instrument, time slot) baseline, applies the
instrument's threshold and cooldown, persists fired alerts and hands them
to the real-time sink.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from futures_gap_monitor.alerter.realtime import RealtimeSink
from futures_gap_monitor.detector.alert_config import AlertConfigResolver
from futures_gap_monitor.detector.models import AlertType, GapAlert
from futures_gap_monitor.spread.baseline import BaselineCache, BaselineEntry
from futures_gap_monitor.spread.gaps import GapSnapshot
from futures_gap_monitor.storage.repos import GapAlertDTO, GapAlertRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

DEFAULT_EVENT_NAME = "gap-alert"
_HUNDRED = Decimal(100)
_CENTS = Decimal("0.01")


def deviation_percent(current: Decimal, baseline: Decimal | None) -> Decimal:
    """Absolute percent deviation of ``current`` from ``baseline``.

    A missing or zero baseline yields 0.
    """
    if baseline is None or baseline == 0:
        return Decimal(0)
    return abs(current - baseline) / abs(baseline) * _HUNDRED


def round_percent(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


class CooldownTracker:
    """Last fire time per (instrument, alert type).

    A key that fired at T is suppressed strictly before T + cooldown.
    """

    def __init__(self) -> None:
        self._last_fired: dict[tuple[int, AlertType], datetime] = {}

    def is_suppressed(
        self,
        instrument_id: int,
        alert_type: AlertType,
        now: datetime,
        cooldown_minutes: int,
    ) -> bool:
        last = self._last_fired.get((instrument_id, alert_type))
        if last is None:
            return False
        return now < last + timedelta(minutes=cooldown_minutes)

    def record(self, instrument_id: int, alert_type: AlertType, fired_at: datetime) -> None:
        self._last_fired[(instrument_id, alert_type)] = fired_at

    def last_fired(self, instrument_id: int, alert_type: AlertType) -> datetime | None:
        return self._last_fired.get((instrument_id, alert_type))

    def clear(self) -> None:
        self._last_fired.clear()


@dataclass
class DeviationStats:
    """Counters across evaluations."""

    evaluated: int = 0
    no_baseline: int = 0
    below_threshold: int = 0
    suppressed: int = 0
    fired: int = 0
    persist_failures: int = 0
    emit_failures: int = 0


class GapAlertEngine:
    """Raises deduplicated alerts when a gap strays from its baseline.

    For each non-null gap of an observation the percent deviation from the
    slot baseline is compared with the instrument's threshold. A qualifying
    deviation fires unless the same (instrument, gap) fired within the
    cooldown. Fired alerts are stored first and then published without
    waiting on the sink; a failing sink is logged and never undoes the
    stored alert.

    Example:
        ```python
        engine = GapAlertEngine(db.get_async_session, baselines, resolver, sink)

        alerts = await engine.evaluate(snapshot, instrument_name="NIFTY")
        for alert in alerts:
            print(alert.alert_type, alert.deviation_percent)
        ```

    Args:
        session_scope: Factory returning an async session context manager.
        baselines: Baseline cache read for each observation.
        config: Threshold/cooldown resolver.
        sink: Real-time sink; None disables publishing.
        cooldowns: Cooldown state (a fresh tracker if omitted).
        clock: Returns the current time (UTC-aware).
        event_name: Event name used when publishing.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        baselines: BaselineCache,
        config: AlertConfigResolver,
        sink: RealtimeSink | None = None,
        *,
        cooldowns: CooldownTracker | None = None,
        clock: Callable[[], datetime] | None = None,
        event_name: str = DEFAULT_EVENT_NAME,
    ) -> None:
        self._session_scope = session_scope
        self._baselines = baselines
        self._config = config
        self._sink = sink
        self._cooldowns = cooldowns or CooldownTracker()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._event_name = event_name
        self._pending: set[asyncio.Task[None]] = set()
        self.stats = DeviationStats()

    @property
    def cooldowns(self) -> CooldownTracker:
        return self._cooldowns

    @property
    def pending_emissions(self) -> int:
        return len(self._pending)

    async def evaluate(self, snapshot: GapSnapshot, *, instrument_name: str) -> list[GapAlert]:
        """Check both gaps of a stored observation and fire alerts.

        Returns:
            Alerts that were persisted during this call.
        """
        self.stats.evaluated += 1
        baseline = self._baselines.get_baseline(snapshot.instrument_id, snapshot.time_slot)
        if baseline is None:
            self.stats.no_baseline += 1
            return []

        thresholds = await self._config.resolve(snapshot.instrument_id)
        fired: list[GapAlert] = []
        for alert_type, current, baseline_value in (
            (AlertType.GAP_1, snapshot.gap_1, baseline.baseline_gap_1),
            (AlertType.GAP_2, snapshot.gap_2, baseline.baseline_gap_2),
        ):
            if current is None or baseline_value is None:
                continue

            deviation = deviation_percent(current, baseline_value)
            if deviation < thresholds.percent_threshold:
                self.stats.below_threshold += 1
                continue

            now = self._clock()
            if self._cooldowns.is_suppressed(
                snapshot.instrument_id, alert_type, now, thresholds.cooldown_minutes
            ):
                self.stats.suppressed += 1
                logger.debug(
                    "Suppressed %s alert for %s (cooldown %d min)",
                    alert_type.value,
                    instrument_name,
                    thresholds.cooldown_minutes,
                )
                continue

            alert = await self._fire(
                snapshot,
                instrument_name=instrument_name,
                alert_type=alert_type,
                current=current,
                baseline=baseline,
                baseline_value=baseline_value,
                deviation=deviation,
                now=now,
            )
            if alert is not None:
                fired.append(alert)
        return fired

    async def _fire(
        self,
        snapshot: GapSnapshot,
        *,
        instrument_name: str,
        alert_type: AlertType,
        current: Decimal,
        baseline: BaselineEntry,
        baseline_value: Decimal,
        deviation: Decimal,
        now: datetime,
    ) -> GapAlert | None:
        dto = GapAlertDTO(
            instrument_id=snapshot.instrument_id,
            instrument_name=instrument_name,
            time_slot=snapshot.time_slot,
            alert_type=alert_type.value,
            current_value=current,
            baseline_value=baseline_value,
            deviation_percent=round_percent(deviation),
            baseline_date=baseline.baseline_date,
            triggered_at=now,
        )
        try:
            async with self._session_scope() as session:
                await GapAlertRepository(session).insert(dto)
        except Exception as e:
            self.stats.persist_failures += 1
            logger.error(
                "Failed to store %s alert for %s at %s: %s",
                alert_type.value,
                instrument_name,
                snapshot.time_slot,
                e,
            )
            return None

        self._cooldowns.record(snapshot.instrument_id, alert_type, now)
        self.stats.fired += 1

        alert = GapAlert(
            instrument_id=dto.instrument_id,
            instrument_name=dto.instrument_name,
            time_slot=dto.time_slot,
            alert_type=alert_type,
            current_value=dto.current_value,
            baseline_value=dto.baseline_value,
            deviation_percent=dto.deviation_percent,
            triggered_at=dto.triggered_at,
            baseline_date=dto.baseline_date,
            alert_id=dto.id,
        )
        logger.info(
            "Gap alert: %s %s at %s current=%s baseline=%s deviation=%s%%",
            instrument_name,
            alert_type.value,
            snapshot.time_slot,
            current,
            baseline_value,
            alert.deviation_percent,
        )
        self._schedule_emit(alert)
        return alert

    def _schedule_emit(self, alert: GapAlert) -> None:
        if self._sink is None:
            return
        task = asyncio.create_task(self._emit(self._sink, alert))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _emit(self, sink: RealtimeSink, alert: GapAlert) -> None:
        try:
            await sink.publish(self._event_name, alert.to_payload())
        except Exception as e:
            self.stats.emit_failures += 1
            logger.warning(
                "Failed to publish %s alert for %s: %s",
                alert.alert_type.value,
                alert.instrument_name,
                e,
            )

    async def drain(self) -> None:
        """Wait for in-flight publications (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
