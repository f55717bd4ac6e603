"""Leg alignment: pairing ticks of independently printing contracts.

The near leg is the anchor series; for each anchor tick the closest next
and far ticks are found by binary search and kept only when they printed
within the alignment tolerance. A point is accepted when it can produce
at least one of the two calendar gaps.
"""

from __future__ import annotations

import asyncio
import logging
import random
from bisect import bisect_left
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from futures_gap_monitor.ingestor.models import InstrumentLegs, Leg, LegRank, Tick
from futures_gap_monitor.ingestor.tick_client import VendorAuthError

logger = logging.getLogger(__name__)

DEFAULT_MIN_VOLUME = 10
DEFAULT_TOLERANCE = timedelta(seconds=15)
DEFAULT_SAMPLE_SIZE = 30


class AlignmentMode(str, Enum):
    """How much of each leg's series takes part in alignment."""

    LIVE = "live"
    BACKFILL = "backfill"


class TickSource(Protocol):
    async def fetch_ticks(self, symbol: str, start: datetime, end: datetime) -> list[Tick]: ...


@dataclass(frozen=True)
class AlignedPoint:
    """Ticks of up to three legs that printed close enough to be compared."""

    near: Tick | None = None
    next: Tick | None = None
    far: Tick | None = None

    @property
    def has_gap_1(self) -> bool:
        return self.near is not None and self.next is not None

    @property
    def has_gap_2(self) -> bool:
        return self.next is not None and self.far is not None

    @property
    def anchor_time(self) -> datetime:
        anchor = self.near or self.next or self.far
        if anchor is None:
            raise RuntimeError("Aligned point holds no ticks")
        return anchor.timestamp

    def ticks(self) -> dict[LegRank, Tick]:
        pairs = ((LegRank.NEAR, self.near), (LegRank.NEXT, self.next), (LegRank.FAR, self.far))
        return {rank: tick for rank, tick in pairs if tick is not None}


@dataclass
class AlignmentResult:
    """Accepted points for one instrument and the legs whose fetch failed."""

    points: list[AlignedPoint] = field(default_factory=list)
    failed_legs: list[LegRank] = field(default_factory=list)
    candidates: int = 0


def find_closest(series: Sequence[Tick], target: datetime) -> Tick | None:
    """Return the tick of a timestamp-ordered ``series`` closest to ``target``.

    Ties go to the earlier tick.
    """
    if not series:
        return None
    idx = bisect_left(series, target, key=lambda t: t.timestamp)
    if idx == 0:
        return series[0]
    if idx == len(series):
        return series[-1]
    before, after = series[idx - 1], series[idx]
    if after.timestamp - target < target - before.timestamp:
        return after
    return before


def _within(a: Tick, b: Tick, tolerance: timedelta) -> bool:
    return abs(a.timestamp - b.timestamp) <= tolerance


def _match(series: Sequence[Tick], anchor: Tick, tolerance: timedelta) -> Tick | None:
    candidate = find_closest(series, anchor.timestamp)
    if candidate is not None and _within(candidate, anchor, tolerance):
        return candidate
    return None


def align_legs(
    near: Sequence[Tick],
    next_: Sequence[Tick],
    far: Sequence[Tick],
    *,
    min_volume: int = DEFAULT_MIN_VOLUME,
    tolerance: timedelta = DEFAULT_TOLERANCE,
) -> list[AlignedPoint]:
    """Pair ticks across the three legs.

    Ticks below ``min_volume`` never take part. When the near series is
    empty the next series anchors, so gap_2 is still derivable.

    Args:
        near: Near-leg ticks ordered by timestamp.
        next_: Next-leg ticks ordered by timestamp.
        far: Far-leg ticks ordered by timestamp.
        min_volume: Minimum volume for a tick to be considered.
        tolerance: Maximum timestamp distance to the anchor (inclusive).

    Returns:
        Accepted points in anchor order.
    """
    near_ok = [t for t in near if t.volume >= min_volume]
    next_ok = [t for t in next_ if t.volume >= min_volume]
    far_ok = [t for t in far if t.volume >= min_volume]

    anchored_on_near = bool(near_ok)
    anchors = near_ok if anchored_on_near else next_ok

    points: list[AlignedPoint] = []
    for anchor in anchors:
        if anchored_on_near:
            near_tick: Tick | None = anchor
            next_tick = _match(next_ok, anchor, tolerance)
        else:
            near_tick = None
            next_tick = anchor
        far_tick = _match(far_ok, anchor, tolerance)

        # gap_2 needs next and far close to each other, not only to the anchor.
        if far_tick is not None and (next_tick is None or not _within(next_tick, far_tick, tolerance)):
            far_tick = None

        point = AlignedPoint(near=near_tick, next=next_tick, far=far_tick)
        if point.has_gap_1 or point.has_gap_2:
            points.append(point)
    return points


def latest_eligible(series: Sequence[Tick], min_volume: int) -> list[Tick]:
    """The most recent tick with enough volume, as a one-element series."""
    for tick in reversed(series):
        if tick.volume >= min_volume:
            return [tick]
    return []


def sample_points(
    points: list[AlignedPoint],
    cap: int,
    rng: random.Random | None = None,
) -> list[AlignedPoint]:
    """Uniform sample of at most ``cap`` points without replacement, in time order."""
    if len(points) <= cap:
        return points
    chosen = (rng or random).sample(points, cap)
    return sorted(chosen, key=lambda p: p.anchor_time)


class LegAlignmentEngine:
    """Fetches each leg's series and aligns them for one instrument.

    Live and backfill runs share this engine through :class:`AlignmentMode`:
    live reduces each leg to its latest eligible tick, backfill aligns the
    full series and samples the accepted points down to ``sample_size``.

    Example:
        >>> engine = LegAlignmentEngine(tick_client)
        >>> result = await engine.align(legs, start, end, AlignmentMode.LIVE)
        >>> for point in result.points:
        ...     snapshot = compute_gaps(point, legs.instrument_id, tz)

    Args:
        tick_source: Anything with ``fetch_ticks(symbol, start, end)``.
        min_volume: Minimum tick volume considered.
        tolerance: Maximum timestamp distance between aligned ticks.
        sample_size: Cap on accepted points per instrument-day in backfill.
        rng: Random source for sampling (seedable for tests).
    """

    def __init__(
        self,
        tick_source: TickSource,
        *,
        min_volume: int = DEFAULT_MIN_VOLUME,
        tolerance: timedelta = DEFAULT_TOLERANCE,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        rng: random.Random | None = None,
    ) -> None:
        self._tick_source = tick_source
        self._min_volume = min_volume
        self._tolerance = tolerance
        self._sample_size = sample_size
        self._rng = rng or random.Random()

    async def _fetch_leg(self, leg: Leg | None, start: datetime, end: datetime) -> list[Tick]:
        if leg is None:
            return []
        return await self._tick_source.fetch_ticks(leg.symbol, start, end)

    async def fetch_series(
        self,
        instrument: InstrumentLegs,
        start: datetime,
        end: datetime,
    ) -> tuple[dict[LegRank, list[Tick]], list[LegRank]]:
        """Fetch every present leg concurrently.

        A failed fetch is logged and that leg is treated as absent.

        Raises:
            VendorAuthError: Login is failing; every further fetch would too.
        """
        ranks = (LegRank.NEAR, LegRank.NEXT, LegRank.FAR)
        results = await asyncio.gather(
            *(self._fetch_leg(instrument.get(rank), start, end) for rank in ranks),
            return_exceptions=True,
        )

        series: dict[LegRank, list[Tick]] = {}
        failed: list[LegRank] = []
        for rank, result in zip(ranks, results, strict=True):
            if isinstance(result, VendorAuthError):
                raise result
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                leg = instrument.get(rank)
                logger.warning(
                    "Failed to fetch %s leg %s of %s: %s",
                    rank.value,
                    leg.symbol if leg else "?",
                    instrument.instrument_name,
                    result,
                )
                failed.append(rank)
                series[rank] = []
            else:
                series[rank] = result
        return series, failed

    async def align(
        self,
        instrument: InstrumentLegs,
        start: datetime,
        end: datetime,
        mode: AlignmentMode = AlignmentMode.LIVE,
    ) -> AlignmentResult:
        """Fetch and align the legs of ``instrument`` over ``[start, end]``."""
        series, failed = await self.fetch_series(instrument, start, end)

        if mode is AlignmentMode.LIVE:
            series = {rank: latest_eligible(ticks, self._min_volume) for rank, ticks in series.items()}

        points = align_legs(
            series[LegRank.NEAR],
            series[LegRank.NEXT],
            series[LegRank.FAR],
            min_volume=self._min_volume,
            tolerance=self._tolerance,
        )
        candidates = len(points)
        if mode is AlignmentMode.BACKFILL:
            points = sample_points(points, self._sample_size, self._rng)

        logger.debug(
            "Aligned %s (%s): %d candidate points, %d kept",
            instrument.instrument_name,
            mode.value,
            candidates,
            len(points),
        )
        return AlignmentResult(points=points, failed_legs=failed, candidates=candidates)
