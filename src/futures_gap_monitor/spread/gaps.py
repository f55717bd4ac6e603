"""Calendar-spread gap computation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from decimal import Decimal

from futures_gap_monitor.spread.alignment import AlignedPoint

TIME_SLOT_FORMAT = "%H:%M"


def time_slot_of(timestamp: datetime, tz: tzinfo) -> str:
    """``HH:MM`` of ``timestamp`` on the exchange-local clock."""
    return to_local(timestamp, tz).strftime(TIME_SLOT_FORMAT)


def to_local(timestamp: datetime, tz: tzinfo) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=tz)
    return timestamp.astimezone(tz)


@dataclass(frozen=True)
class GapSnapshot:
    """Gaps derived from one aligned point.

    ``price_1``/``price_2``/``price_3`` are the near/next/far prices.
    """

    instrument_id: int
    observed_at: datetime
    trade_date: date
    time_slot: str
    gap_1: Decimal | None
    gap_2: Decimal | None
    price_1: Decimal | None
    price_2: Decimal | None
    price_3: Decimal | None

    @property
    def has_gaps(self) -> bool:
        return self.gap_1 is not None or self.gap_2 is not None


def compute_gaps(point: AlignedPoint, instrument_id: int, tz: tzinfo) -> GapSnapshot:
    """Derive gap_1 (next - near) and gap_2 (far - next) from ``point``.

    The observation time is the latest timestamp among the legs present,
    so the slot reflects when the full picture became known.
    """
    near, nxt, far = point.near, point.next, point.far

    gap_1 = nxt.price - near.price if near is not None and nxt is not None else None
    gap_2 = far.price - nxt.price if far is not None and nxt is not None else None

    observed_at = to_local(max(tick.timestamp for tick in point.ticks().values()), tz)
    return GapSnapshot(
        instrument_id=instrument_id,
        observed_at=observed_at,
        trade_date=observed_at.date(),
        time_slot=observed_at.strftime(TIME_SLOT_FORMAT),
        gap_1=gap_1,
        gap_2=gap_2,
        price_1=near.price if near is not None else None,
        price_2=nxt.price if nxt is not None else None,
        price_3=far.price if far is not None else None,
    )
