"""Data models for the ingestor module."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

# Vendor record layout: [timestamp, ltp, volume, oi, bid, bid_qty, ask, ask_qty]
_TS, _LTP, _VOLUME, _OI, _BID, _BID_QTY, _ASK, _ASK_QTY = range(8)


class MalformedTickError(ValueError):
    """Raised when a vendor record cannot be parsed into a Tick."""


def _decimal(value: Any, field_name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise MalformedTickError(f"Invalid {field_name}: {value!r}") from e
    if not result.is_finite():
        raise MalformedTickError(f"Non-finite {field_name}: {value!r}")
    return result


def _optional_decimal(record: Sequence[Any], index: int, field_name: str) -> Decimal | None:
    if len(record) <= index or record[index] in (None, ""):
        return None
    return _decimal(record[index], field_name)


def _optional_int(record: Sequence[Any], index: int, field_name: str) -> int | None:
    if len(record) <= index or record[index] in (None, ""):
        return None
    return int(_decimal(record[index], field_name))


@dataclass(frozen=True)
class Tick:
    """A single traded price print for one contract."""

    timestamp: datetime
    price: Decimal
    volume: int
    oi: int | None = None
    bid: Decimal | None = None
    bid_qty: int | None = None
    ask: Decimal | None = None
    ask_qty: int | None = None

    @classmethod
    def from_record(cls, record: Sequence[Any], tz: tzinfo) -> Tick:
        """Create a Tick from a vendor record.

        Naive timestamps are interpreted in the exchange-local ``tz``.

        Raises:
            MalformedTickError: If the record is too short or a field is invalid.
        """
        if not isinstance(record, (list, tuple)) or len(record) < 3:
            raise MalformedTickError(f"Unexpected record shape: {record!r}")

        raw_ts = record[_TS]
        if not isinstance(raw_ts, str):
            raise MalformedTickError(f"Invalid timestamp: {raw_ts!r}")
        try:
            timestamp = datetime.fromisoformat(raw_ts.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedTickError(f"Invalid timestamp: {raw_ts!r}") from e
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=tz)

        price = _decimal(record[_LTP], "price")
        if price <= 0:
            raise MalformedTickError(f"Non-positive price: {record[_LTP]!r}")
        volume = int(_decimal(record[_VOLUME], "volume"))
        if volume < 0:
            raise MalformedTickError(f"Negative volume: {record[_VOLUME]!r}")

        return cls(
            timestamp=timestamp,
            price=price,
            volume=volume,
            oi=_optional_int(record, _OI, "oi"),
            bid=_optional_decimal(record, _BID, "bid"),
            bid_qty=_optional_int(record, _BID_QTY, "bid_qty"),
            ask=_optional_decimal(record, _ASK, "ask"),
            ask_qty=_optional_int(record, _ASK_QTY, "ask_qty"),
        )


class LegRank(str, Enum):
    """Position of a contract on the expiry curve."""

    NEAR = "near"
    NEXT = "next"
    FAR = "far"


@dataclass(frozen=True)
class Contract:
    """A listed futures contract of an instrument."""

    contract_id: int
    instrument_id: int
    instrument_name: str
    symbol: str
    expiry_date: date


@dataclass(frozen=True)
class Leg:
    """A contract assigned to a rank for one evaluation."""

    contract: Contract
    rank: LegRank

    @property
    def symbol(self) -> str:
        return self.contract.symbol

    @property
    def contract_id(self) -> int:
        return self.contract.contract_id


@dataclass(frozen=True)
class InstrumentLegs:
    """Up to three ranked legs of one instrument."""

    instrument_id: int
    instrument_name: str
    near: Leg | None = None
    next: Leg | None = None
    far: Leg | None = None

    def legs(self) -> tuple[Leg, ...]:
        return tuple(leg for leg in (self.near, self.next, self.far) if leg is not None)

    def get(self, rank: LegRank) -> Leg | None:
        return {LegRank.NEAR: self.near, LegRank.NEXT: self.next, LegRank.FAR: self.far}[rank]


def rank_legs(contracts: Iterable[Contract], as_of: date) -> list[InstrumentLegs]:
    """Assign near/next/far ranks per instrument by ascending expiry.

    Contracts that expired before ``as_of`` are dropped; contracts beyond
    the third expiry are ignored.
    """
    by_instrument: dict[int, list[Contract]] = defaultdict(list)
    for contract in contracts:
        if contract.expiry_date >= as_of:
            by_instrument[contract.instrument_id].append(contract)

    result: list[InstrumentLegs] = []
    for instrument_id in sorted(by_instrument):
        ordered = sorted(by_instrument[instrument_id], key=lambda c: (c.expiry_date, c.contract_id))
        legs = [Leg(contract=c, rank=rank) for c, rank in zip(ordered, LegRank, strict=False)]
        ranked = {leg.rank: leg for leg in legs}
        result.append(
            InstrumentLegs(
                instrument_id=instrument_id,
                instrument_name=ordered[0].instrument_name,
                near=ranked.get(LegRank.NEAR),
                next=ranked.get(LegRank.NEXT),
                far=ranked.get(LegRank.FAR),
            )
        )
    return result
