"""Tests for ingestor data models."""

from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from futures_gap_monitor.ingestor.models import (
    Contract,
    LegRank,
    MalformedTickError,
    Tick,
    rank_legs,
)

IST = ZoneInfo("Asia/Kolkata")


class TestTickFromRecord:
    """Tests for Tick.from_record."""

    def test_full_record(self) -> None:
        tick = Tick.from_record(
            ["2024-01-15T09:15:00", 21500.5, 150, 1200, 21500.0, 50, 21501.0, 75],
            IST,
        )

        assert tick.timestamp == datetime(2024, 1, 15, 9, 15, tzinfo=IST)
        assert tick.price == Decimal("21500.5")
        assert tick.volume == 150
        assert tick.oi == 1200
        assert tick.bid == Decimal("21500.0")
        assert tick.ask_qty == 75

    def test_short_record_leaves_optional_fields_empty(self) -> None:
        tick = Tick.from_record(["2024-01-15T09:15:00", "100", "10"], IST)

        assert tick.oi is None
        assert tick.bid is None
        assert tick.ask is None

    def test_aware_timestamp_kept(self) -> None:
        tick = Tick.from_record(["2024-01-15T03:45:00Z", 100, 10], IST)
        assert tick.timestamp.utcoffset().total_seconds() == 0

    @pytest.mark.parametrize(
        "record",
        [
            ["2024-01-15T09:15:00", 0, 10],
            ["2024-01-15T09:15:00", -5, 10],
            ["2024-01-15T09:15:00", 100, -1],
            ["not-a-time", 100, 10],
            ["2024-01-15T09:15:00", "abc", 10],
            ["2024-01-15T09:15:00", "NaN", 10],
            ["2024-01-15T09:15:00", 100],
            [1705290300, 100, 10],
        ],
    )
    def test_malformed_records_rejected(self, record: list) -> None:
        with pytest.raises(MalformedTickError):
            Tick.from_record(record, IST)


def _contract(contract_id: int, instrument_id: int, expiry: date, name: str = "NIFTY") -> Contract:
    return Contract(
        contract_id=contract_id,
        instrument_id=instrument_id,
        instrument_name=name,
        symbol=f"{name}{expiry:%y%b}FUT".upper(),
        expiry_date=expiry,
    )


class TestRankLegs:
    """Tests for rank_legs."""

    def test_ranks_by_expiry(self) -> None:
        contracts = [
            _contract(3, 1, date(2024, 3, 28)),
            _contract(1, 1, date(2024, 1, 25)),
            _contract(2, 1, date(2024, 2, 29)),
        ]

        [legs] = rank_legs(contracts, date(2024, 1, 15))

        assert legs.near is not None and legs.near.contract_id == 1
        assert legs.next is not None and legs.next.contract_id == 2
        assert legs.far is not None and legs.far.contract_id == 3
        assert legs.get(LegRank.FAR) is legs.far

    def test_expired_contracts_dropped(self) -> None:
        contracts = [
            _contract(1, 1, date(2023, 12, 28)),
            _contract(2, 1, date(2024, 1, 25)),
            _contract(3, 1, date(2024, 2, 29)),
        ]

        [legs] = rank_legs(contracts, date(2024, 1, 15))

        assert legs.near is not None and legs.near.contract_id == 2
        assert legs.next is not None and legs.next.contract_id == 3
        assert legs.far is None
        assert len(legs.legs()) == 2

    def test_expiry_day_still_near(self) -> None:
        [legs] = rank_legs([_contract(1, 1, date(2024, 1, 25))], date(2024, 1, 25))
        assert legs.near is not None

    def test_only_three_legs_kept(self) -> None:
        contracts = [_contract(i, 1, date(2024, i, 25)) for i in range(1, 6)]

        [legs] = rank_legs(contracts, date(2024, 1, 1))

        assert [leg.contract_id for leg in legs.legs()] == [1, 2, 3]

    def test_groups_by_instrument(self) -> None:
        contracts = [
            _contract(1, 2, date(2024, 1, 25), "BANKNIFTY"),
            _contract(2, 1, date(2024, 1, 25), "NIFTY"),
        ]

        result = rank_legs(contracts, date(2024, 1, 1))

        assert [legs.instrument_name for legs in result] == ["NIFTY", "BANKNIFTY"]
