"""Data models for the detector module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class AlertType(str, Enum):
    """Which calendar gap deviated."""

    GAP_1 = "gap_1"
    GAP_2 = "gap_2"


@dataclass(frozen=True)
class AlertThresholds:
    """Effective threshold and cooldown for one instrument."""

    percent_threshold: Decimal
    cooldown_minutes: int
    source: str = "default"


@dataclass(frozen=True)
class GapAlert:
    """A gap deviation that passed threshold and cooldown checks."""

    instrument_id: int
    instrument_name: str
    time_slot: str
    alert_type: AlertType
    current_value: Decimal
    baseline_value: Decimal
    deviation_percent: Decimal
    triggered_at: datetime
    baseline_date: date | None = None
    alert_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe payload for the real-time channel."""
        return {
            "alertId": self.alert_id,
            "instrumentId": self.instrument_id,
            "instrumentName": self.instrument_name,
            "timeSlot": self.time_slot,
            "alertType": self.alert_type.value,
            "currentValue": float(self.current_value),
            "baselineValue": float(self.baseline_value),
            "deviationPercent": float(self.deviation_percent),
            "baselineDate": self.baseline_date.isoformat() if self.baseline_date else None,
            "triggeredAt": self.triggered_at.isoformat(),
        }
