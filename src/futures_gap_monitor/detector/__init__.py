"""Deviation detection layer - Gap alerts against historical baselines."""

from futures_gap_monitor.detector.alert_config import AlertConfigResolver
from futures_gap_monitor.detector.gap_deviation import (
    CooldownTracker,
    GapAlertEngine,
    deviation_percent,
)
from futures_gap_monitor.detector.models import AlertThresholds, AlertType, GapAlert

__all__ = [
    "AlertConfigResolver",
    "AlertThresholds",
    "AlertType",
    "CooldownTracker",
    "GapAlert",
    "GapAlertEngine",
    "deviation_percent",
]
