"""Alerting layer - Real-time alert events and operator notifications."""

from futures_gap_monitor.alerter.dispatcher import AlertDispatcher, OperatorNotifier
from futures_gap_monitor.alerter.formatter import AlertFormatter
from futures_gap_monitor.alerter.models import DispatchResult, FormattedAlert
from futures_gap_monitor.alerter.realtime import LoggingSink, RealtimeSink, RedisRealtimeSink

__all__ = [
    "AlertDispatcher",
    "AlertFormatter",
    "DispatchResult",
    "FormattedAlert",
    "LoggingSink",
    "OperatorNotifier",
    "RealtimeSink",
    "RedisRealtimeSink",
]
