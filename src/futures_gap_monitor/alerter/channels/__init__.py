"""Operator notification channels."""

from futures_gap_monitor.alerter.channels.discord import DiscordChannel
from futures_gap_monitor.alerter.channels.telegram import TelegramChannel

__all__ = ["DiscordChannel", "TelegramChannel"]
