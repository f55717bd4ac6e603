"""Operator notification formatter for multi-channel delivery.

This module renders systemic failures (vendor login outage, crashed
cycles) into Discord embeds, Telegram HTML and plain text.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from futures_gap_monitor.alerter.models import FormattedAlert

# Discord embed colors (decimal values)
COLOR_CRITICAL = 15158332  # Red (#E74C3C)
COLOR_WARNING = 15105570  # Orange (#E67E22)

DISCORD_DESCRIPTION_LIMIT = 4000
FOOTER = "Futures Gap Monitor"

Severity = Literal["critical", "warning"]


def escape_html(text: str) -> str:
    """Escape HTML special characters for Telegram."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class AlertFormatter:
    """Formats operator notifications for each channel."""

    def format(
        self,
        subject: str,
        body: str,
        *,
        severity: Severity = "critical",
        at: datetime | None = None,
    ) -> FormattedAlert:
        at = at or datetime.now(UTC)
        icon = "🚨" if severity == "critical" else "⚠️"
        title = f"{icon} {subject}"

        discord_embed = {
            "title": title[:256],
            "description": body[:DISCORD_DESCRIPTION_LIMIT],
            "color": COLOR_CRITICAL if severity == "critical" else COLOR_WARNING,
            "timestamp": at.isoformat(),
            "footer": {"text": FOOTER},
        }
        telegram_text = f"<b>{escape_html(title)}</b>\n\n{escape_html(body)}"
        plain_text = "\n".join([subject.upper(), "=" * 30, "", body, "", f"at {at.isoformat()}"])

        return FormattedAlert(
            title=title,
            body=body,
            discord_embed=discord_embed,
            telegram_text=telegram_text,
            plain_text=plain_text,
        )
