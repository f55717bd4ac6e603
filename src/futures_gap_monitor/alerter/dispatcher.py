"""Fan-out of operator notifications to the configured channels."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol

from futures_gap_monitor.alerter.formatter import AlertFormatter, Severity
from futures_gap_monitor.alerter.models import DispatchResult, FormattedAlert

logger = logging.getLogger(__name__)


class AlertChannel(Protocol):
    name: str

    async def send(self, alert: FormattedAlert, recipient: str | None = None) -> bool: ...


class AlertDispatcher:
    """Sends one formatted notification to every channel concurrently."""

    def __init__(self, channels: Sequence[AlertChannel]) -> None:
        self._channels = list(channels)

    @property
    def channels(self) -> list[AlertChannel]:
        return list(self._channels)

    async def dispatch(self, alert: FormattedAlert, recipient: str | None = None) -> DispatchResult:
        result = DispatchResult()
        if not self._channels:
            logger.warning("No notification channels configured; dropping %r", alert.title)
            return result

        outcomes = await asyncio.gather(
            *(channel.send(alert, recipient) for channel in self._channels),
            return_exceptions=True,
        )
        for channel, outcome in zip(self._channels, outcomes, strict=True):
            if outcome is True:
                result.success_count += 1
                continue
            if isinstance(outcome, BaseException):
                logger.error("Channel %s raised: %s", channel.name, outcome)
            result.failure_count += 1
            result.failed_channels.append(channel.name)
        return result


class OperatorNotifier:
    """``notify(recipient, subject, body)`` for systemic failures.

    Each notification goes to the default destination of every channel,
    and additionally to each configured recipient.

    Args:
        dispatcher: Channel fan-out.
        formatter: Renders subject/body per channel.
        recipients: Extra recipients (e.g. Telegram chat IDs).
        dry_run: Log instead of sending.
    """

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        *,
        formatter: AlertFormatter | None = None,
        recipients: Sequence[str] = (),
        dry_run: bool = False,
    ) -> None:
        self._dispatcher = dispatcher
        self._formatter = formatter or AlertFormatter()
        self._recipients = tuple(recipients)
        self._dry_run = dry_run

    @property
    def recipients(self) -> tuple[str, ...]:
        return self._recipients

    async def notify(
        self,
        recipient: str | None,
        subject: str,
        body: str,
        *,
        severity: Severity = "critical",
    ) -> DispatchResult:
        alert = self._formatter.format(subject, body, severity=severity)
        if self._dry_run:
            logger.info("[DRY RUN] Would notify %s: %s", recipient or "operators", subject)
            return DispatchResult()

        result = await self._dispatcher.dispatch(alert, recipient)
        if not result.all_succeeded:
            logger.warning(
                "Operator notification partially failed: %d/%d channels succeeded",
                result.success_count,
                result.success_count + result.failure_count,
            )
        return result

    async def notify_operators(self, subject: str, body: str, *, severity: Severity = "critical") -> None:
        """Notify the default destinations and every configured recipient."""
        await self.notify(None, subject, body, severity=severity)
        for recipient in self._recipients:
            await self.notify(recipient, subject, body, severity=severity)
