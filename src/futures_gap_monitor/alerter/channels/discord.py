"""Discord webhook channel."""

from __future__ import annotations

import asyncio
import logging

import httpx

from futures_gap_monitor.alerter.models import FormattedAlert

logger = logging.getLogger(__name__)

DISCORD_TIMEOUT = 10.0


class DiscordChannel:
    """Posts embeds to a Discord webhook.

    A webhook has a single destination, so sends addressed to a specific
    recipient are skipped and reported as delivered.
    """

    name = "discord"

    def __init__(self, webhook_url: str, *, username: str = "Futures Gap Monitor") -> None:
        self._webhook_url = webhook_url
        self._username = username

    async def send(self, alert: FormattedAlert, recipient: str | None = None) -> bool:
        if recipient is not None:
            return True
        payload = {"username": self._username, "embeds": [alert.discord_embed]}
        try:
            async with httpx.AsyncClient(timeout=DISCORD_TIMEOUT) as client:
                response = await client.post(self._webhook_url, json=payload)
                if response.status_code == 429:
                    retry_after = 1.0
                    try:
                        retry_after = float(response.json().get("retry_after", 1.0))
                    except ValueError:
                        pass
                    logger.warning("Discord rate limited, retrying after %.1fs", retry_after)
                    await asyncio.sleep(retry_after)
                    response = await client.post(self._webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.error("Discord webhook failed: %s", e)
            return False

        if response.status_code in (200, 204):
            return True
        logger.warning("Discord webhook returned HTTP %d: %s", response.status_code, response.text[:200])
        return False
