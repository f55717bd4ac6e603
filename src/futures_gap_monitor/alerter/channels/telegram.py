"""Telegram bot channel."""

from __future__ import annotations

import logging

import httpx

from futures_gap_monitor.alerter.models import FormattedAlert

logger = logging.getLogger(__name__)

TELEGRAM_TIMEOUT = 10.0
TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramChannel:
    """Sends HTML messages through a Telegram bot.

    ``recipient`` selects the chat; the configured chat is used otherwise.
    """

    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str) -> None:
        self._url = TELEGRAM_API_URL.format(token=bot_token)
        self._chat_id = chat_id

    async def send(self, alert: FormattedAlert, recipient: str | None = None) -> bool:
        payload = {
            "chat_id": recipient or self._chat_id,
            "text": alert.telegram_text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            async with httpx.AsyncClient(timeout=TELEGRAM_TIMEOUT) as client:
                response = await client.post(self._url, json=payload)
                response.raise_for_status()
                result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Telegram send failed: %s", e)
            return False

        if result.get("ok"):
            return True
        logger.warning("Telegram API returned error: %s", result.get("description"))
        return False
