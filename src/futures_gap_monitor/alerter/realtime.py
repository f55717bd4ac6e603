"""Real-time publication of fired alerts.

Subscribers (dashboards, push gateways) listen on a Redis pub/sub channel
per event name and receive JSON payloads.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "futures_gap:events:"


class RealtimeSink(Protocol):
    """Fire-and-forget publisher of named events."""

    async def publish(self, event_name: str, payload: dict[str, Any]) -> None: ...


class RedisRealtimeSink:
    """Publishes events on ``futures_gap:events:<event_name>``."""

    def __init__(self, redis: Redis, *, channel_prefix: str = CHANNEL_PREFIX) -> None:
        self._redis = redis
        self._channel_prefix = channel_prefix

    def channel_for(self, event_name: str) -> str:
        return f"{self._channel_prefix}{event_name}"

    async def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        message = json.dumps(payload, separators=(",", ":"), default=str)
        receivers = await self._redis.publish(self.channel_for(event_name), message)
        logger.debug("Published %s to %d subscribers", event_name, receivers)


class LoggingSink:
    """Sink used in dry-run mode: logs instead of publishing."""

    async def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        logger.info("[DRY RUN] %s: %s", event_name, payload)
