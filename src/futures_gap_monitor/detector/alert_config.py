"""Resolution of per-instrument alert thresholds."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from decimal import Decimal
from typing import TYPE_CHECKING

from futures_gap_monitor.detector.models import AlertThresholds
from futures_gap_monitor.storage.repos import AlertConfigRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

DEFAULT_PERCENT_THRESHOLD = Decimal("15")
DEFAULT_COOLDOWN_MINUTES = 30


class AlertConfigResolver:
    """Looks up thresholds: instrument row, then global row, then defaults.

    Resolved values are cached per instrument until :meth:`reload`.

    Args:
        session_scope: Factory returning an async session context manager.
        default_percent: Threshold used when no active row applies.
        default_cooldown_minutes: Cooldown used when no active row applies.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        default_percent: Decimal = DEFAULT_PERCENT_THRESHOLD,
        default_cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
    ) -> None:
        self._session_scope = session_scope
        self._default = AlertThresholds(
            percent_threshold=Decimal(str(default_percent)),
            cooldown_minutes=default_cooldown_minutes,
            source="default",
        )
        self._cache: dict[int, AlertThresholds] = {}
        self._lock = asyncio.Lock()

    async def resolve(self, instrument_id: int) -> AlertThresholds:
        cached = self._cache.get(instrument_id)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._cache.get(instrument_id)
            if cached is not None:
                return cached

            async with self._session_scope() as session:
                repo = AlertConfigRepository(session)
                row = await repo.get_active(instrument_id)
                source = "instrument"
                if row is None:
                    row = await repo.get_active(None)
                    source = "global"

            if row is None:
                thresholds = self._default
            else:
                thresholds = AlertThresholds(
                    percent_threshold=Decimal(str(row.percent_threshold)),
                    cooldown_minutes=row.cooldown_minutes,
                    source=source,
                )
            self._cache[instrument_id] = thresholds
            logger.debug(
                "Resolved alert config for instrument %d from %s: %s%% / %d min",
                instrument_id,
                thresholds.source,
                thresholds.percent_threshold,
                thresholds.cooldown_minutes,
            )
            return thresholds

    def reload(self) -> None:
        """Forget cached thresholds; the next lookup reads the store again."""
        self._cache = {}
        logger.info("Alert config cache cleared")
