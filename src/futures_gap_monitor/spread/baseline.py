"""Trailing-window gap baselines per instrument and time slot.

The cache is rebuilt from stored gap observations and replaced in a single
reference assignment, so readers see either the previous map or the new
one and never a partially built one. Reads take no lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING

from futures_gap_monitor.storage.repos import GapObservationRepository

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager["AsyncSession"]]

DEFAULT_MIN_DAYS = 10
DEFAULT_MAX_DAYS = 20


@dataclass(frozen=True)
class BaselineEntry:
    """Mean gaps for one instrument and slot over the trailing window."""

    baseline_gap_1: Decimal | None
    baseline_gap_2: Decimal | None
    baseline_date: date | None
    days: int = 0


_EMPTY: Mapping[int, Mapping[str, BaselineEntry]] = MappingProxyType({})


class BaselineCache:
    """Process-wide baseline map refreshed from the observation store.

    Example:
        >>> cache = BaselineCache(db.get_async_session, min_days=10, max_days=20)
        >>> await cache.refresh()
        >>> entry = cache.get_baseline(instrument_id=1, time_slot="10:15")

    Args:
        session_scope: Factory returning an async session context manager.
        min_days: Lower bound of the configured window pair; informational only.
        max_days: Length of the trailing window in days.
        today: Provider of the exchange-local current date.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        min_days: int = DEFAULT_MIN_DAYS,
        max_days: int = DEFAULT_MAX_DAYS,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._min_days, self._max_days = sorted((min_days, max_days))
        self._today = today or (lambda: datetime.now(UTC).date())
        self._entries: Mapping[int, Mapping[str, BaselineEntry]] = _EMPTY
        self._refresh_lock = asyncio.Lock()
        self._last_refreshed_at: datetime | None = None

    @property
    def window(self) -> tuple[int, int]:
        return self._min_days, self._max_days

    @property
    def last_refreshed_at(self) -> datetime | None:
        return self._last_refreshed_at

    def __len__(self) -> int:
        return sum(len(slots) for slots in self._entries.values())

    def get_baseline(self, instrument_id: int, time_slot: str) -> BaselineEntry | None:
        """Return the baseline for a slot, or None when the window holds no observations for it."""
        slots = self._entries.get(instrument_id)
        if slots is None:
            return None
        return slots.get(time_slot)

    async def refresh(self, today: date | None = None) -> int:
        """Rebuild the map from observations dated ``[today - max_days, today]``.

        Concurrent refreshes are serialized; readers are never blocked.

        Returns:
            Number of (instrument, slot) entries now cached.
        """
        async with self._refresh_lock:
            end = today or self._today()
            start = end - timedelta(days=self._max_days)

            async with self._session_scope() as session:
                rows = await GapObservationRepository(session).compute_baselines(start=start, end=end)

            staged: dict[int, dict[str, BaselineEntry]] = {}
            for row in rows:
                staged.setdefault(row.instrument_id, {})[row.time_slot] = BaselineEntry(
                    baseline_gap_1=row.avg_gap_1,
                    baseline_gap_2=row.avg_gap_2,
                    baseline_date=row.baseline_date,
                    days=row.days,
                )

            self._entries = MappingProxyType(
                {instrument_id: MappingProxyType(slots) for instrument_id, slots in staged.items()}
            )
            self._last_refreshed_at = datetime.now(UTC)
            count = len(rows)

        logger.info(
            "Loaded %d gap baselines for %d instruments (%s..%s)",
            count,
            len(staged),
            start.isoformat(),
            end.isoformat(),
        )
        return count

    def clear(self) -> None:
        self._entries = _EMPTY
