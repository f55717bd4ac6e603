"""Data ingestion layer - Rate-limited tick history from the vendor."""

from futures_gap_monitor.ingestor.models import (
    Contract,
    InstrumentLegs,
    Leg,
    LegRank,
    MalformedTickError,
    Tick,
    rank_legs,
)
from futures_gap_monitor.ingestor.rate_limiter import RateLimiterStats, SlidingWindowRateLimiter
from futures_gap_monitor.ingestor.tick_client import (
    RetryError,
    TickHistoryClient,
    TickSourceAuthError,
    TickSourceError,
    TickSourceTransientError,
    VendorAuthenticator,
    VendorAuthError,
)

__all__ = [
    "Contract",
    "InstrumentLegs",
    "Leg",
    "LegRank",
    "MalformedTickError",
    "RateLimiterStats",
    "RetryError",
    "SlidingWindowRateLimiter",
    "Tick",
    "TickHistoryClient",
    "TickSourceAuthError",
    "TickSourceError",
    "TickSourceTransientError",
    "VendorAuthError",
    "VendorAuthenticator",
    "rank_legs",
]
