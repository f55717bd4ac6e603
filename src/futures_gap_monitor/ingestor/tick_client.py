"""Tick history vendor client with rate limiting, authentication and retry logic."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, tzinfo
from typing import Any, TypeVar

import httpx

from futures_gap_monitor.ingestor.models import MalformedTickError, Tick
from futures_gap_monitor.ingestor.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_AUTH_MAX_ATTEMPTS = 5
DEFAULT_TIMEOUT_SECONDS = 30.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)
VENDOR_TIME_FORMAT = "%y%m%dT%H:%M:%S"


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


class TickSourceError(Exception):
    """Base exception for tick source errors."""


class TickSourceTransientError(TickSourceError):
    """Raised for retryable errors (429/5xx, network issues)."""


class TickSourceAuthError(TickSourceTransientError):
    """Raised when the vendor rejects the access token (401)."""


class VendorAuthError(TickSourceError):
    """Raised when login keeps failing after the configured attempts."""

    def __init__(self, message: str, attempts: int, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    name: str | None = None,
) -> T:
    """Await ``func`` with exponential backoff on ``retry_on`` exceptions.

    Raises:
        RetryError: After ``max_retries + 1`` failed attempts.
    """
    label = name or getattr(func, "__name__", "call")
    last_exception: Exception | None = None

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except retry_on as e:
            last_exception = e
            if attempt == max_retries:
                break

            delay = base_delay * (2**attempt)
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                attempt + 1,
                max_retries + 1,
                str(e),
                delay,
            )
            await sleep(delay)

    raise RetryError(
        f"All {max_retries + 1} attempts failed for {label}",
        last_exception=last_exception,
    )


def format_vendor_time(value: datetime, tz: tzinfo) -> str:
    """Format a datetime the way the history endpoint expects (exchange-local)."""
    if value.tzinfo is not None:
        value = value.astimezone(tz)
    return value.strftime(VENDOR_TIME_FORMAT)


class VendorAuthenticator:
    """Password-grant login with a cached bearer token.

    Login is retried with bounded exponential backoff; once
    ``max_attempts`` consecutive attempts fail a :class:`VendorAuthError`
    is raised so the caller can notify an operator.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        auth_url: str,
        username: str,
        password: str,
        rate_limiter: SlidingWindowRateLimiter,
        max_attempts: int = DEFAULT_AUTH_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._auth_url = auth_url
        self._username = username
        self._password = password
        self._rate_limiter = rate_limiter
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._token: str | None = None
        self._lock = asyncio.Lock()

    @property
    def has_token(self) -> bool:
        return self._token is not None

    def invalidate(self) -> None:
        """Drop the cached token so the next call logs in again."""
        self._token = None

    async def get_token(self) -> str:
        """Return the cached token, logging in if needed."""
        async with self._lock:
            if self._token is None:
                self._token = await self._login()
            return self._token

    async def _login(self) -> str:
        last_exception: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                token = await self._request_token()
                logger.info("Authenticated with tick vendor")
                return token
            except (httpx.HTTPError, TickSourceError, ValueError) as e:
                last_exception = e
                if attempt == self._max_attempts:
                    break
                delay = self._base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Vendor login attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                    attempt,
                    self._max_attempts,
                    str(e),
                    delay,
                )
                await self._sleep(delay)

        raise VendorAuthError(
            f"Vendor login failed after {self._max_attempts} attempts",
            attempts=self._max_attempts,
            last_exception=last_exception,
        )

    async def _request_token(self) -> str:
        await self._rate_limiter.wait_for_slot()
        response = await self._http.post(
            self._auth_url,
            data={
                "username": self._username,
                "password": self._password,
                "grant_type": "password",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        response.raise_for_status()
        payload = response.json()
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise TickSourceError("Token response did not contain access_token")
        return str(token)


class TickHistoryClient:
    """Fetches tick series per contract symbol from the history vendor.

    Every request waits on the shared rate limiter (retries included) and
    carries the authenticator's bearer token. A 401 drops the cached token
    so the retry logs in again. Vendor records are parsed into
    :class:`Tick` at this boundary; malformed records are skipped and
    counted in :attr:`skipped_records`.

    Example:
        >>> client = TickHistoryClient(http, history_url=url, authenticator=auth,
        ...                            rate_limiter=limiter, tz=ZoneInfo("Asia/Kolkata"))
        >>> ticks = await client.fetch_ticks("NIFTY24JANFUT", start, end)
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        history_url: str,
        authenticator: VendorAuthenticator,
        rate_limiter: SlidingWindowRateLimiter,
        tz: tzinfo,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._history_url = history_url.rstrip("/")
        self._authenticator = authenticator
        self._rate_limiter = rate_limiter
        self._tz = tz
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep
        self.skipped_records = 0

    async def fetch_ticks(self, symbol: str, start: datetime, end: datetime) -> list[Tick]:
        """Fetch ticks for ``symbol`` in ``[start, end]`` ordered by timestamp.

        Raises:
            TickSourceError: On a non-retryable vendor error.
            RetryError: When transient errors persist past the retry budget.
            VendorAuthError: When login keeps failing.
        """
        params = {
            "symbol": symbol,
            "bidask": "1",
            "from": format_vendor_time(start, self._tz),
            "to": format_vendor_time(end, self._tz),
            "response": "json",
        }
        payload = await retry_async(
            lambda: self._get_ticks(params),
            max_retries=self._max_retries,
            base_delay=self._retry_base_delay,
            retry_on=(TickSourceTransientError,),
            sleep=self._sleep,
            name=f"fetch_ticks({symbol})",
        )
        return self._parse_records(symbol, payload)

    async def _get_ticks(self, params: dict[str, str]) -> dict[str, Any]:
        token = await self._authenticator.get_token()
        await self._rate_limiter.wait_for_slot()
        try:
            response = await self._http.get(
                f"{self._history_url}/getticks",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as e:
            raise TickSourceTransientError(f"Network error: {e}") from e

        if response.status_code == 401:
            self._authenticator.invalidate()
            raise TickSourceAuthError("Access token rejected")
        if response.status_code in RETRY_STATUS_CODES:
            raise TickSourceTransientError(f"Vendor returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise TickSourceError(f"Vendor returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise TickSourceError("Vendor returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise TickSourceError("Vendor returned an unexpected payload")
        return payload

    def _parse_records(self, symbol: str, payload: dict[str, Any]) -> list[Tick]:
        status = str(payload.get("status", ""))
        records = payload.get("Records")
        if status.lower() != "success":
            if not records:
                logger.debug("No ticks for %s: %s", symbol, payload.get("message", status))
                return []
            raise TickSourceError(f"Vendor status {status!r} for {symbol}")
        if not isinstance(records, list):
            return []

        ticks: list[Tick] = []
        skipped = 0
        for record in records:
            try:
                ticks.append(Tick.from_record(record, self._tz))
            except MalformedTickError as e:
                skipped += 1
                logger.debug("Skipping malformed record for %s: %s", symbol, e)

        if skipped:
            self.skipped_records += skipped
            logger.warning("Skipped %d malformed records for %s", skipped, symbol)

        ticks.sort(key=lambda t: t.timestamp)
        return ticks
