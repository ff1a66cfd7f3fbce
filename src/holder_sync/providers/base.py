"""Shared contract and HTTP plumbing for external holder-data providers.

Every adapter exposes the same capabilities (holder list, holder count,
unit price) so the sync coordinator can fall back across them in a
configured order. Adapters talk HTTP through ``HttpProvider``, which adds:
- A per-adapter minimum-interval rate limiter
- Retry with exponential backoff on transport errors and 429/5xx
- Uniform ``ProviderUnavailableError`` for every failure
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class HolderBalance:
    """A holder address and its raw (undivided) token balance."""

    address: str
    raw_balance: int


class ProviderError(Exception):
    """Base exception for provider errors."""


class ProviderUnavailableError(ProviderError):
    """Raised when a provider call fails (network, auth, 4xx/5xx, bad payload)."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.status_code = status_code


@runtime_checkable
class HolderDataProvider(Protocol):
    """Capability contract shared by every holder-data adapter."""

    name: str

    async def list_holders(self, token_address: str, chain: str, max_count: int) -> list[HolderBalance]:
        """Holders ordered by descending balance, at most ``max_count``."""
        ...

    async def count_holders(self, token_address: str, chain: str) -> int | None:
        """Total holder count, or ``None`` when the adapter cannot count."""
        ...

    async def price_of(self, token_address: str, chain: str) -> Decimal | None:
        """USD unit price, or ``None`` when unknown."""
        ...

    async def aclose(self) -> None: ...


@runtime_checkable
class TokenPriceSource(Protocol):
    """Anything that can quote a USD unit price for a token."""

    name: str

    async def price_of(self, token_address: str, chain: str) -> Decimal | None: ...


@runtime_checkable
class PortfolioValueProvider(Protocol):
    """Looks up the total USD value held by a wallet."""

    async def portfolio_value_usd(self, address: str, chain: str) -> Decimal: ...


class RateLimiter:
    """Minimum-interval limiter serialising calls to one provider."""

    def __init__(self, max_requests_per_second: float) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class HttpProvider:
    """Base class for adapters backed by a JSON HTTP API."""

    name = "http"

    def __init__(
        self,
        *,
        base_url: str,
        headers: dict[str, str] | None = None,
        max_requests_per_second: float = 10.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the HTTP client.

        Args:
            base_url: API base URL.
            headers: Default headers (auth keys etc.).
            max_requests_per_second: Pace of outgoing calls.
            max_retries: Retries after the first attempt on transient errors.
            retry_base_delay: Base backoff delay in seconds (doubles per retry).
            timeout: Per-request timeout in seconds.
            transport: Optional transport override (tests use ``httpx.MockTransport``).
        """
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Accept": "application/json", **(headers or {})},
            timeout=timeout,
            transport=transport,
        )
        self._rate_limiter = RateLimiter(max_requests_per_second)
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Perform a paced request and decode the JSON body.

        Raises:
            ProviderUnavailableError: On non-retryable status, exhausted
                retries, or an undecodable body.
        """
        last_error: str = "no attempt made"
        last_status: int | None = None

        for attempt in range(self._max_retries + 1):
            await self._rate_limiter.acquire()
            try:
                response = await self._client.request(method, url, params=params, json=json)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
            except httpx.RequestError as e:
                # Undecodable bodies and redirect loops do not improve on retry.
                raise ProviderUnavailableError(self.name, f"{type(e).__name__} on {method}: {e}") from e
            else:
                if response.status_code < 400:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise ProviderUnavailableError(
                            self.name, f"invalid JSON in {method} response: {e}", status_code=response.status_code
                        ) from e
                last_status = response.status_code
                last_error = f"HTTP {response.status_code} on {method}"
                if response.status_code not in RETRY_STATUS_CODES:
                    raise ProviderUnavailableError(self.name, last_error, status_code=last_status)

            if attempt == self._max_retries:
                break
            delay = self._retry_base_delay * (2**attempt)
            logger.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                self.name,
                attempt + 1,
                self._max_retries + 1,
                last_error,
                delay,
            )
            await asyncio.sleep(delay)

        raise ProviderUnavailableError(
            self.name,
            f"all {self._max_retries + 1} attempts failed: {last_error}",
            status_code=last_status,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def sort_holders(holders: list[HolderBalance]) -> list[HolderBalance]:
    """Stable descending sort by raw balance."""
    return sorted(holders, key=lambda h: h.raw_balance, reverse=True)


def to_finite_decimal(value: Any) -> Decimal | None:
    """Parse a JSON number or numeric string; ``None`` for garbage, NaN or infinity."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return None
    return number if number.is_finite() else None
