"""EVM JSON-RPC reads needed by the holder sync.

Two lookups are served: a wallet's native balance and an ERC20 token's
``decimals()``. Calls are paced by a token bucket and retried with
exponential backoff. They fail over from the primary endpoint to an
optional fallback. A primary that failed is skipped until
its cool-down passes. Results are cached in Redis when a client is given.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from aiohttp import ClientError
from redis.asyncio import Redis
from redis.exceptions import RedisError
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_TOKEN_DECIMALS = 18
PRIMARY_COOLDOWN_SECONDS = 60.0

# web3's HTTP provider raises raw aiohttp and socket errors for connection failures.
RETRYABLE_RPC_ERRORS = (Web3Exception, ClientError, TimeoutError, OSError)

# decimals() is immutable; keep it for a day.
TOKEN_METADATA_CACHE_TTL_SECONDS = 86_400

WEI_PER_ETHER = Decimal(10) ** 18

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when every endpoint and retry failed."""


class TokenBucket:
    """Refilling token bucket allowing bursts of up to ``rate`` calls."""

    def __init__(self, rate: float) -> None:
        self.rate = rate
        self.capacity = rate
        self.tokens = rate
        self._refilled_at = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self._refilled_at) * self.rate)
        self._refilled_at = now

    async def acquire(self, cost: float = 1.0) -> None:
        self._refill()
        while self.tokens < cost:
            await asyncio.sleep((cost - self.tokens) / self.rate)
            self._refill()
        self.tokens -= cost


@dataclass
class _Endpoint:
    label: str
    w3: AsyncWeb3
    healthy: bool = True
    failed_at: float = 0.0

    def available(self, now: float) -> bool:
        return self.healthy or now - self.failed_at > PRIMARY_COOLDOWN_SECONDS


class EvmChainClient:
    """Rate-limited, cached EVM reads for one chain.

    Example:
        ```python
        client = EvmChainClient(
            "https://eth.llamarpc.com",
            chain="ethereum",
            fallback_rpc_url="https://ethereum-rpc.publicnode.com",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        eth = await client.get_native_balance("0x...")
        decimals = await client.get_token_decimals("0x...")
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        chain: str = "ethereum",
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            chain: Chain name; namespaces cache keys.
            fallback_rpc_url: Endpoint used once the primary keeps failing.
            redis: Optional Redis client for caching.
            cache_ttl_seconds: TTL for balance entries.
            max_requests_per_second: Token-bucket rate.
            max_retries: Attempts per endpoint.
            retry_delay_seconds: First backoff delay, doubled per attempt.
        """
        self.chain = chain.lower()
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds
        self._bucket = TokenBucket(max_requests_per_second)

        self._endpoints = [_Endpoint("primary", self._connect(rpc_url))]
        if fallback_rpc_url:
            self._endpoints.append(_Endpoint("fallback", self._connect(fallback_rpc_url)))

    @staticmethod
    def _connect(rpc_url: str) -> AsyncWeb3:
        w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        # L2s and sidechains carry extra header data.
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return w3

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _key(self, kind: str, address: str) -> str:
        return f"evm:{self.chain}:{kind}:{address.lower()}"

    async def _cache_get(self, key: str) -> str | None:
        if self._redis is None:
            return None
        try:
            value = await self._redis.get(key)
        except (RedisError, OSError) as e:
            logger.warning("Redis read failed for %s: %s", key, e)
            return None
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else str(value)

    async def _cache_set(self, key: str, value: str, ttl: int | None = None) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except (RedisError, OSError) as e:
            logger.warning("Redis write failed for %s: %s", key, e)

    # ------------------------------------------------------------------
    # RPC with failover
    # ------------------------------------------------------------------

    def _current_w3(self) -> AsyncWeb3:
        now = time.monotonic()
        for endpoint in self._endpoints:
            if endpoint.available(now):
                return endpoint.w3
        return self._endpoints[-1].w3

    async def _execute_with_retry(self, method_name: str, *args: Any) -> Any:
        """Call ``w3.eth.<method_name>`` across endpoints with backoff.

        Raises:
            RPCError: If every attempt on every endpoint failed.
        """
        await self._bucket.acquire()
        last_error: Exception | None = None
        now = time.monotonic()
        candidates = [e for e in self._endpoints if e.available(now)] or self._endpoints[-1:]

        for endpoint in candidates:
            delay = self._retry_delay
            for attempt in range(1, self._max_retries + 1):
                try:
                    result = await getattr(endpoint.w3.eth, method_name)(*args)
                except RETRYABLE_RPC_ERRORS as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        endpoint.label,
                        method_name,
                        attempt,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries:
                        await asyncio.sleep(delay)
                        delay *= 2
                    continue
                endpoint.healthy = True
                return result
            endpoint.healthy = False
            endpoint.failed_at = time.monotonic()

        raise RPCError(f"{method_name} failed on every endpoint: {last_error}")

    async def _call_erc20(self, token_address: str, function_name: str) -> int:
        await self._bucket.acquire()
        contract = self._current_w3().eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address),
            abi=ERC20_ABI,
        )
        try:
            value = await getattr(contract.functions, function_name)().call()
        except RETRYABLE_RPC_ERRORS as e:
            raise RPCError(f"{function_name}() reverted or failed for {token_address}: {e}") from e
        return int(value)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_balance_latest(self, address: str) -> Decimal:
        """Native balance in wei at the latest block."""
        key = self._key("balance", address)
        cached = await self._cache_get(key)
        if cached is not None:
            return Decimal(cached)

        wei = await self._execute_with_retry("get_balance", AsyncWeb3.to_checksum_address(address))
        await self._cache_set(key, str(wei))
        return Decimal(wei)

    async def get_native_balance(self, address: str) -> Decimal:
        """Native balance in whole ether."""
        return await self.get_balance_latest(address) / WEI_PER_ETHER

    async def get_token_decimals(self, token_address: str) -> int:
        """ERC20 ``decimals()``, or 18 when the token does not answer."""
        key = self._key("decimals", token_address)
        cached = await self._cache_get(key)
        if cached is not None:
            return int(cached)

        try:
            decimals = await self._call_erc20(token_address, "decimals")
        except (RPCError, ValueError) as e:
            logger.warning("decimals() unavailable for %s, assuming %d: %s", token_address, DEFAULT_TOKEN_DECIMALS, e)
            return DEFAULT_TOKEN_DECIMALS

        await self._cache_set(key, str(decimals), ttl=TOKEN_METADATA_CACHE_TTL_SECONDS)
        return decimals

    async def health_check(self) -> bool:
        try:
            await self._execute_with_retry("get_block_number")
        except RPCError:
            return False
        return True

    async def aclose(self) -> None:
        """Close the underlying HTTP sessions."""
        for endpoint in self._endpoints:
            disconnect = getattr(endpoint.w3.provider, "disconnect", None)
            if disconnect is None:
                continue
            try:
                await disconnect()
            except (OSError, RuntimeError, Web3Exception) as e:
                logger.warning("Failed to close %s RPC session: %s", endpoint.label, e)
