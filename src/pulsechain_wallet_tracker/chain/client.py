"""PulseChain JSON-RPC client with multi-endpoint failover.

This module provides the chain reader used by the live transfer watcher and
the balance scanner:
- A rotating list of HTTP RPC endpoints; a failing call moves on to the next one
- Per-call timeout and a bounded attempt count across endpoints
- Recovery tracking for endpoints that failed earlier
- Rate limiting to respect public provider limits
- Token metadata memoization with optional Redis caching (metadata never changes)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

from pulsechain_wallet_tracker.chain.models import TokenMetadata

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_RPC_URLS = (
    "https://rpc-pulsechain.g4mm4.io",
    "https://rpc.pulsechain.com",
)
DEFAULT_MAX_RETRIES = 3
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_METADATA_CACHE_TTL_SECONDS = 7 * 24 * 3600

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
]


class PulseChainClientError(Exception):
    """Base exception for PulseChain client errors."""


class RPCError(PulseChainClientError):
    """Raised when an RPC call fails on every endpoint tried."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass
class ProviderHealth:
    """Health snapshot across all configured endpoints."""

    primary: str
    healthy: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total_providers(self) -> int:
        return len(self.healthy) + len(self.failed)


class PulseChainClient:
    """PulseChain chain reader with endpoint failover.

    Every call runs against the current endpoint. On error or timeout the
    endpoint is marked failed and the client rotates to the next one, until
    `max_retries` attempts (capped at the number of endpoints) are used up.

    Example:
        ```python
        client = PulseChainClient(
            ["https://rpc-pulsechain.g4mm4.io", "https://rpc.pulsechain.com"],
        )

        block = await client.get_block_number()
        raw = await client.get_token_balance(wallet, token)
        ```
    """

    def __init__(
        self,
        rpc_urls: Sequence[str] = DEFAULT_RPC_URLS,
        *,
        redis: Redis | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        metadata_cache_ttl_seconds: int = DEFAULT_METADATA_CACHE_TTL_SECONDS,
        web3_factory: Callable[[str], AsyncWeb3[Any]] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_urls: HTTP(S) RPC endpoints in order of preference.
            redis: Optional Redis client for token metadata caching.
            max_retries: Maximum attempts per call across endpoints.
            request_timeout_seconds: Timeout applied to each attempt.
            max_requests_per_second: Rate limit for RPC calls.
            metadata_cache_ttl_seconds: Redis TTL for token metadata.
            web3_factory: Builds a web3 instance for an endpoint URL.
        """
        if not rpc_urls:
            raise ValueError("at least one RPC URL is required")

        self._rpc_urls = list(rpc_urls)
        self._redis = redis
        self._max_retries = max_retries
        self._timeout = request_timeout_seconds
        self._metadata_ttl = metadata_cache_ttl_seconds

        factory = web3_factory or self._new_web3_client
        self._clients = [factory(url) for url in self._rpc_urls]
        self._current_index = 0
        self._failed_endpoints: set[str] = set()

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._metadata: dict[str, TokenMetadata] = {}
        self._cache_prefix = "pulsechain:"

        logger.info("Initialized PulseChain client with %d RPC endpoints", len(self._clients))

    @staticmethod
    def _new_web3_client(rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        return AsyncWeb3(AsyncHTTPProvider(rpc_url))

    @property
    def current_endpoint(self) -> str:
        return self._rpc_urls[self._current_index]

    @property
    def failed_endpoints(self) -> set[str]:
        return set(self._failed_endpoints)

    def _advance_past(self, index: int) -> None:
        # Concurrent calls failing on the same endpoint advance the hint once.
        if self._current_index == index:
            self._current_index = (index + 1) % len(self._clients)
            logger.info("Switched to RPC provider: %s", self.current_endpoint)

    def switch_to_provider(self, index: int) -> None:
        """Force the client onto a specific endpoint."""
        if 0 <= index < len(self._clients):
            self._current_index = index
            logger.info("Manually switched to provider: %s", self.current_endpoint)

    def reset_failed_providers(self) -> None:
        self._failed_endpoints.clear()
        logger.info("Reset all failed providers")

    async def _execute_with_failover(
        self,
        label: str,
        fn: Callable[[AsyncWeb3[Any]], Awaitable[T]],
    ) -> T:
        """Execute an RPC call with timeout and endpoint failover.

        Args:
            label: Call name used in logs and errors.
            fn: Coroutine factory receiving the web3 instance to use.

        Returns:
            Result from the first endpoint that answers.

        Raises:
            RPCError: If every attempt fails.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        total = len(self._clients)
        max_attempts = min(self._max_retries, total)
        start = self._current_index

        for attempt in range(1, max_attempts + 1):
            index = (start + attempt - 1) % total
            endpoint = self._rpc_urls[index]
            w3 = self._clients[index]
            try:
                result = await asyncio.wait_for(fn(w3), timeout=self._timeout)
            except Exception as e:
                last_error = e
                logger.warning(
                    "RPC provider %s failed %s (attempt %d/%d): %s",
                    endpoint,
                    label,
                    attempt,
                    max_attempts,
                    e,
                )
                self._failed_endpoints.add(endpoint)
                self._advance_past(index)
                continue

            if endpoint in self._failed_endpoints:
                self._failed_endpoints.discard(endpoint)
                logger.info("RPC provider %s recovered", endpoint)
            return result

        raise RPCError(f"RPC call {label} failed on all providers: {last_error}")

    async def get_block_number(self) -> int:
        async def call(w3: AsyncWeb3[Any]) -> int:
            return int(await w3.eth.block_number)

        return await self._execute_with_failover("block_number", call)

    async def get_balance(self, address: str) -> int:
        """Get the native PLS balance of an address in wei."""

        async def call(w3: AsyncWeb3[Any]) -> int:
            return int(await w3.eth.get_balance(AsyncWeb3.to_checksum_address(address)))

        return await self._execute_with_failover("get_balance", call)

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via `eth_getLogs` with failover semantics."""
        params = dict(filter_params)
        if params.get("address"):
            params["address"] = AsyncWeb3.to_checksum_address(params["address"])

        async def call(w3: AsyncWeb3[Any]) -> list[dict[str, Any]]:
            logs = await w3.eth.get_logs(params)
            return [dict(log) for log in logs]

        return await self._execute_with_failover("get_logs", call)

    async def _call_erc20(self, token_address: str, function: str, *args: Any) -> Any:
        async def call(w3: AsyncWeb3[Any]) -> Any:
            contract = w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(token_address),
                abi=ERC20_ABI,
            )
            return await getattr(contract.functions, function)(*args).call()

        return await self._execute_with_failover(f"{function}({token_address})", call)

    async def get_token_balance(self, wallet_address: str, token_address: str) -> int:
        """Get the latest ERC20 balance in the token's smallest unit."""
        balance = await self._call_erc20(
            token_address,
            "balanceOf",
            AsyncWeb3.to_checksum_address(wallet_address),
        )
        return int(balance)

    async def get_token_decimals(self, token_address: str) -> int:
        cached = self._metadata.get(token_address.lower())
        if cached is not None:
            return cached.decimals
        return int(await self._call_erc20(token_address, "decimals"))

    async def get_token_metadata(self, token_address: str) -> TokenMetadata:
        """Get symbol, name and decimals for a token (memoized; immutable per address)."""
        token_address = token_address.lower()
        cached = self._metadata.get(token_address)
        if cached is not None:
            return cached

        cache_key = f"{self._cache_prefix}token_metadata:{token_address}"
        stored = await self._get_cached(cache_key)
        if stored is not None:
            try:
                metadata = TokenMetadata.from_dict(json.loads(stored))
                self._metadata[token_address] = metadata
                return metadata
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Ignoring unreadable cached metadata for %s: %s", token_address, e)

        decimals, symbol, name = await asyncio.gather(
            self._call_erc20(token_address, "decimals"),
            self._call_erc20(token_address, "symbol"),
            self._call_erc20(token_address, "name"),
        )
        metadata = TokenMetadata(symbol=str(symbol), name=str(name), decimals=int(decimals))
        self._metadata[token_address] = metadata
        await self._set_cached(cache_key, json.dumps(metadata.to_dict()))
        return metadata

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=self._metadata_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def get_provider_health(self) -> ProviderHealth:
        """Probe every endpoint with `eth_blockNumber`."""

        async def probe(w3: AsyncWeb3[Any]) -> bool:
            try:
                await asyncio.wait_for(w3.eth.block_number, timeout=self._timeout)
                return True
            except Exception:
                return False

        results = await asyncio.gather(*(probe(w3) for w3 in self._clients))
        health = ProviderHealth(primary=self.current_endpoint)
        for url, ok in zip(self._rpc_urls, results, strict=True):
            (health.healthy if ok else health.failed).append(url)
        return health

    async def health_check(self) -> bool:
        try:
            await self.get_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        for w3 in self._clients:
            disconnect = getattr(w3.provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
