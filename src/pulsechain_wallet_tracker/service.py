"""Wallet balance tracking service.

This module provides the BalanceTrackingService class that builds the chain
client, bulk balance source, price source, live transfer watcher and balance
cache manager from settings and manages their lifecycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from redis.asyncio import Redis

from pulsechain_wallet_tracker.cache.manager import BalanceCacheManager
from pulsechain_wallet_tracker.chain.client import PulseChainClient
from pulsechain_wallet_tracker.config import Settings, get_settings
from pulsechain_wallet_tracker.ingestor.prices import DexScreenerPriceClient
from pulsechain_wallet_tracker.ingestor.scanner import PulseChainScanClient
from pulsechain_wallet_tracker.ingestor.transfer_stream import Connector, LiveTransferWatcher

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    started_at: datetime | None = None
    last_error: str | None = None


class BalanceTrackingService:
    """Wires the balance cache to its data sources.

    Example:
        ```python
        from pulsechain_wallet_tracker.config import get_settings
        from pulsechain_wallet_tracker.service import BalanceTrackingService

        async with BalanceTrackingService(get_settings()) as service:
            balances = await service.manager.get_balances_with_live_updates(wallet)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        ws_connector: Connector | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            http_client: Shared HTTP client for scanner and price requests.
            ws_connector: WebSocket connector override for the transfer watcher.
        """
        self._settings = settings or get_settings()
        self._http_client = http_client
        self._ws_connector = ws_connector

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._chain: PulseChainClient | None = None
        self._scanner: PulseChainScanClient | None = None
        self._prices: DexScreenerPriceClient | None = None
        self._watcher: LiveTransferWatcher | None = None
        self._manager: BalanceCacheManager | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def manager(self) -> BalanceCacheManager:
        if self._manager is None:
            raise RuntimeError("Service is not running")
        return self._manager

    @property
    def watcher(self) -> LiveTransferWatcher:
        if self._watcher is None:
            raise RuntimeError("Service is not running")
        return self._watcher

    @property
    def chain(self) -> PulseChainClient:
        if self._chain is None:
            raise RuntimeError("Service is not running")
        return self._chain

    async def start(self) -> None:
        """Build every component and connect the transfer watcher.

        Raises:
            RuntimeError: If the service is already running.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        logger.info("Starting balance tracking service...")

        try:
            watcher = self._initialize_components()
            await watcher.start()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Balance tracking service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start service: %s", e)
            await self._cleanup()
            self._state = ServiceState.STOPPED
            raise

    def _initialize_components(self) -> LiveTransferWatcher:
        settings = self._settings

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing PulseChain client...")
        self._chain = PulseChainClient(
            settings.pulsechain.rpc_urls,
            redis=self._redis,
            max_retries=settings.pulsechain.max_retries,
            request_timeout_seconds=settings.pulsechain.request_timeout_seconds,
            max_requests_per_second=settings.pulsechain.max_requests_per_second,
        )

        logger.debug("Initializing PulseChain Scan client...")
        self._scanner = PulseChainScanClient(
            chain=self._chain,
            api_url=settings.scanner.api_url,
            timeout_seconds=settings.scanner.timeout_seconds,
            max_retries=settings.scanner.max_retries,
            recent_blocks_to_scan=settings.scanner.recent_blocks_to_scan,
            http_client=self._http_client,
        )

        if settings.price.enabled:
            logger.debug("Initializing DexScreener price client...")
            self._prices = DexScreenerPriceClient(
                api_url=settings.price.api_url,
                cache_ttl_seconds=settings.price.cache_ttl_seconds,
                min_liquidity_usd=settings.price.min_liquidity_usd,
                http_client=self._http_client,
            )

        logger.debug("Initializing transfer watcher...")
        self._watcher = LiveTransferWatcher(
            settings.pulsechain.ws_urls,
            chain=self._chain,
            max_reconnect_attempts=settings.tracker.max_reconnect_attempts,
            base_reconnect_delay=settings.tracker.reconnect_base_delay_seconds,
            request_timeout=settings.pulsechain.request_timeout_seconds,
            connector=self._ws_connector,
        )

        self._manager = BalanceCacheManager(
            self._watcher,
            self._scanner,
            price_source=self._prices,
            reconciliation_interval=settings.tracker.reconciliation_interval_seconds,
            eager_fetch_on_read=settings.tracker.eager_fetch_on_read,
            price_concurrency=settings.tracker.price_concurrency,
        )
        logger.info("All components initialized")
        return self._watcher

    async def stop(self) -> None:
        """Close the cache manager (and with it the watcher) and release clients."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping balance tracking service...")
        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Balance tracking service stopped")

    async def _cleanup(self) -> None:
        if self._manager is not None:
            await self._manager.close()
            self._manager = None
        elif self._watcher is not None:
            await self._watcher.close()
        self._watcher = None

        if self._prices is not None:
            await self._prices.aclose()
            self._prices = None
        if self._scanner is not None:
            await self._scanner.aclose()
            self._scanner = None
        if self._chain is not None:
            await self._chain.aclose()
            self._chain = None

        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def __aenter__(self) -> BalanceTrackingService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
