"""In-memory wallet balance cache with live updates and periodic reconciliation.

Balances reach the cache from two racing sources:
- transfer-driven on-chain reads pushed by the live transfer watcher
- periodic re-fetches from the bulk balance source (ground truth)

Writes for one (wallet, token) key are serialized through a keyed lock, so
they apply in arrival order. Reconciliation overwrites any mismatch, which
bounds staleness by the sweep interval when events are missed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from typing import Protocol

from pulsechain_wallet_tracker.cache.locks import KeyedLock
from pulsechain_wallet_tracker.cache.models import (
    BalanceUpdated,
    CachedTokenBalance,
    CacheStatus,
    ReconciliationStats,
    TokenMetadata,
)
from pulsechain_wallet_tracker.chain.transfers import normalize_address
from pulsechain_wallet_tracker.events import EventTopic
from pulsechain_wallet_tracker.ingestor.models import (
    NATIVE_TOKEN_ADDRESS,
    BalanceUpdate,
    PriceQuote,
    TokenBalance,
    TransferEvent,
    format_units,
)
from pulsechain_wallet_tracker.ingestor.transfer_stream import ConnectionState

logger = logging.getLogger(__name__)

DEFAULT_RECONCILIATION_INTERVAL = 300.0  # seconds
DEFAULT_PRICE_CONCURRENCY = 8


class BalanceSource(Protocol):
    async def fetch_wallet_balances(self, wallet: str) -> list[TokenBalance]: ...


class PriceSource(Protocol):
    async def get_price(self, token_address: str) -> PriceQuote | None: ...


class TransferWatcher(Protocol):
    on_transfer: EventTopic[TransferEvent]
    on_balance_update: EventTopic[BalanceUpdate]
    on_state_change: EventTopic[ConnectionState]

    def is_ready(self) -> bool: ...

    def is_tracking(self, wallet: str, token: str) -> bool: ...

    async def track_wallet(self, wallet: str, tokens: Iterable[str]) -> None: ...

    async def untrack_wallet(self, wallet: str) -> None: ...

    async def close(self) -> None: ...


class BalanceCacheManager:
    """Serves wallet balances from a self-healing in-memory cache.

    Example:
        ```python
        manager = BalanceCacheManager(watcher, scanner, price_source=prices)
        manager.on_balance_updated.subscribe(push_to_clients)

        balances = await manager.get_balances_with_live_updates(wallet)
        ...
        await manager.close()
        ```
    """

    def __init__(
        self,
        watcher: TransferWatcher,
        balance_source: BalanceSource,
        *,
        price_source: PriceSource | None = None,
        reconciliation_interval: float = DEFAULT_RECONCILIATION_INTERVAL,
        eager_fetch_on_read: bool = True,
        price_concurrency: int = DEFAULT_PRICE_CONCURRENCY,
    ) -> None:
        """Initialize the manager.

        Args:
            watcher: Live transfer watcher feeding on-chain balance updates.
            balance_source: Bulk balance source for cold reads and reconciliation.
            price_source: Optional USD price source attached on reads.
            reconciliation_interval: Seconds between reconciliation sweeps.
            eager_fetch_on_read: Re-fetch a warm wallet on read while the watcher is down.
            price_concurrency: Maximum concurrent price lookups per read.
        """
        self._watcher = watcher
        self._balance_source = balance_source
        self._price_source = price_source
        self._interval = reconciliation_interval
        self._eager_fetch = eager_fetch_on_read
        self._price_concurrency = max(1, price_concurrency)

        self._cache: dict[str, dict[str, CachedTokenBalance]] = {}
        self._native: dict[str, CachedTokenBalance] = {}
        self._metadata: dict[str, TokenMetadata] = {}
        self._verified: set[str] = set()
        self._locks: KeyedLock[tuple[str, str]] = KeyedLock()

        self.on_balance_updated: EventTopic[BalanceUpdated] = EventTopic("balance_updated")

        self._reconcile_task: asyncio.Task[None] | None = None
        self._stats = ReconciliationStats()
        self._closed = False

        self._detach: list[Callable[[], None]] = [
            watcher.on_balance_update.subscribe(self.handle_balance_update),
            watcher.on_transfer.subscribe(self._log_transfer),
            watcher.on_state_change.subscribe(self._on_watcher_state),
        ]

    @property
    def is_reconciling(self) -> bool:
        return self._reconcile_task is not None and not self._reconcile_task.done()

    @property
    def reconciliation_stats(self) -> ReconciliationStats:
        return self._stats

    @property
    def tracked_wallets(self) -> list[str]:
        return list(self._cache)

    # Tracking

    async def track_wallet(self, wallet: str, tokens: Iterable[TokenBalance]) -> None:
        """Seed the cache for `wallet` and start streaming its ERC20 tokens.

        Native balances are kept apart from the event path; they only change
        through reconciliation.
        """
        wallet = normalize_address(wallet)
        wallet_cache = self._cache.setdefault(wallet, {})
        streamed: list[str] = []

        for token in tokens:
            address = normalize_address(token.address)
            self._remember_metadata(address, token)
            entry = CachedTokenBalance.from_raw(token.balance, token.decimals)

            async with self._locks.hold((wallet, address)):
                if self._cache.get(wallet) is not wallet_cache:
                    return
                if token.is_native or address == NATIVE_TOKEN_ADDRESS:
                    self._native[wallet] = entry
                    continue
                wallet_cache[address] = entry
            streamed.append(address)

        logger.info("Tracking %s with %d tokens", wallet, len(wallet_cache))

        if streamed and self._watcher.is_ready():
            await self._watcher.track_wallet(wallet, streamed)

        self._ensure_reconciliation()

    async def untrack_wallet(self, wallet: str) -> None:
        wallet = normalize_address(wallet)
        await self._watcher.untrack_wallet(wallet)
        self._cache.pop(wallet, None)
        self._native.pop(wallet, None)
        logger.info("Untracked %s", wallet)

        if not self._cache:
            await self._stop_reconciliation()

    def _remember_metadata(self, address: str, token: TokenBalance) -> None:
        if address not in self._metadata:
            self._metadata[address] = TokenMetadata(
                symbol=token.symbol,
                name=token.name,
                decimals=token.decimals,
            )
        if token.verified:
            self._verified.add(address)

    # Reads

    def _to_token_balance(
        self,
        address: str,
        entry: CachedTokenBalance,
        metadata: TokenMetadata,
        *,
        is_native: bool = False,
    ) -> TokenBalance:
        decimals = entry.decimals if entry.decimals is not None else metadata.decimals
        formatted = (
            entry.formatted_balance
            if entry.decimals is not None
            else format_units(entry.raw_balance, decimals)
        )
        balance = TokenBalance.from_raw(
            address=address,
            symbol=metadata.symbol,
            name=metadata.name,
            decimals=decimals,
            balance=entry.raw_balance,
            is_native=is_native,
            verified=is_native or address in self._verified,
        )
        return replace(balance, balance_formatted=formatted)

    def get_cached_balances(self, wallet: str) -> list[TokenBalance] | None:
        """Snapshot of a tracked wallet, native first; None when not tracked.

        No network calls and no side effects.
        """
        wallet = normalize_address(wallet)
        tokens = self._cache.get(wallet)
        if tokens is None:
            return None

        result: list[TokenBalance] = []
        native = self._native.get(wallet)
        native_metadata = self._metadata.get(NATIVE_TOKEN_ADDRESS)
        if native is not None and native_metadata is not None:
            result.append(
                self._to_token_balance(NATIVE_TOKEN_ADDRESS, native, native_metadata, is_native=True)
            )

        for address, entry in tokens.items():
            metadata = self._metadata.get(address)
            if metadata is None:
                continue
            result.append(self._to_token_balance(address, entry, metadata))
        return result

    async def get_balances_with_live_updates(self, wallet: str) -> list[TokenBalance]:
        """Read-through balances with prices attached.

        A warm cache is served directly; a cold one is populated from the
        balance source, whose failure propagates to the caller.
        """
        wallet = normalize_address(wallet)
        cached = self.get_cached_balances(wallet)

        if cached:
            if self._eager_fetch and not self._watcher.is_ready():
                try:
                    await self._reconcile_wallet(wallet)
                except Exception as e:
                    logger.warning("Eager refresh failed for %s, serving cache: %s", wallet, e)
                cached = self.get_cached_balances(wallet) or cached
            return await self._attach_prices(cached)

        balances = await self._balance_source.fetch_wallet_balances(wallet)
        await self.track_wallet(wallet, balances)
        return await self._attach_prices(balances)

    async def _attach_prices(self, balances: Sequence[TokenBalance]) -> list[TokenBalance]:
        price_source = self._price_source
        if price_source is None:
            return [replace(balance) for balance in balances]

        semaphore = asyncio.Semaphore(self._price_concurrency)

        async def priced(balance: TokenBalance) -> TokenBalance:
            async with semaphore:
                try:
                    quote = await price_source.get_price(balance.address)
                except Exception as e:
                    logger.debug("Price lookup failed for %s: %s", balance.address, e)
                    quote = None
            return balance.with_price(quote)

        return list(await asyncio.gather(*(priced(balance) for balance in balances)))

    # Event path

    async def handle_balance_update(self, update: BalanceUpdate) -> None:
        """Apply a watcher-reported balance; same-key updates apply in arrival order.

        Listeners are notified after the key's lock is released, so they may
        call back into the manager for the same wallet.
        """
        wallet = update.wallet.lower()
        token = update.token.lower()

        async with self._locks.hold((wallet, token)):
            tokens = self._cache.get(wallet)
            if tokens is None:
                logger.debug("Dropping balance update for untracked wallet %s", wallet)
                return

            previous = tokens.get(token)
            tokens[token] = CachedTokenBalance(
                raw_balance=update.balance,
                formatted_balance=update.formatted_balance,
                decimals=update.decimals,
                last_updated_block=update.block_number,
            )
            logger.debug(
                "Applied balance %s for %s/%s at block %d",
                update.balance,
                wallet,
                token,
                update.block_number,
            )
            event = BalanceUpdated(
                wallet=wallet,
                token=token,
                balance=update.balance,
                formatted_balance=update.formatted_balance,
                previous_balance=previous.raw_balance if previous else None,
            )

        await self.on_balance_updated.publish(event)

    def _log_transfer(self, event: TransferEvent) -> None:
        logger.debug(
            "Transfer %s %s for %s (tx %s)",
            event.direction.value,
            event.token,
            event.wallet,
            event.tx_hash,
        )

    async def _on_watcher_state(self, state: ConnectionState) -> None:
        if state is not ConnectionState.CONNECTED:
            return
        for wallet, tokens in list(self._cache.items()):
            missing = [token for token in tokens if not self._watcher.is_tracking(wallet, token)]
            if missing:
                logger.info("Enrolling %d tokens for %s with watcher", len(missing), wallet)
                await self._watcher.track_wallet(wallet, missing)

    # Reconciliation

    def _ensure_reconciliation(self) -> None:
        if self._closed or self.is_reconciling:
            return
        logger.info("Starting balance reconciliation every %.0f seconds", self._interval)
        self._reconcile_task = asyncio.create_task(
            self._reconciliation_loop(), name="balance-reconciliation"
        )

    async def _stop_reconciliation(self) -> None:
        task, self._reconcile_task = self._reconcile_task, None
        if task is None or task.done():
            return
        task.cancel()
        logger.info("Stopped balance reconciliation")
        if task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _reconciliation_loop(self) -> None:
        while True:
            await self.reconcile_now()
            await asyncio.sleep(self._interval)

    async def reconcile_now(self) -> ReconciliationStats:
        """Run one sweep over every tracked wallet.

        Wallets are reconciled one after another; a failing wallet is logged
        and counted without affecting the rest.
        """
        started = time.monotonic()
        mismatches_before = self._stats.mismatches

        for wallet in list(self._cache):
            if wallet not in self._cache:
                continue
            try:
                await self._reconcile_wallet(wallet)
            except Exception as e:
                self._stats.wallets_failed += 1
                self._stats.last_error = str(e)
                logger.warning("Reconciliation failed for %s: %s", wallet, e)
            else:
                self._stats.wallets_reconciled += 1

        duration = time.monotonic() - started
        self._stats.sweeps_completed += 1
        self._stats.last_sweep_at = time.time()
        self._stats.last_duration_seconds = duration
        logger.info(
            "Reconciliation completed in %.0fms, found %d mismatches",
            duration * 1000,
            self._stats.mismatches - mismatches_before,
        )
        return self._stats

    async def _reconcile_wallet(self, wallet: str) -> None:
        tokens = self._cache.get(wallet)
        if tokens is None:
            return

        truth = await self._balance_source.fetch_wallet_balances(wallet)

        new_tokens: list[str] = []
        for balance in truth:
            if self._cache.get(wallet) is not tokens:
                logger.debug("Skipping %s, untracked during reconciliation", wallet)
                return

            address = normalize_address(balance.address)
            self._remember_metadata(address, balance)

            if balance.is_native or address == NATIVE_TOKEN_ADDRESS:
                await self._reconcile_native(wallet, balance)
            elif await self._reconcile_token(wallet, tokens, address, balance):
                new_tokens.append(address)

        if new_tokens and self._watcher.is_ready() and self._cache.get(wallet) is tokens:
            await self._watcher.track_wallet(wallet, new_tokens)

    async def _reconcile_token(
        self,
        wallet: str,
        tokens: dict[str, CachedTokenBalance],
        address: str,
        truth: TokenBalance,
    ) -> bool:
        """Overwrite a drifted entry; True when the token was new to the cache."""
        async with self._locks.hold((wallet, address)):
            if self._cache.get(wallet) is not tokens:
                return False

            entry = tokens.get(address)
            if entry is None:
                tokens[address] = CachedTokenBalance.from_raw(truth.balance, truth.decimals)
                self._stats.new_tokens += 1
                logger.info("New token found during reconciliation: %s for %s", address, wallet)
                return True

            if entry.raw_balance == truth.balance:
                return False

            self._stats.mismatches += 1
            if entry.last_updated_block > 0:
                self._stats.event_overwrites += 1
                logger.warning(
                    "Balance mismatch for %s/%s: cached %s (on-chain at block %d), indexer %s",
                    wallet,
                    address,
                    entry.raw_balance,
                    entry.last_updated_block,
                    truth.balance,
                )
            else:
                self._stats.stale_overwrites += 1
                logger.warning(
                    "Balance mismatch for %s/%s: cached %s, indexer %s",
                    wallet,
                    address,
                    entry.raw_balance,
                    truth.balance,
                )

            tokens[address] = CachedTokenBalance.from_raw(truth.balance, truth.decimals)
            event = self._reconciled_event(wallet, address, truth, entry.raw_balance)

        await self.on_balance_updated.publish(event)
        return False

    async def _reconcile_native(self, wallet: str, truth: TokenBalance) -> None:
        async with self._locks.hold((wallet, NATIVE_TOKEN_ADDRESS)):
            if wallet not in self._cache:
                return
            previous = self._native.get(wallet)
            if previous is not None and previous.raw_balance == truth.balance:
                return
            self._native[wallet] = CachedTokenBalance.from_raw(truth.balance, truth.decimals)
            if previous is None:
                return
            self._stats.mismatches += 1
            self._stats.stale_overwrites += 1
            event = self._reconciled_event(
                wallet, NATIVE_TOKEN_ADDRESS, truth, previous.raw_balance
            )

        await self.on_balance_updated.publish(event)

    @staticmethod
    def _reconciled_event(
        wallet: str,
        token: str,
        truth: TokenBalance,
        previous_balance: str,
    ) -> BalanceUpdated:
        return BalanceUpdated(
            wallet=wallet,
            token=token,
            balance=truth.balance,
            formatted_balance=truth.balance_formatted,
            source="reconciliation",
            previous_balance=previous_balance,
        )

    # Status / lifecycle

    def get_status(self) -> CacheStatus:
        serialized = json.dumps(
            {
                wallet: {token: entry.to_dict() for token, entry in tokens.items()}
                for wallet, tokens in self._cache.items()
            }
        )
        return CacheStatus(
            is_websocket_connected=self._watcher.is_ready(),
            tracked_wallets=len(self._cache),
            total_tokens=sum(len(tokens) for tokens in self._cache.values()),
            cache_size=len(serialized),
            is_reconciling=self.is_reconciling,
        )

    async def close(self) -> None:
        """Stop reconciliation, close the watcher and drop all cached state."""
        self._closed = True
        await self._stop_reconciliation()
        for detach in self._detach:
            detach()
        self._detach.clear()
        await self._watcher.close()
        self._cache.clear()
        self._native.clear()
        self._metadata.clear()
        self._verified.clear()
        self.on_balance_updated.clear()
        logger.info("Balance cache manager closed")
