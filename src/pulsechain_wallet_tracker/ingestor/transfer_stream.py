"""Live ERC20 Transfer watcher over JSON-RPC WebSocket subscriptions.

The watcher keeps one WebSocket connection to a PulseChain node and holds two
`eth_subscribe("logs")` filters per tracked (wallet, token) pair, one for each
transfer direction. A matching log is published as a `TransferEvent`, then
the wallet's balance for that token is re-read on chain and published as a
`BalanceUpdate`.

Connection handling:
- DISCONNECTED -> CONNECTING -> CONNECTED, back to DISCONNECTED on close
- Reconnects rotate through the endpoint list with exponential backoff
- After `max_reconnect_attempts` failed attempts in a row the watcher stops
- Every successful connect replays all tracked pairs
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import websockets

from pulsechain_wallet_tracker.cache.locks import KeyedLock
from pulsechain_wallet_tracker.chain.transfers import (
    TRANSFER_EVENT_SIGNATURE,
    TransferDecodeError,
    decode_transfer_log,
    normalize_address,
    pad_topic_address,
)
from pulsechain_wallet_tracker.events import EventTopic
from pulsechain_wallet_tracker.ingestor.models import (
    BalanceUpdate,
    TransferDirection,
    TransferEvent,
    format_units,
)

if TYPE_CHECKING:
    from pulsechain_wallet_tracker.chain.client import PulseChainClient

logger = logging.getLogger(__name__)

DEFAULT_WS_URLS = (
    "wss://rpc-pulsechain.g4mm4.io",
    "wss://rpc.pulsechain.com",
    "wss://pulsechain-rpc.publicnode.com",
)
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_BASE_RECONNECT_DELAY = 1.0  # seconds
DEFAULT_REQUEST_TIMEOUT = 10.0  # seconds
DEFAULT_PING_INTERVAL = 30  # seconds

FilterKey = tuple[str, str, TransferDirection]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class WatcherStats:
    transfers_received: int = 0
    balance_updates_published: int = 0
    decode_failures: int = 0
    balance_fetch_failures: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


class TransferWatcherError(Exception):
    """Base exception for transfer watcher errors."""


class WatcherConnectionError(TransferWatcherError):
    """Raised when connection to a WebSocket endpoint fails."""


class WatcherRequestError(TransferWatcherError):
    """Raised when a JSON-RPC request over the socket fails or times out."""


class RpcSocket(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[RpcSocket]]


def _backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before reconnect attempt `attempt` (1-based)."""
    return base_delay * (2 ** (attempt - 1))


class LiveTransferWatcher:
    """Streams Transfer logs for tracked wallets and re-reads balances.

    Example:
        ```python
        watcher = LiveTransferWatcher(ws_urls, chain=client)
        watcher.on_balance_update.subscribe(handle_update)
        await watcher.start()
        await watcher.track_wallet(wallet, [token])
        ...
        await watcher.close()
        ```
    """

    def __init__(
        self,
        ws_urls: Sequence[str] = DEFAULT_WS_URLS,
        *,
        chain: PulseChainClient,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        base_reconnect_delay: float = DEFAULT_BASE_RECONNECT_DELAY,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        connector: Connector | None = None,
    ) -> None:
        """Initialize the watcher.

        Args:
            ws_urls: WebSocket JSON-RPC endpoints, tried in rotation.
            chain: Chain reader used for post-transfer balance reads.
            max_reconnect_attempts: Consecutive failed reconnects before giving up.
            base_reconnect_delay: Backoff base in seconds.
            request_timeout: Timeout for subscribe/unsubscribe responses.
            ping_interval: Keepalive ping interval for the default connector.
            connector: Opens a socket for a URL; defaults to `websockets.connect`.
        """
        if not ws_urls:
            raise ValueError("at least one WebSocket URL is required")

        self._urls = list(ws_urls)
        self._chain = chain
        self._max_reconnect_attempts = max_reconnect_attempts
        self._base_delay = base_reconnect_delay
        self._request_timeout = request_timeout
        self._ping_interval = ping_interval
        self._connector: Connector = connector or self._open_connection

        self.on_transfer: EventTopic[TransferEvent] = EventTopic("transfer")
        self.on_balance_update: EventTopic[BalanceUpdate] = EventTopic("balance_update")
        self.on_state_change: EventTopic[ConnectionState] = EventTopic("state_change")
        self.on_max_reconnect_attempts: EventTopic[int] = EventTopic("max_reconnect_attempts")

        self._state = ConnectionState.DISCONNECTED
        self._stats = WatcherStats()

        self._ws: RpcSocket | None = None
        self._connection_id = 0
        self._endpoint_index = 0
        self._reconnect_attempts = 0
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._supervisor_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None

        self._next_request_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}

        # wallet -> tokens; survives reconnects
        self._subscriptions: dict[str, set[str]] = {}
        # live filter ids; reset on every disconnect
        self._filters: dict[FilterKey, str] = {}
        self._routes: dict[str, FilterKey] = {}
        self._filter_locks: KeyedLock[FilterKey] = KeyedLock()

        self._refresh_locks: KeyedLock[tuple[str, str]] = KeyedLock()
        self._refresh_tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> WatcherStats:
        return self._stats

    @property
    def current_endpoint(self) -> str:
        return self._urls[self._endpoint_index]

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def tracked_wallets(self) -> dict[str, frozenset[str]]:
        return {wallet: frozenset(tokens) for wallet, tokens in self._subscriptions.items()}

    @property
    def active_filter_count(self) -> int:
        return len(self._filters)

    def is_ready(self) -> bool:
        """Whether a live connection is up and delivering messages."""
        return (
            self._state is ConnectionState.CONNECTED
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    def is_tracking(self, wallet: str, token: str) -> bool:
        return token.lower() in self._subscriptions.get(wallet.lower(), ())

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Transfer watcher state: %s -> %s", old.value, new_state.value)
            await self.on_state_change.publish(new_state)

    async def _open_connection(self, url: str) -> RpcSocket:
        return await websockets.connect(
            url,
            ping_interval=self._ping_interval,
            ping_timeout=self._ping_interval * 2,
        )

    # Lifecycle

    async def start(self) -> None:
        """Launch the connection supervisor in the background."""
        if self._running:
            raise RuntimeError("Transfer watcher already running")
        self._running = True
        self._stop_event = asyncio.Event()
        self._reconnect_attempts = 0
        self._supervisor_task = asyncio.create_task(self._run(), name="transfer-watcher")

    async def wait_closed(self) -> None:
        """Wait until the supervisor exits (stopped or retries exhausted)."""
        if self._supervisor_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor_task

    async def _run(self) -> None:
        while self._running:
            try:
                await self._connect()
            except WatcherConnectionError as e:
                logger.warning("%s", e)
            else:
                self._reconnect_attempts = 0
                await self._resubscribe_all()
                if self._reader_task is not None:
                    await self._reader_task
                await self._handle_disconnect()

            if not self._running or not await self._wait_before_reconnect():
                break

    async def _connect(self) -> None:
        url = self.current_endpoint
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await self._connector(url)
        except Exception as e:
            self._stats.last_error = str(e)
            await self._set_state(ConnectionState.DISCONNECTED)
            raise WatcherConnectionError(f"Failed to connect to {url}: {e}") from e

        self._ws = ws
        self._connection_id += 1
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._stats.connected_since = time.time()
        logger.info("Connected to PulseChain WebSocket: %s", url)
        await self._set_state(ConnectionState.CONNECTED)

    async def _handle_disconnect(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        self._filters.clear()
        self._routes.clear()
        self._fail_pending("connection closed")
        self._stats.connected_since = None
        await self._set_state(ConnectionState.DISCONNECTED)

    async def _wait_before_reconnect(self) -> bool:
        """Back off before the next attempt; False when the watcher should stop."""
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            logger.error(
                "Transfer watcher gave up after %d reconnect attempts",
                self._reconnect_attempts,
            )
            self._running = False
            await self.on_max_reconnect_attempts.publish(self._reconnect_attempts)
            return False

        self._reconnect_attempts += 1
        self._stats.reconnect_count += 1
        self._endpoint_index = (self._endpoint_index + 1) % len(self._urls)
        delay = _backoff_delay(self._base_delay, self._reconnect_attempts)
        logger.info(
            "Reconnecting to %s in %.1f seconds (attempt %d/%d)",
            self.current_endpoint,
            delay,
            self._reconnect_attempts,
            self._max_reconnect_attempts,
        )

        if self._stop_event is None:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            return self._running
        return False

    async def close(self) -> None:
        """Cancel refreshes, drop every filter, close the socket and forget all wallets."""
        self._running = False
        if self._stop_event:
            self._stop_event.set()

        refreshes = list(self._refresh_tasks)
        for task in refreshes:
            task.cancel()
        if refreshes:
            await asyncio.gather(*refreshes, return_exceptions=True)

        for sub_id in list(self._filters.values()):
            await self._unsubscribe_id(sub_id)
        self._filters.clear()
        self._routes.clear()

        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()

        current = asyncio.current_task()
        for task in (self._reader_task, self._supervisor_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._supervisor_task = None

        self._fail_pending("watcher closed")
        self._subscriptions.clear()
        await self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Transfer watcher closed")

    # Subscription table

    async def track_wallet(self, wallet: str, tokens: Iterable[str]) -> None:
        """Stream transfers of `tokens` for `wallet`.

        Subscriptions are issued immediately when connected, otherwise they
        are replayed on the next successful connect.
        """
        wallet = normalize_address(wallet)
        normalized = sorted({normalize_address(token) for token in tokens})
        self._subscriptions.setdefault(wallet, set()).update(normalized)

        if not self.is_ready():
            logger.debug("Deferring %d token subscriptions for %s", len(normalized), wallet)
            return

        for token in normalized:
            try:
                await self._subscribe_pair(wallet, token)
            except WatcherRequestError as e:
                logger.warning("Subscription failed for %s/%s: %s", wallet, token, e)

    async def untrack_wallet(self, wallet: str) -> None:
        wallet = normalize_address(wallet)
        if self._subscriptions.pop(wallet, None) is None:
            return

        for key in [key for key in self._filters if key[0] == wallet]:
            sub_id = self._filters.pop(key)
            self._routes.pop(sub_id, None)
            await self._unsubscribe_id(sub_id)
        logger.info("Stopped watching %s", wallet)

    async def _resubscribe_all(self) -> None:
        pairs = [
            (wallet, token)
            for wallet, tokens in self._subscriptions.items()
            for token in sorted(tokens)
        ]
        if pairs:
            logger.info("Resubscribing %d tracked wallet/token pairs", len(pairs))
        for wallet, token in pairs:
            if not self.is_ready():
                return
            if not self.is_tracking(wallet, token):
                continue
            try:
                await self._subscribe_pair(wallet, token, replace=False)
            except WatcherRequestError as e:
                logger.warning("Resubscribe failed for %s/%s: %s", wallet, token, e)

    async def _subscribe_pair(self, wallet: str, token: str, replace: bool = True) -> None:
        for direction in TransferDirection:
            await self._subscribe_filter((wallet, token, direction), replace)

    async def _subscribe_filter(self, key: FilterKey, replace: bool = True) -> None:
        """Open a log filter for `key`; a live filter is kept unless `replace`."""
        wallet, token, direction = key
        async with self._filter_locks.hold(key):
            if not replace and key in self._filters:
                return
            old = self._filters.pop(key, None)
            if old is not None:
                self._routes.pop(old, None)
                await self._unsubscribe_id(old)

            padded = pad_topic_address(wallet)
            if direction is TransferDirection.INCOMING:
                topics = [TRANSFER_EVENT_SIGNATURE, None, padded]
            else:
                topics = [TRANSFER_EVENT_SIGNATURE, padded, None]

            connection_id = self._connection_id
            sub_id = await self._request("eth_subscribe", ["logs", {"address": token, "topics": topics}])

            if connection_id != self._connection_id:
                return
            if not self.is_tracking(wallet, token):
                await self._unsubscribe_id(sub_id)
                return
            self._filters[key] = str(sub_id)
            self._routes[str(sub_id)] = key

    async def _unsubscribe_id(self, sub_id: str) -> None:
        if not self.is_ready():
            return
        try:
            await self._request("eth_unsubscribe", [sub_id])
        except WatcherRequestError as e:
            logger.debug("Unsubscribe %s failed: %s", sub_id, e)

    # JSON-RPC plumbing

    async def _request(self, method: str, params: list[Any]) -> Any:
        ws = self._ws
        if ws is None or not self.is_ready():
            raise WatcherRequestError(f"{method}: not connected")

        self._next_request_id += 1
        request_id = self._next_request_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            await ws.send(json.dumps(message))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except TimeoutError as e:
            raise WatcherRequestError(f"{method}: no response within {self._request_timeout}s") from e
        except websockets.ConnectionClosed as e:
            raise WatcherRequestError(f"{method}: connection closed") from e
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(WatcherRequestError(reason))
        self._pending.clear()

    async def _read_loop(self, ws: RpcSocket) -> None:
        try:
            while True:
                message = await ws.recv()
                if isinstance(message, bytes):
                    message = message.decode()
                await self._handle_message(message)
        except websockets.ConnectionClosed as e:
            logger.warning("Transfer watcher connection closed: %s", e)
            self._stats.last_error = str(e)
        except Exception as e:
            logger.error("Transfer watcher read loop failed: %s", e)
            self._stats.last_error = str(e)
        finally:
            self._fail_pending("connection closed")

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON message on transfer stream")
            return
        if not isinstance(data, dict):
            return

        request_id = data.get("id")
        if request_id is not None:
            future = self._pending.get(request_id)
            if future is None or future.done():
                return
            error = data.get("error")
            if error:
                reason = error.get("message") if isinstance(error, dict) else error
                future.set_exception(WatcherRequestError(str(reason)))
            else:
                future.set_result(data.get("result"))
            return

        if data.get("method") == "eth_subscription":
            params = data.get("params") or {}
            self._stats.last_message_time = time.time()
            await self._handle_log(str(params.get("subscription")), params.get("result") or {})

    async def _handle_log(self, sub_id: str, log: dict[str, Any]) -> None:
        key = self._routes.get(sub_id)
        if key is None:
            logger.debug("Ignoring log for unknown subscription %s", sub_id)
            return
        wallet, token, filter_direction = key

        try:
            transfer = decode_transfer_log(log)
        except TransferDecodeError as e:
            self._stats.decode_failures += 1
            logger.warning("Dropping undecodable transfer log for %s/%s: %s", wallet, token, e)
            return

        incoming = transfer.to_address == wallet
        outgoing = transfer.from_address == wallet
        if incoming and outgoing:
            direction = filter_direction
        elif incoming:
            direction = TransferDirection.INCOMING
        elif outgoing:
            direction = TransferDirection.OUTGOING
        else:
            logger.debug("Transfer %s does not involve %s", transfer.tx_hash, wallet)
            return

        self._stats.transfers_received += 1
        event = TransferEvent(
            wallet=wallet,
            token=token,
            amount=transfer.amount,
            direction=direction,
            block_number=transfer.block_number,
            tx_hash=transfer.tx_hash,
            from_address=transfer.from_address,
            to_address=transfer.to_address,
        )
        logger.info(
            "%s transfer of %d %s for %s in block %d",
            direction.value,
            transfer.amount,
            token,
            wallet,
            transfer.block_number,
        )
        await self.on_transfer.publish(event)

        task = asyncio.create_task(self._refresh_balance(wallet, token, transfer.block_number))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh_balance(self, wallet: str, token: str, block_number: int) -> None:
        # Same-key refreshes queue on the lock in the order their logs arrived.
        # Listeners run after release so they may re-enter the watcher.
        async with self._refresh_locks.hold((wallet, token)):
            try:
                raw, decimals = await asyncio.gather(
                    self._chain.get_token_balance(wallet, token),
                    self._chain.get_token_decimals(token),
                )
            except Exception as e:
                self._stats.balance_fetch_failures += 1
                logger.warning("Balance refresh failed for %s/%s: %s", wallet, token, e)
                return

            if not self.is_tracking(wallet, token):
                return

            update = BalanceUpdate(
                wallet=wallet,
                token=token,
                balance=str(raw),
                formatted_balance=format_units(raw, decimals),
                decimals=decimals,
                block_number=block_number,
                timestamp=time.time(),
            )
            self._stats.balance_updates_published += 1

        await self.on_balance_update.publish(update)
