"""Tests for the live Transfer watcher."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
import websockets

from pulsechain_wallet_tracker.chain.transfers import TRANSFER_EVENT_SIGNATURE, pad_topic_address
from pulsechain_wallet_tracker.ingestor.models import BalanceUpdate, TransferDirection, TransferEvent
from pulsechain_wallet_tracker.ingestor.transfer_stream import (
    ConnectionState,
    LiveTransferWatcher,
    _backoff_delay,
)

WALLET = "0xabc0000000000000000000000000000000000abc"
TOKEN = "0xdef0000000000000000000000000000000000def"
OTHER_TOKEN = "0x5555555555555555555555555555555555555555"
SENDER = "0x1111111111111111111111111111111111111111"

_CLOSE = object()


class FakeRpcSocket:
    """In-memory JSON-RPC endpoint that answers subscribe/unsubscribe requests."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.sent: list[dict[str, Any]] = []
        self.active: dict[str, list[Any]] = {}
        self.closed = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self._next_sub = 0

    async def send(self, message: str) -> None:
        request = json.loads(message)
        self.sent.append(request)
        if request["method"] == "eth_subscribe":
            self._next_sub += 1
            sub_id = f"0xsub{self._next_sub}"
            self.active[sub_id] = request["params"]
            result: Any = sub_id
        elif request["method"] == "eth_unsubscribe":
            result = self.active.pop(request["params"][0], None) is not None
        else:
            result = None
        self._incoming.put_nowait(json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": result}))

    async def recv(self) -> str:
        item = await self._incoming.get()
        if item is _CLOSE:
            self._incoming.put_nowait(_CLOSE)
            raise websockets.ConnectionClosed(None, None)
        return item

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def drop(self) -> None:
        self._incoming.put_nowait(_CLOSE)

    def sub_for(self, token: str, direction: TransferDirection) -> str:
        padded = pad_topic_address(WALLET)
        for sub_id, (_, params) in self.active.items():
            topics = params["topics"]
            wallet_topic = topics[2] if direction is TransferDirection.INCOMING else topics[1]
            if params["address"] == token and wallet_topic == padded:
                return sub_id
        raise KeyError((token, direction))

    def push_log(self, sub_id: str, log: dict[str, Any]) -> None:
        notification = {
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": sub_id, "result": log},
        }
        self._incoming.put_nowait(json.dumps(notification))


class FakeConnector:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.urls: list[str] = []
        self.sockets: list[FakeRpcSocket] = []

    async def __call__(self, url: str) -> FakeRpcSocket:
        self.urls.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise OSError(f"cannot reach {url}")
        socket = FakeRpcSocket(url)
        self.sockets.append(socket)
        return socket

    @property
    def socket(self) -> FakeRpcSocket:
        return self.sockets[-1]


def transfer_log(token: str = TOKEN, *, sender: str = SENDER, recipient: str = WALLET, block: int = 100) -> dict[str, Any]:
    return {
        "address": token,
        "topics": [TRANSFER_EVENT_SIGNATURE, pad_topic_address(sender), pad_topic_address(recipient)],
        "data": hex(10**18),
        "blockNumber": hex(block),
        "transactionHash": "0x" + "cd" * 32,
        "logIndex": "0x0",
    }


def make_chain(balance: int = 5 * 10**18, decimals: int = 18) -> AsyncMock:
    chain = AsyncMock()
    chain.get_token_balance = AsyncMock(return_value=balance)
    chain.get_token_decimals = AsyncMock(return_value=decimals)
    return chain


def make_watcher(connector: FakeConnector, chain: AsyncMock | None = None, **kwargs: Any) -> LiveTransferWatcher:
    kwargs.setdefault("base_reconnect_delay", 0.0)
    kwargs.setdefault("request_timeout", 1.0)
    return LiveTransferWatcher(
        ["wss://one.example", "wss://two.example"],
        chain=chain or make_chain(),
        connector=connector,
        **kwargs,
    )


class TestBackoff:
    def test_doubles_each_attempt(self) -> None:
        assert [_backoff_delay(1.0, n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_track_issues_one_filter_per_direction(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)
        await watcher.start()
        await eventually(watcher.is_ready)

        await watcher.track_wallet(WALLET.upper().replace("0X", "0x"), [TOKEN])

        socket = connector.socket
        assert len(socket.active) == 2
        padded = pad_topic_address(WALLET)
        topics = sorted(
            (params[1]["topics"] for params in socket.active.values()),
            key=lambda t: t[1] is None,
        )
        assert topics == [
            [TRANSFER_EVENT_SIGNATURE, padded, None],
            [TRANSFER_EVENT_SIGNATURE, None, padded],
        ]
        assert watcher.active_filter_count == 2
        assert watcher.is_tracking(WALLET, TOKEN)
        await watcher.close()

    @pytest.mark.asyncio
    async def test_pairs_tracked_before_connect_are_replayed(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)

        await watcher.track_wallet(WALLET, [TOKEN, OTHER_TOKEN])
        assert watcher.active_filter_count == 0

        await watcher.start()
        await eventually(lambda: watcher.active_filter_count == 4)

        assert len(connector.socket.active) == 4
        await watcher.close()

    @pytest.mark.asyncio
    async def test_pair_enrolled_on_connect_is_subscribed_once(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)
        await watcher.track_wallet(WALLET, [TOKEN])

        async def enroll(state: ConnectionState) -> None:
            if state is ConnectionState.CONNECTED:
                await watcher.track_wallet(WALLET, [TOKEN])

        watcher.on_state_change.subscribe(enroll)
        await watcher.start()
        await eventually(lambda: watcher.active_filter_count == 2)
        await asyncio.sleep(0.02)

        methods = [req["method"] for req in connector.socket.sent]
        assert methods.count("eth_subscribe") == 2
        assert methods.count("eth_unsubscribe") == 0
        assert len(connector.socket.active) == 2
        await watcher.close()

    @pytest.mark.asyncio
    async def test_tracking_again_replaces_filters(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)
        await watcher.start()
        await eventually(watcher.is_ready)

        await watcher.track_wallet(WALLET, [TOKEN])
        await watcher.track_wallet(WALLET, [TOKEN])

        socket = connector.socket
        assert len(socket.active) == 2
        assert sum(1 for req in socket.sent if req["method"] == "eth_unsubscribe") == 2
        assert watcher.active_filter_count == 2
        await watcher.close()

    @pytest.mark.asyncio
    async def test_untrack_removes_filters(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])

        await watcher.untrack_wallet(WALLET)

        assert connector.socket.active == {}
        assert watcher.active_filter_count == 0
        assert watcher.tracked_wallets == {}
        await watcher.close()


class TestTransfers:
    @pytest.mark.asyncio
    async def test_incoming_log_publishes_transfer_then_balance(self, eventually) -> None:
        connector = FakeConnector()
        chain = make_chain(balance=7 * 10**18)
        watcher = make_watcher(connector, chain)
        transfers: list[TransferEvent] = []
        updates: list[BalanceUpdate] = []
        watcher.on_transfer.subscribe(transfers.append)
        watcher.on_balance_update.subscribe(updates.append)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])

        socket = connector.socket
        socket.push_log(socket.sub_for(TOKEN, TransferDirection.INCOMING), transfer_log(block=321))
        await eventually(lambda: len(updates) == 1)

        assert transfers[0].direction is TransferDirection.INCOMING
        assert transfers[0].amount == 10**18
        assert transfers[0].block_number == 321
        update = updates[0]
        assert (update.wallet, update.token) == (WALLET, TOKEN)
        assert update.balance == str(7 * 10**18)
        assert update.block_number == 321
        assert update.decimals == 18
        chain.get_token_balance.assert_awaited_with(WALLET, TOKEN)
        assert watcher.stats.transfers_received == 1
        assert watcher.stats.balance_updates_published == 1
        await watcher.close()

    @pytest.mark.asyncio
    async def test_outgoing_log_is_classified(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)
        transfers: list[TransferEvent] = []
        watcher.on_transfer.subscribe(transfers.append)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])

        socket = connector.socket
        log = transfer_log(sender=WALLET, recipient=SENDER)
        socket.push_log(socket.sub_for(TOKEN, TransferDirection.OUTGOING), log)
        await eventually(lambda: len(transfers) == 1)

        assert transfers[0].direction is TransferDirection.OUTGOING
        await watcher.close()

    @pytest.mark.asyncio
    async def test_undecodable_log_is_counted_and_dropped(self, eventually) -> None:
        connector = FakeConnector()
        chain = make_chain()
        watcher = make_watcher(connector, chain)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])

        socket = connector.socket
        socket.push_log(socket.sub_for(TOKEN, TransferDirection.INCOMING), transfer_log() | {"data": "0x"})
        await eventually(lambda: watcher.stats.decode_failures == 1)

        assert watcher.stats.transfers_received == 0
        chain.get_token_balance.assert_not_awaited()
        await watcher.close()

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_ignored(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)
        transfers: list[TransferEvent] = []
        watcher.on_transfer.subscribe(transfers.append)
        await watcher.start()
        await eventually(watcher.is_ready)

        connector.socket.push_log("0xunknown", transfer_log())
        await eventually(lambda: watcher.stats.last_message_time is not None)

        assert transfers == []
        await watcher.close()

    @pytest.mark.asyncio
    async def test_balance_fetch_failure_is_counted(self, eventually) -> None:
        connector = FakeConnector()
        chain = make_chain()
        chain.get_token_balance = AsyncMock(side_effect=ConnectionError("rpc down"))
        watcher = make_watcher(connector, chain)
        updates: list[BalanceUpdate] = []
        watcher.on_balance_update.subscribe(updates.append)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])

        socket = connector.socket
        socket.push_log(socket.sub_for(TOKEN, TransferDirection.INCOMING), transfer_log())
        await eventually(lambda: watcher.stats.balance_fetch_failures == 1)

        assert updates == []
        await watcher.close()

    @pytest.mark.asyncio
    async def test_same_pair_updates_publish_in_arrival_order(self, eventually) -> None:
        connector = FakeConnector()
        gate = asyncio.Event()
        calls: list[int] = []

        async def balance(wallet: str, token: str) -> int:
            calls.append(len(calls) + 1)
            if len(calls) == 1:
                await gate.wait()
                return 100
            return 200

        chain = make_chain()
        chain.get_token_balance = AsyncMock(side_effect=balance)
        watcher = make_watcher(connector, chain)
        updates: list[BalanceUpdate] = []
        watcher.on_balance_update.subscribe(updates.append)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])

        socket = connector.socket
        sub_id = socket.sub_for(TOKEN, TransferDirection.INCOMING)
        socket.push_log(sub_id, transfer_log(block=1))
        socket.push_log(sub_id, transfer_log(block=2))
        await eventually(lambda: watcher.stats.transfers_received == 2)
        await asyncio.sleep(0.02)

        # The second refresh waits behind the first one for the same pair.
        assert calls == [1]

        gate.set()
        await eventually(lambda: len(updates) == 2)

        assert [u.balance for u in updates] == ["100", "200"]
        assert [u.block_number for u in updates] == [1, 2]
        await watcher.close()

    @pytest.mark.asyncio
    async def test_slow_listener_does_not_hold_back_next_update(self, eventually) -> None:
        connector = FakeConnector()
        chain = make_chain()
        chain.get_token_balance = AsyncMock(side_effect=[100, 200])
        watcher = make_watcher(connector, chain)
        second_seen = asyncio.Event()
        updates: list[str] = []
        released: list[str] = []

        async def waits_for_next(update: BalanceUpdate) -> None:
            updates.append(update.balance)
            if len(updates) == 1:
                await asyncio.wait_for(second_seen.wait(), timeout=1.0)
                released.append(update.balance)
            else:
                second_seen.set()

        watcher.on_balance_update.subscribe(waits_for_next)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])

        socket = connector.socket
        sub_id = socket.sub_for(TOKEN, TransferDirection.INCOMING)
        socket.push_log(sub_id, transfer_log(block=1))
        socket.push_log(sub_id, transfer_log(block=2))
        await eventually(lambda: released == ["100"], timeout=0.5)

        assert updates == ["100", "200"]
        await watcher.close()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_reconnect_rotates_endpoint_and_resubscribes(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)
        states: list[ConnectionState] = []
        watcher.on_state_change.subscribe(states.append)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])

        connector.socket.drop()
        await eventually(lambda: len(connector.sockets) == 2 and watcher.active_filter_count == 2)

        assert connector.urls == ["wss://one.example", "wss://two.example"]
        assert watcher.current_endpoint == "wss://two.example"
        assert watcher.active_filter_count == 2
        assert watcher.reconnect_attempts == 0
        assert watcher.stats.reconnect_count == 1
        assert ConnectionState.DISCONNECTED in states
        assert states[-1] is ConnectionState.CONNECTED
        await watcher.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        connector = FakeConnector(failures=100)
        watcher = make_watcher(connector, max_reconnect_attempts=3)
        exhausted: list[int] = []
        watcher.on_max_reconnect_attempts.subscribe(exhausted.append)

        await watcher.start()
        await asyncio.wait_for(watcher.wait_closed(), timeout=2.0)

        assert exhausted == [3]
        assert len(connector.urls) == 4
        assert watcher.state is ConnectionState.DISCONNECTED
        assert not watcher.is_ready()

    @pytest.mark.asyncio
    async def test_recovers_after_failed_attempts(self, eventually) -> None:
        connector = FakeConnector(failures=2)
        watcher = make_watcher(connector, max_reconnect_attempts=3)

        await watcher.start()
        await eventually(watcher.is_ready)

        assert len(connector.urls) == 3
        assert watcher.reconnect_attempts == 0
        await watcher.close()

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, eventually) -> None:
        watcher = make_watcher(FakeConnector())
        await watcher.start()

        with pytest.raises(RuntimeError):
            await watcher.start()

        await watcher.close()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_drops_everything(self, eventually) -> None:
        connector = FakeConnector()
        watcher = make_watcher(connector)
        await watcher.start()
        await eventually(watcher.is_ready)
        await watcher.track_wallet(WALLET, [TOKEN])
        socket = connector.socket

        await watcher.close()

        assert socket.active == {}
        assert socket.closed is True
        assert watcher.tracked_wallets == {}
        assert watcher.active_filter_count == 0
        assert watcher.state is ConnectionState.DISCONNECTED
        assert len(connector.sockets) == 1

    @pytest.mark.asyncio
    async def test_requires_endpoint(self) -> None:
        with pytest.raises(ValueError):
            LiveTransferWatcher([], chain=make_chain())
