"""Tests for Transfer log decoding helpers."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from pulsechain_wallet_tracker.chain.transfers import (
    TRANSFER_EVENT_SIGNATURE,
    TransferDecodeError,
    decode_transfer_log,
    find_recent_transfer_tokens,
    normalize_address,
    pad_topic_address,
    parse_quantity,
    topic_to_address,
)

WALLET = "0xabc0000000000000000000000000000000000abc"
SENDER = "0x1111111111111111111111111111111111111111"
TOKEN = "0xdef0000000000000000000000000000000000def"


def make_log(**overrides: object) -> dict[str, object]:
    log: dict[str, object] = {
        "address": TOKEN,
        "topics": [TRANSFER_EVENT_SIGNATURE, pad_topic_address(SENDER), pad_topic_address(WALLET)],
        "data": hex(10**18),
        "blockNumber": "0x10",
        "transactionHash": "0x" + "ab" * 32,
        "logIndex": "0x2",
    }
    log.update(overrides)
    return log


class TestAddresses:
    def test_normalize_lowercases(self) -> None:
        assert normalize_address(" 0xABC0000000000000000000000000000000000ABC ") == WALLET

    @pytest.mark.parametrize("bad", ["", "abc", "0x123", "0x" + "g" * 40, "1x" + "0" * 40])
    def test_normalize_rejects_malformed(self, bad: str) -> None:
        with pytest.raises(ValueError):
            normalize_address(bad)

    def test_pad_and_unpad_topic(self) -> None:
        padded = pad_topic_address(WALLET)

        assert len(padded) == 66
        assert padded.startswith("0x" + "0" * 24)
        assert topic_to_address(padded) == WALLET

    def test_topic_from_bytes(self) -> None:
        raw = bytes.fromhex(pad_topic_address(WALLET)[2:])

        assert topic_to_address(raw) == WALLET

    def test_parse_quantity(self) -> None:
        assert parse_quantity("0x10") == 16
        assert parse_quantity(16) == 16
        assert parse_quantity("16") == 16
        assert parse_quantity(None) == 0


class TestDecodeTransferLog:
    def test_decodes_websocket_log(self) -> None:
        transfer = decode_transfer_log(make_log())

        assert transfer.token_address == TOKEN
        assert transfer.from_address == SENDER
        assert transfer.to_address == WALLET
        assert transfer.amount == 10**18
        assert transfer.block_number == 16
        assert transfer.log_index == 2
        assert transfer.tx_hash == "0x" + "ab" * 32

    def test_decodes_bytes_fields(self) -> None:
        log = make_log(
            topics=[bytes.fromhex(t[2:]) for t in make_log()["topics"]],  # type: ignore[union-attr]
            data=(10**18).to_bytes(32, "big"),
            blockNumber=16,
            logIndex=2,
        )

        transfer = decode_transfer_log(log)

        assert transfer.amount == 10**18
        assert transfer.to_address == WALLET

    def test_rejects_non_transfer_topic(self) -> None:
        with pytest.raises(TransferDecodeError):
            decode_transfer_log(make_log(topics=["0x" + "00" * 32, "0x", "0x"]))

    def test_rejects_indexed_amount_variant(self) -> None:
        topics = make_log()["topics"] + ["0x" + "00" * 32]  # type: ignore[operator]
        with pytest.raises(TransferDecodeError):
            decode_transfer_log(make_log(topics=topics))

    def test_rejects_missing_amount(self) -> None:
        with pytest.raises(TransferDecodeError):
            decode_transfer_log(make_log(data="0x"))

    def test_rejects_garbage_data(self) -> None:
        with pytest.raises(TransferDecodeError):
            decode_transfer_log(make_log(data="0xnothex"))

    def test_rejects_missing_address(self) -> None:
        log = make_log()
        del log["address"]
        with pytest.raises(TransferDecodeError):
            decode_transfer_log(log)


class TestFindRecentTransferTokens:
    @pytest.mark.asyncio
    async def test_collects_tokens_from_both_directions(self) -> None:
        client = AsyncMock()
        client.get_block_number = AsyncMock(return_value=5000)
        other = "0x2222222222222222222222222222222222222222"
        client.get_logs = AsyncMock(
            side_effect=[
                [{"address": TOKEN.upper().replace("0X", "0x")}],
                [{"address": other}, {"address": TOKEN}],
            ]
        )

        tokens = await find_recent_transfer_tokens(client, WALLET, blocks=1000)

        assert tokens == {TOKEN, other}
        incoming, outgoing = (call.args[0] for call in client.get_logs.call_args_list)
        assert incoming["fromBlock"] == 4000
        assert incoming["toBlock"] == 5000
        assert incoming["topics"] == [TRANSFER_EVENT_SIGNATURE, None, pad_topic_address(WALLET)]
        assert outgoing["topics"] == [TRANSFER_EVENT_SIGNATURE, pad_topic_address(WALLET), None]

    @pytest.mark.asyncio
    async def test_window_never_goes_below_genesis(self) -> None:
        client = AsyncMock()
        client.get_block_number = AsyncMock(return_value=10)
        client.get_logs = AsyncMock(return_value=[])

        assert await find_recent_transfer_tokens(client, WALLET, blocks=1000) == set()
        assert client.get_logs.call_args_list[0].args[0]["fromBlock"] == 0
