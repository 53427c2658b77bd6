"""ERC20 Transfer log helpers.

Address normalization, topic (de)padding, and decoding of raw
`Transfer(address,address,uint256)` logs as delivered either by
`eth_getLogs` through web3 (ints / HexBytes) or by an `eth_subscribe`
WebSocket notification (hex strings).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pulsechain_wallet_tracker.chain.client import PulseChainClient

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_SIGNATURE = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class TransferDecodeError(ValueError):
    """Raised when a log is not a well-formed ERC20 Transfer."""


def normalize_address(address: str) -> str:
    """Lowercase and validate a 20-byte hex address."""
    if not isinstance(address, str):
        raise ValueError(f"address must be a string, got: {type(address)}")
    normalized = address.strip().lower()
    if not normalized.startswith("0x") or len(normalized) != 42:
        raise ValueError(f"invalid address format: {address}")
    try:
        int(normalized[2:], 16)
    except ValueError as e:
        raise ValueError(f"invalid address format: {address}") from e
    return normalized


def pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def _to_hex(value: Any) -> str:
    # HexBytes.hex() dropped the 0x prefix in hexbytes 1.x; normalize both.
    hexed = value.hex() if hasattr(value, "hex") and not isinstance(value, str) else str(value)
    hexed = hexed.lower()
    return hexed if hexed.startswith("0x") else "0x" + hexed


def topic_to_address(topic: Any) -> str:
    hexed = _to_hex(topic)[2:]
    if len(hexed) < 40:
        raise TransferDecodeError(f"topic too short for an address: {topic!r}")
    return ("0x" + hexed[-40:]).lower()


def parse_quantity(value: Any) -> int:
    """Parse a JSON-RPC quantity (int or 0x-prefixed hex string)."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise TransferDecodeError(f"unsupported quantity: {value!r}")


@dataclass(frozen=True)
class DecodedTransfer:
    token_address: str
    from_address: str
    to_address: str
    amount: int
    block_number: int
    tx_hash: str
    log_index: int = 0


def decode_transfer_log(log: Mapping[str, Any]) -> DecodedTransfer:
    """Decode a raw Transfer log.

    Raises:
        TransferDecodeError: If the log is not a standard (3-topic) Transfer.
    """
    try:
        topics = [_to_hex(t) for t in log.get("topics") or []]
        if len(topics) != 3:
            raise TransferDecodeError(f"expected 3 topics, got {len(topics)}")
        if topics[0] != TRANSFER_EVENT_SIGNATURE:
            raise TransferDecodeError(f"not a Transfer event: {topics[0]}")

        data = _to_hex(log.get("data") or "0x")
        if len(data) <= 2:
            raise TransferDecodeError("missing transfer amount")

        return DecodedTransfer(
            token_address=normalize_address(_to_hex(log["address"])),
            from_address=topic_to_address(topics[1]),
            to_address=topic_to_address(topics[2]),
            amount=int(data[2:], 16),
            block_number=parse_quantity(log.get("blockNumber")),
            tx_hash=_to_hex(log.get("transactionHash") or "0x"),
            log_index=parse_quantity(log.get("logIndex")),
        )
    except TransferDecodeError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise TransferDecodeError(f"malformed transfer log: {e}") from e


async def find_recent_transfer_tokens(
    client: PulseChainClient,
    wallet: str,
    *,
    blocks: int,
) -> set[str]:
    """Token contracts that moved value to or from `wallet` in the last `blocks` blocks."""
    wallet = normalize_address(wallet)
    current_block = await client.get_block_number()
    from_block = max(0, current_block - blocks)
    padded = pad_topic_address(wallet)

    incoming, outgoing = await asyncio.gather(
        client.get_logs(
            {
                "fromBlock": from_block,
                "toBlock": current_block,
                "topics": [TRANSFER_EVENT_SIGNATURE, None, padded],
            }
        ),
        client.get_logs(
            {
                "fromBlock": from_block,
                "toBlock": current_block,
                "topics": [TRANSFER_EVENT_SIGNATURE, padded, None],
            }
        ),
    )

    tokens: set[str] = set()
    for log in [*incoming, *outgoing]:
        address = log.get("address")
        if address:
            tokens.add(_to_hex(address) if not isinstance(address, str) else address.lower())
    logger.debug("Found %d tokens in the last %d blocks for %s", len(tokens), blocks, wallet)
    return tokens
