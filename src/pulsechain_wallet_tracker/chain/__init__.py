"""Chain access layer - PulseChain JSON-RPC reads with endpoint failover."""

from pulsechain_wallet_tracker.chain.client import (
    PulseChainClient,
    PulseChainClientError,
    RPCError,
)
from pulsechain_wallet_tracker.chain.models import TokenMetadata
from pulsechain_wallet_tracker.chain.transfers import (
    TRANSFER_EVENT_SIGNATURE,
    DecodedTransfer,
    TransferDecodeError,
    normalize_address,
)

__all__ = [
    "PulseChainClient",
    "PulseChainClientError",
    "RPCError",
    "TokenMetadata",
    "TRANSFER_EVENT_SIGNATURE",
    "DecodedTransfer",
    "TransferDecodeError",
    "normalize_address",
]
