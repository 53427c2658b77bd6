"""Data ingestion layer - bulk balances, prices and live transfer streaming."""

from pulsechain_wallet_tracker.ingestor.models import (
    BalanceUpdate,
    PriceQuote,
    TokenBalance,
    TransferDirection,
    TransferEvent,
    format_units,
)
from pulsechain_wallet_tracker.ingestor.prices import DexScreenerPriceClient
from pulsechain_wallet_tracker.ingestor.scanner import PulseChainScanClient, ScannerError
from pulsechain_wallet_tracker.ingestor.transfer_stream import (
    ConnectionState,
    LiveTransferWatcher,
    TransferWatcherError,
    WatcherConnectionError,
    WatcherRequestError,
    WatcherStats,
)

__all__ = [
    "BalanceUpdate",
    "ConnectionState",
    "DexScreenerPriceClient",
    "LiveTransferWatcher",
    "PriceQuote",
    "PulseChainScanClient",
    "ScannerError",
    "TokenBalance",
    "TransferDirection",
    "TransferEvent",
    "TransferWatcherError",
    "WatcherConnectionError",
    "WatcherRequestError",
    "WatcherStats",
    "format_units",
]
