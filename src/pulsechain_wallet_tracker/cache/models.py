"""Data models for the balance cache."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Literal

from pulsechain_wallet_tracker.chain.models import TokenMetadata
from pulsechain_wallet_tracker.ingestor.models import format_units

UpdateSource = Literal["reconciliation"]

__all__ = [
    "BalanceUpdated",
    "CacheStatus",
    "CachedTokenBalance",
    "ReconciliationStats",
    "TokenMetadata",
    "UpdateSource",
]


@dataclass
class CachedTokenBalance:
    """Cached balance for one (wallet, token) key.

    `last_updated_block` is the chain height at which the value was last
    confirmed by an on-chain read; 0 means it came from the indexer.
    """

    raw_balance: str
    formatted_balance: Decimal
    decimals: int | None = None
    last_updated_block: int = 0
    last_updated_timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_raw(
        cls,
        raw_balance: str,
        decimals: int | None,
        *,
        block_number: int = 0,
    ) -> CachedTokenBalance:
        formatted = format_units(raw_balance, decimals) if decimals is not None else Decimal(0)
        return cls(
            raw_balance=str(raw_balance),
            formatted_balance=formatted,
            decimals=decimals,
            last_updated_block=block_number,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "raw_balance": self.raw_balance,
            "formatted_balance": format(self.formatted_balance, "f"),
            "decimals": self.decimals,
            "last_updated_block": self.last_updated_block,
            "last_updated_timestamp": self.last_updated_timestamp,
        }


@dataclass(frozen=True)
class BalanceUpdated:
    """Notification published whenever a cached balance is applied or corrected."""

    wallet: str
    token: str
    balance: str
    formatted_balance: Decimal
    source: UpdateSource | None = None
    previous_balance: str | None = None


@dataclass(frozen=True)
class CacheStatus:
    is_websocket_connected: bool
    tracked_wallets: int
    total_tokens: int
    cache_size: int
    is_reconciling: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationStats:
    """Counters for reconciliation sweeps."""

    sweeps_completed: int = 0
    wallets_reconciled: int = 0
    wallets_failed: int = 0
    mismatches: int = 0
    event_overwrites: int = 0
    stale_overwrites: int = 0
    new_tokens: int = 0
    last_sweep_at: float | None = None
    last_duration_seconds: float | None = None
    last_error: str | None = None
