"""Balance cache - cached entries, keyed locking and status models.

The manager lives in `pulsechain_wallet_tracker.cache.manager`.
"""

from pulsechain_wallet_tracker.cache.locks import KeyedLock
from pulsechain_wallet_tracker.cache.models import (
    BalanceUpdated,
    CachedTokenBalance,
    CacheStatus,
    ReconciliationStats,
    TokenMetadata,
)

__all__ = [
    "BalanceUpdated",
    "CacheStatus",
    "CachedTokenBalance",
    "KeyedLock",
    "ReconciliationStats",
    "TokenMetadata",
]
