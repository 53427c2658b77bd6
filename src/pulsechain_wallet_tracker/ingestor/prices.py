"""DexScreener USD price quotes for PulseChain tokens."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from pulsechain_wallet_tracker.ingestor.models import NATIVE_TOKEN_ADDRESS, PriceQuote

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.dexscreener.com/latest/dex"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_MIN_LIQUIDITY_USD = Decimal("1000")
CHAIN_ID = "pulsechain"

WPLS_ADDRESS = "0xa1077a294dde1b09bb078844df40758a5d0f9a27"
NATIVE_PLACEHOLDER_ADDRESS = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"

# Ethereum-bridged stablecoins (DAI, USDT, USDC)
STABLECOIN_ADDRESSES = frozenset(
    {
        "0xefd766ccb38eaf1dfd701853bfce31359239f305",
        "0xdac17f958d2ee523a2206206994597c13d831ec7",
        "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",
    }
)


def _decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


@dataclass(frozen=True)
class _Pair:
    price: Decimal
    liquidity_usd: Decimal
    volume_24h: Decimal
    txns_24h: int
    price_change_24h: Decimal | None
    logo: str | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> _Pair | None:
        if data.get("chainId") != CHAIN_ID:
            return None
        price = _decimal(data.get("priceUsd"))
        liquidity = _decimal((data.get("liquidity") or {}).get("usd"))
        if price is None or price <= 0 or liquidity is None:
            return None

        txns = (data.get("txns") or {}).get("h24") or {}
        return cls(
            price=price,
            liquidity_usd=liquidity,
            volume_24h=_decimal((data.get("volume") or {}).get("h24")) or Decimal(0),
            txns_24h=int(txns.get("buys") or 0) + int(txns.get("sells") or 0),
            price_change_24h=_decimal((data.get("priceChange") or {}).get("h24")),
            logo=(data.get("info") or {}).get("imageUrl"),
        )


def score_pair(pair: _Pair, median_price: Decimal | None) -> Decimal:
    """Rank a pair by capped liquidity, volume and activity.

    Pairs priced far from the median of all eligible pairs are penalized.
    """
    score = min(pair.liquidity_usd / 1000, Decimal(1000))
    if pair.volume_24h > 0:
        score += min(pair.volume_24h / 100, Decimal(100))
    score += min(pair.txns_24h, 50)

    if median_price:
        ratio = pair.price / median_price
        if ratio > 100 or ratio < Decimal("0.01"):
            score *= Decimal("0.1")
        elif ratio > 10 or ratio < Decimal("0.1"):
            score *= Decimal("0.5")
    return score


def select_best_pair(
    pairs: list[dict[str, Any]],
    *,
    min_liquidity_usd: Decimal = DEFAULT_MIN_LIQUIDITY_USD,
) -> _Pair | None:
    eligible = [
        pair
        for pair in (_Pair.from_dict(p) for p in pairs if isinstance(p, dict))
        if pair is not None and pair.liquidity_usd >= min_liquidity_usd
    ]
    if not eligible:
        return None

    median_price: Decimal | None = None
    if len(eligible) > 1:
        prices = sorted(pair.price for pair in eligible)
        median_price = prices[len(prices) // 2]

    best: _Pair | None = None
    best_score = Decimal(0)
    for pair in eligible:
        score = score_pair(pair, median_price)
        if score > best_score:
            best, best_score = pair, score
    return best


class DexScreenerPriceClient:
    """Best-effort USD quotes with a short in-process cache.

    `get_price` never raises; a missing or failed quote is `None`.
    """

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        min_liquidity_usd: Decimal = DEFAULT_MIN_LIQUIDITY_USD,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._cache_ttl = cache_ttl_seconds
        self._min_liquidity = min_liquidity_usd
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._cache: dict[str, tuple[float, PriceQuote]] = {}

    @staticmethod
    def _lookup_address(token: str) -> str:
        if token in (NATIVE_TOKEN_ADDRESS, NATIVE_PLACEHOLDER_ADDRESS):
            return WPLS_ADDRESS
        return token

    async def get_price(self, token_address: str) -> PriceQuote | None:
        token = token_address.lower()
        if token in STABLECOIN_ADDRESSES:
            return PriceQuote(price=Decimal(1), price_change_24h=Decimal(0))

        cached = self._cache.get(token)
        if cached is not None and time.monotonic() - cached[0] < self._cache_ttl:
            return cached[1]

        lookup = self._lookup_address(token)
        try:
            response = await self._client.get(f"{self._api_url}/tokens/{lookup}")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("DexScreener price lookup failed for %s: %s", token, e)
            return None

        pairs = data.get("pairs") if isinstance(data, dict) else None
        pair = select_best_pair(pairs or [], min_liquidity_usd=self._min_liquidity)
        if pair is None:
            logger.debug("No eligible DexScreener pair for %s", token)
            return None

        quote = PriceQuote(
            price=pair.price,
            price_change_24h=pair.price_change_24h,
            logo=pair.logo,
        )
        self._cache[token] = (time.monotonic(), quote)
        return quote

    def clear_cache(self) -> None:
        self._cache.clear()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
