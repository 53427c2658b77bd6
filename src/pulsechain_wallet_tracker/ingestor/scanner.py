"""PulseChain Scan client for bulk wallet balances.

The scanner is the bulk balance source: it seeds the cache on a cold read and
serves as ground truth for reconciliation. It is eventually consistent, so
tokens that moved recently are cross-checked against on-chain Transfer logs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import httpx

from pulsechain_wallet_tracker.chain.transfers import find_recent_transfer_tokens
from pulsechain_wallet_tracker.ingestor.models import (
    NATIVE_DECIMALS,
    NATIVE_TOKEN_ADDRESS,
    TokenBalance,
)

if TYPE_CHECKING:
    from pulsechain_wallet_tracker.chain.client import PulseChainClient

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.scan.pulsechain.com/api/v2"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_RECENT_BLOCKS = 1000

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class ScannerError(Exception):
    """Raised when the scanner cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PulseChainScanClient:
    """Fetches every current token balance of a wallet.

    Example:
        ```python
        scanner = PulseChainScanClient(chain=client)
        balances = await scanner.fetch_wallet_balances("0xabc...")
        ```
    """

    def __init__(
        self,
        *,
        chain: PulseChainClient | None = None,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        recent_blocks_to_scan: int = DEFAULT_RECENT_BLOCKS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the scanner client.

        Args:
            chain: Chain reader for the native fallback and recent-transfer supplement.
            api_url: PulseChain Scan v2 API base URL.
            timeout_seconds: HTTP timeout per request.
            max_retries: Attempts per request for 429/5xx and transport errors.
            base_delay_seconds: Backoff base; doubles after each failed attempt.
            recent_blocks_to_scan: Transfer-log window for the supplement (0 disables).
            http_client: Preconfigured client; when given, the caller owns it.
        """
        self._chain = chain
        self._api_url = api_url.rstrip("/")
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay_seconds
        self._recent_blocks = recent_blocks_to_scan
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self._api_url}{path}"
        last_error: str | None = None
        status_code: int | None = None

        for attempt in range(1, self._max_retries + 1):
            try:
                response = await self._client.get(url, params=params)
            except httpx.TransportError as e:
                last_error = str(e) or type(e).__name__
                status_code = None
            else:
                if response.status_code not in RETRY_STATUS_CODES:
                    if response.is_error:
                        raise ScannerError(
                            f"Scanner request {path} failed with HTTP {response.status_code}",
                            status_code=response.status_code,
                        )
                    try:
                        return response.json()
                    except ValueError as e:
                        raise ScannerError(
                            f"Scanner request {path} returned invalid JSON",
                            status_code=response.status_code,
                        ) from e
                last_error = f"HTTP {response.status_code}"
                status_code = response.status_code

            if attempt < self._max_retries:
                delay = self._base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Scanner request %s failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                    path,
                    attempt,
                    self._max_retries,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        raise ScannerError(
            f"Scanner request {path} failed after {self._max_retries} attempts: {last_error}",
            status_code=status_code,
        )

    async def fetch_token_balances(self, wallet: str) -> list[TokenBalance]:
        """Non-zero ERC20 balances known to the scanner."""
        data = await self._get_json(f"/addresses/{wallet}/token-balances")
        items = data.get("items", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ScannerError(f"Unexpected token-balances payload for {wallet}")

        balances: list[TokenBalance] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            balance = TokenBalance.from_scanner_item(item)
            if balance is not None:
                balances.append(balance)
        return balances

    async def fetch_native_balance(self, wallet: str) -> TokenBalance | None:
        """Native PLS balance, or None when it is zero or unavailable."""
        raw: int | None = None
        try:
            info = await self._get_json(f"/addresses/{wallet}")
            coin_balance = info.get("coin_balance") if isinstance(info, dict) else None
            if coin_balance not in (None, ""):
                raw = int(coin_balance)
        except (ScannerError, ValueError, TypeError) as e:
            logger.warning("Scanner wallet info failed for %s: %s", wallet, e)

        if raw is None and self._chain is not None:
            try:
                raw = await self._chain.get_balance(wallet)
            except Exception as e:
                logger.warning("Native balance fallback failed for %s: %s", wallet, e)
                return None

        if not raw:
            return None
        return TokenBalance.from_raw(
            address=NATIVE_TOKEN_ADDRESS,
            symbol="PLS",
            name="PulseChain",
            decimals=NATIVE_DECIMALS,
            balance=raw,
            is_native=True,
            verified=True,
        )

    async def _supplement_recent_tokens(
        self,
        wallet: str,
        known: set[str],
    ) -> list[TokenBalance]:
        if self._chain is None or self._recent_blocks <= 0:
            return []

        chain = self._chain
        try:
            tokens = await find_recent_transfer_tokens(chain, wallet, blocks=self._recent_blocks)
        except Exception as e:
            logger.warning("Recent transfer scan failed for %s: %s", wallet, e)
            return []

        missing = sorted(tokens - known)
        if not missing:
            return []

        async def read(token: str) -> TokenBalance | None:
            try:
                raw, metadata = await asyncio.gather(
                    chain.get_token_balance(wallet, token),
                    chain.get_token_metadata(token),
                )
            except Exception as e:
                logger.debug("Skipping recent token %s for %s: %s", token, wallet, e)
                return None
            if raw <= 0:
                return None
            return TokenBalance.from_raw(
                address=token,
                symbol=metadata.symbol,
                name=metadata.name,
                decimals=metadata.decimals,
                balance=raw,
            )

        results = await asyncio.gather(*(read(token) for token in missing))
        found = [balance for balance in results if balance is not None]
        if found:
            logger.info(
                "Found %d recently transferred tokens missing from scanner for %s",
                len(found),
                wallet,
            )
        return found

    async def fetch_wallet_balances(self, wallet: str) -> list[TokenBalance]:
        """Every current non-zero balance of `wallet`, native PLS first.

        Raises:
            ScannerError: If the token-balances request fails.
        """
        wallet = wallet.lower()
        tokens, native = await asyncio.gather(
            self.fetch_token_balances(wallet),
            self.fetch_native_balance(wallet),
        )
        known = {balance.address for balance in tokens}
        tokens.extend(await self._supplement_recent_tokens(wallet, known))

        logger.debug("Fetched %d token balances for %s", len(tokens), wallet)
        return [native, *tokens] if native is not None else tokens

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
