"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Context, Decimal
from enum import Enum
from typing import Any

# Enough digits for any uint256 at any decimal count.
_UNITS_CONTEXT = Context(prec=100)

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_DECIMALS = 18


def format_units(raw: int | str, decimals: int) -> Decimal:
    """Scale a raw integer amount by `10 ** -decimals` without rounding.

    >>> format(format_units("1000", 18), "f")
    '0.000000000000001000'
    """
    return Decimal(int(raw)).scaleb(-decimals, _UNITS_CONTEXT)


class TransferDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


@dataclass
class TokenBalance:
    """A token holding of one wallet, as returned to callers.

    `balance` is the raw integer amount as a string. Prices are optional and
    attached after the fact.
    """

    address: str
    symbol: str
    name: str
    decimals: int
    balance: str
    balance_formatted: Decimal
    price: Decimal | None = None
    value: Decimal | None = None
    price_change_24h: Decimal | None = None
    logo: str | None = None
    is_native: bool = False
    is_lp: bool = False
    verified: bool = False

    @classmethod
    def from_raw(
        cls,
        *,
        address: str,
        symbol: str,
        name: str,
        decimals: int,
        balance: int | str,
        is_native: bool = False,
        verified: bool = False,
    ) -> TokenBalance:
        return cls(
            address=address.lower(),
            symbol=symbol,
            name=name,
            decimals=decimals,
            balance=str(int(balance)),
            balance_formatted=format_units(balance, decimals),
            is_native=is_native,
            verified=verified,
            is_lp=symbol.upper() in {"PLP", "UNI-V2"},
        )

    @classmethod
    def from_scanner_item(cls, item: dict[str, Any]) -> TokenBalance | None:
        """Build from a PulseChain Scan `token-balances` item.

        Returns None for zero balances and tokens without usable decimals.
        """
        token = item.get("token") or {}
        address = token.get("address") or token.get("address_hash")
        value = item.get("value")
        if not address or value in (None, "", "0"):
            return None

        decimals = token.get("decimals")
        if decimals in (None, ""):
            return None
        try:
            decimals_int = int(decimals)
            raw = int(value)
        except (TypeError, ValueError):
            return None
        if raw == 0:
            return None

        return cls.from_raw(
            address=str(address),
            symbol=str(token.get("symbol") or "UNKNOWN"),
            name=str(token.get("name") or "Unknown Token"),
            decimals=decimals_int,
            balance=raw,
            verified=token.get("type") == "ERC-20",
        )

    def with_price(self, quote: PriceQuote | None) -> TokenBalance:
        if quote is None:
            return replace(self)
        return replace(
            self,
            price=quote.price,
            value=self.balance_formatted * quote.price,
            price_change_24h=quote.price_change_24h,
            logo=quote.logo or self.logo,
        )

    def to_dict(self) -> dict[str, Any]:
        def _num(value: Decimal | None) -> str | None:
            return format(value, "f") if value is not None else None

        return {
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "decimals": self.decimals,
            "balance": self.balance,
            "balance_formatted": _num(self.balance_formatted),
            "price": _num(self.price),
            "value": _num(self.value),
            "price_change_24h": _num(self.price_change_24h),
            "logo": self.logo,
            "is_native": self.is_native,
            "is_lp": self.is_lp,
            "verified": self.verified,
        }


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    price_change_24h: Decimal | None = None
    logo: str | None = None


@dataclass(frozen=True)
class TransferEvent:
    """A Transfer log classified relative to a tracked wallet."""

    wallet: str
    token: str
    amount: int
    direction: TransferDirection
    block_number: int
    tx_hash: str
    from_address: str
    to_address: str


@dataclass(frozen=True)
class BalanceUpdate:
    """Fresh on-chain balance read after a transfer."""

    wallet: str
    token: str
    balance: str
    formatted_balance: Decimal
    decimals: int
    block_number: int
    timestamp: float = field(default=0.0)
