"""Data models for chain reads."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TokenMetadata:
    """Token metadata; immutable for a given token address."""

    symbol: str
    name: str
    decimals: int

    def to_dict(self) -> dict[str, Any]:
        return {"symbol": self.symbol, "name": self.name, "decimals": self.decimals}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenMetadata:
        return cls(
            symbol=str(data["symbol"]),
            name=str(data["name"]),
            decimals=int(data["decimals"]),
        )
