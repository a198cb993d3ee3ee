# core/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

# coin id -> price in the quote currency
PriceMap = Dict[str, float]


@dataclass(frozen=True)
class CoinRef:
    id: str
    symbol: str
    name: str

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "CoinRef":
        return cls(id=str(d["id"]), symbol=str(d.get("symbol", "")), name=str(d.get("name", "")))

    def to_dict(self) -> dict:
        return {"id": self.id, "symbol": self.symbol, "name": self.name}

    @property
    def label(self) -> str:
        return f"{self.name} ({self.symbol.upper()})"


@dataclass(frozen=True)
class Holding:
    coin_id: str
    invested_usd: float

    def to_dict(self) -> dict:
        # persisted shape; derived fields never reach storage
        return {"coinId": self.coin_id, "investedUSD": self.invested_usd}


@dataclass(frozen=True)
class DerivedHolding:
    coin_id: str
    invested_usd: float
    price: float
    coin_amount: float
    total_value: float

    @property
    def market_value(self) -> float:
        """Mark-to-market value; ``total_value`` stays at cost basis."""
        return self.coin_amount * self.price


@dataclass
class Valuation:
    positions: list[DerivedHolding] = field(default_factory=list)
    total_value: float = 0.0
    market_value: float = 0.0


@dataclass(frozen=True)
class HoldingRow:
    """One portfolio table row; derived fields are None until a quote was requested."""
    coin_id: str
    symbol: str
    invested_usd: float
    price: Optional[float] = None
    coin_amount: Optional[float] = None
    total_value: Optional[float] = None
    market_value: Optional[float] = None
    editing: bool = False
