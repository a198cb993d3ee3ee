# core/portfolio.py
import json
import math
from typing import Iterable, Mapping, Sequence

from core.errors import PersistenceParseError, ValidationError
from core.models import DerivedHolding, Holding, Valuation


def parse_amount(value) -> float:
    """Accept a number or numeric string; must be finite and > 0."""
    if isinstance(value, bool):
        raise ValidationError("Please enter a valid amount in USD.")
    try:
        amount = float(str(value).strip().replace(",", "")) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        raise ValidationError("Please enter a valid amount in USD.")
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("Please enter a valid amount in USD.")
    return amount


def derive_one(holding: Holding, prices: Mapping[str, float]) -> DerivedHolding:
    price = float(prices.get(holding.coin_id) or 0)
    coin_amount = holding.invested_usd / price if price > 0 else 0.0
    return DerivedHolding(
        coin_id=holding.coin_id,
        invested_usd=holding.invested_usd,
        price=price,
        coin_amount=coin_amount,
        # cost basis, not mark-to-market; see market_value
        total_value=holding.invested_usd,
    )


def derive(holdings: Sequence[Holding], prices: Mapping[str, float]) -> list[DerivedHolding]:
    """One derived row per holding, same order. Pure."""
    return [derive_one(h, prices) for h in holdings]


def total_portfolio_value(rows: Iterable[DerivedHolding]) -> float:
    return sum(r.total_value for r in rows)


def valuate(holdings: Sequence[Holding], prices: Mapping[str, float]) -> Valuation:
    """Compute per-holding derived fields plus cost-basis and market totals."""
    positions = derive(holdings, prices)
    return Valuation(
        positions=positions,
        total_value=total_portfolio_value(positions),
        market_value=sum(p.market_value for p in positions),
    )


def dump_holdings(holdings: Iterable[Holding]) -> str:
    return json.dumps([h.to_dict() for h in holdings], ensure_ascii=False)


def parse_holdings(text: str) -> list[Holding]:
    """
    Decode the persisted holdings list. Raises PersistenceParseError when the
    text is not JSON or not a list of {coinId, investedUSD} records.
    Later duplicates of a coin id are dropped.
    """
    try:
        raw = json.loads(text)
    except (TypeError, ValueError) as e:
        raise PersistenceParseError(f"holdings is not valid JSON: {e}") from e
    if not isinstance(raw, list):
        raise PersistenceParseError("holdings must be a JSON list")

    out: list[Holding] = []
    seen: set[str] = set()
    for item in raw:
        if not isinstance(item, dict) or "coinId" not in item:
            raise PersistenceParseError(f"bad holding record: {item!r}")
        coin_id = str(item["coinId"])
        try:
            invested = parse_amount(item.get("investedUSD"))
        except ValidationError as e:
            raise PersistenceParseError(f"bad amount for {coin_id}: {item.get('investedUSD')!r}") from e
        if coin_id in seen:
            continue
        seen.add(coin_id)
        out.append(Holding(coin_id=coin_id, invested_usd=invested))
    return out
