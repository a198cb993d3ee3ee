# core/state.py
from __future__ import annotations
from typing import Any, Optional, Sequence

from rich.theme import Theme

from core.errors import FetchFailed, ValidationError
from core.models import CoinRef
from utils.logging import get_logger

log = get_logger("state")

SUPPORTED_CURRENCIES = ("usd", "eur", "btc")
CURRENCY_PREFIX = {"usd": "$", "eur": "€", "btc": "₿"}

LIGHT_THEME = Theme({"up": "green", "down": "red", "muted": "grey50", "title": "bold blue", "error": "bold red"})
DARK_THEME = Theme({"up": "bright_green", "down": "bright_red", "muted": "grey70", "title": "bold cyan", "error": "bold bright_red"})


class CurrencyState:
    """Selected quote currency, validated against the supported set."""

    def __init__(self, currency: str = "usd"):
        self.currency = self._check(currency)

    @staticmethod
    def _check(currency: str) -> str:
        c = (currency or "").strip().lower()
        if c not in SUPPORTED_CURRENCIES:
            raise ValidationError(
                f"Unsupported currency '{currency}'. Allowed: {', '.join(SUPPORTED_CURRENCIES)}"
            )
        return c

    @property
    def prefix(self) -> str:
        return CURRENCY_PREFIX.get(self.currency, "")


class ThemeState:
    def __init__(self, dark_mode: bool = False):
        self.dark_mode = bool(dark_mode)

    def toggle(self) -> bool:
        self.dark_mode = not self.dark_mode
        return self.dark_mode

    @property
    def theme(self) -> Theme:
        return DARK_THEME if self.dark_mode else LIGHT_THEME


class SearchState:
    def __init__(self, term: str = ""):
        self.term = term or ""

    def set(self, term: Optional[str]) -> None:
        self.term = term or ""

    def clear(self) -> None:
        self.term = ""

    def matches(self, name: str, symbol: str) -> bool:
        t = self.term.lower()
        return t in (name or "").lower() or t in (symbol or "").lower()

    def filter(self, coins: Sequence[Any]) -> list:
        """Case-insensitive substring match on name or symbol (CoinRef or market row dicts)."""
        if not self.term:
            return list(coins)
        out = []
        for c in coins:
            if isinstance(c, dict):
                name, symbol = c.get("name", ""), c.get("symbol", "")
            else:
                name, symbol = c.name, c.symbol
            if self.matches(name, symbol):
                out.append(c)
        return out


class CoinCatalog:
    """
    Top coins by market cap for the current currency. ``load()`` fetches the
    list; a failed fetch is kept in ``error``.
    """

    def __init__(self, client, currency: CurrencyState, per_page: int = 50):
        self._client = client
        self._currency = currency
        self.per_page = per_page
        self.rows: list[dict] = []
        self.loading = False
        self.error: Optional[str] = None

    @property
    def coins(self) -> list[CoinRef]:
        return [CoinRef.from_dict(r) for r in self.rows if r.get("id")]

    def load(self, sparkline: bool = False, price_change: Optional[Sequence[str]] = None) -> bool:
        self.loading = True
        try:
            self.rows = self._client.list_coins(
                self._currency.currency, per_page=self.per_page,
                sparkline=sparkline, price_change=price_change,
            )
            self.error = None
            return True
        except FetchFailed as e:
            log.warning("Coin list fetch failed: %s", e)
            self.error = "Failed to load coin list"
            return False
        finally:
            self.loading = False

    def find(self, coin_id: str) -> Optional[CoinRef]:
        return next((c for c in self.coins if c.id == coin_id), None)
