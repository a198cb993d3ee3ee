# core/controller.py
from __future__ import annotations
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence

from core.errors import FetchFailed, NotFound, PersistenceParseError, ValidationError
from core.models import CoinRef, Holding, HoldingRow, PriceMap
from core.portfolio import dump_holdings, parse_amount, parse_holdings, valuate
from core.state import SearchState
from utils.logging import get_logger

log = get_logger("portfolio")

HOLDINGS_KEY = "holdings"
SELECTED_COIN_KEY = "selectedCoin"

PRICE_ERROR = "Failed to fetch prices"
NOT_FOUND_ERROR = "Coin not found."


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def remove(self, key: str) -> None: ...


class PriceSource(Protocol):
    def get_price_map(self, ids: Sequence[str], vs_currency: str = "usd") -> PriceMap: ...


@dataclass(frozen=True)
class PortfolioSnapshot:
    rows: tuple[HoldingRow, ...] = ()
    total_value: float = 0.0
    market_value: float = 0.0
    selected_coin: Optional[CoinRef] = None
    search_term: str = ""
    editing_coin_id: Optional[str] = None
    edit_draft: str = ""
    pending_coin_id: Optional[str] = None
    loading: bool = False
    error: Optional[str] = None


def _run_now(fn: Callable[[], Any]) -> None:
    fn()


@dataclass
class _RefreshTicket:
    seq: int
    ids: list[str] = field(default_factory=list)


class PortfolioController:
    """
    Owns the portfolio state: holdings, coin selection, row edit mode and the
    price refresh cycle. Every holdings mutation is written straight back to
    the store. Derived fields come from the last successful price fetch.
    """

    def __init__(self, store: KeyValueStore, client: PriceSource,
                 schedule: Optional[Callable[[Callable[[], Any]], Any]] = None,
                 vs_currency: str = "usd"):
        self._store = store
        self._client = client
        self._schedule = schedule or _run_now
        self.vs_currency = vs_currency

        self._lock = threading.RLock()
        self._holdings: list[Holding] = []
        self._prices: PriceMap = {}
        self._priced_ids: set[str] = set()
        self._symbols: dict[str, str] = {}

        self._search = SearchState()
        self._selected: Optional[CoinRef] = None
        self._pending_coin_id: Optional[str] = None
        self._editing_coin_id: Optional[str] = None
        self._edit_draft = ""

        self._refresh_seq = 0
        self.loading = False
        self.error: Optional[str] = None

    # ---- lifecycle ----

    def initialize(self) -> None:
        with self._lock:
            self._holdings = self._load_holdings()
            self._selected = self._load_selected_coin()
            if self._selected is not None:
                self._search.set(self._selected.name)
        self.refresh_prices()

    def _load_holdings(self) -> list[Holding]:
        try:
            text = self._store.get(HOLDINGS_KEY)
            return parse_holdings(text) if text else []
        except PersistenceParseError as e:
            log.warning("Failed to parse holdings from store: %s", e)
            return []

    def _load_selected_coin(self) -> Optional[CoinRef]:
        try:
            text = self._store.get(SELECTED_COIN_KEY)
            if not text:
                return None
            return CoinRef.from_dict(json.loads(text))
        except (PersistenceParseError, ValueError, TypeError, KeyError, AttributeError) as e:
            log.warning("Failed to parse selectedCoin from store: %s", e)
            return None

    def _persist_holdings(self) -> None:
        self._store.set(HOLDINGS_KEY, dump_holdings(self._holdings))

    def _persist_selected(self) -> None:
        if self._selected is None:
            self._store.remove(SELECTED_COIN_KEY)
        else:
            self._store.set(SELECTED_COIN_KEY, json.dumps(self._selected.to_dict(), ensure_ascii=False))

    # ---- queries ----

    @property
    def holdings(self) -> list[Holding]:
        with self._lock:
            return list(self._holdings)

    def find(self, coin_id: str) -> Optional[Holding]:
        with self._lock:
            return next((h for h in self._holdings if h.coin_id == coin_id), None)

    def remember_symbols(self, coins: Sequence[CoinRef]) -> None:
        """Symbols shown in place of raw ids when the coin list is known."""
        with self._lock:
            self._symbols.update({c.id: c.symbol for c in coins})

    def snapshot(self) -> PortfolioSnapshot:
        with self._lock:
            # quotes for coins outside the last refresh do not count toward market value
            prices = {cid: p for cid, p in self._prices.items() if cid in self._priced_ids}
            valuation = valuate(self._holdings, prices)
            rows = []
            for h, d in zip(self._holdings, valuation.positions):
                symbol = self._symbols.get(h.coin_id, h.coin_id)
                editing = h.coin_id == self._editing_coin_id
                if h.coin_id in self._priced_ids:
                    rows.append(HoldingRow(h.coin_id, symbol, h.invested_usd, d.price, d.coin_amount,
                                           d.total_value, d.market_value, editing))
                else:
                    rows.append(HoldingRow(h.coin_id, symbol, h.invested_usd, editing=editing))
            return PortfolioSnapshot(
                rows=tuple(rows),
                total_value=valuation.total_value,
                market_value=valuation.market_value,
                selected_coin=self._selected,
                search_term=self._search.term,
                editing_coin_id=self._editing_coin_id,
                edit_draft=self._edit_draft,
                pending_coin_id=self._pending_coin_id,
                loading=self.loading,
                error=self.error,
            )

    # ---- mutations ----

    def add_holding(self, coin: CoinRef, invested_usd) -> Holding:
        amount = parse_amount(invested_usd)
        with self._lock:
            if any(h.coin_id == coin.id for h in self._holdings):
                raise ValidationError("Coin already in portfolio. Update amount instead.")
            holding = Holding(coin_id=coin.id, invested_usd=amount)
            self._holdings.append(holding)
            if coin.symbol:
                self._symbols[coin.id] = coin.symbol
            self._selected = None
            self._search.clear()
            self._persist_holdings()
            self._persist_selected()
        log.info("Added %s (%.2f USD)", coin.id, amount)
        self._schedule(self.refresh_prices)
        return holding

    def edit_holding(self, coin_id: str, new_invested_usd) -> Holding:
        amount = parse_amount(new_invested_usd)
        with self._lock:
            idx = next((i for i, h in enumerate(self._holdings) if h.coin_id == coin_id), None)
            if idx is None:
                raise NotFound(f"No holding for '{coin_id}'.")
            holding = Holding(coin_id=coin_id, invested_usd=amount)
            self._holdings[idx] = holding
            if self._editing_coin_id == coin_id:
                self._clear_edit()
            self._persist_holdings()
        # derived fields follow from the last known prices in snapshot()
        return holding

    def delete_holding(self, coin_id: str) -> None:
        with self._lock:
            before = len(self._holdings)
            self._holdings = [h for h in self._holdings if h.coin_id != coin_id]
            if len(self._holdings) == before:
                raise NotFound(f"No holding for '{coin_id}'.")
            if self._editing_coin_id == coin_id:
                self._clear_edit()
            self._priced_ids.discard(coin_id)
            self._persist_holdings()
        log.info("Removed %s", coin_id)

    # ---- row edit mode ----

    def start_edit(self, coin_id: str) -> None:
        with self._lock:
            holding = self.find(coin_id)
            if holding is None:
                raise NotFound(f"No holding for '{coin_id}'.")
            # starting a new edit drops any other in progress
            self._editing_coin_id = coin_id
            self._edit_draft = f"{holding.invested_usd:g}"

    def set_edit_draft(self, text: str) -> None:
        with self._lock:
            self._edit_draft = text

    def cancel_edit(self) -> None:
        with self._lock:
            self._clear_edit()

    def save_edit(self, draft: Optional[str] = None) -> Holding:
        with self._lock:
            if self._editing_coin_id is None:
                raise ValidationError("No holding is being edited.")
            text = self._edit_draft if draft is None else draft
            # invalid drafts raise and keep the row in edit mode
            return self.edit_holding(self._editing_coin_id, text)

    def _clear_edit(self) -> None:
        self._editing_coin_id = None
        self._edit_draft = ""

    # ---- selection / search ----

    def set_search_term(self, term: str) -> None:
        with self._lock:
            self._search.set(term)
            self._selected = None
            self._persist_selected()

    def select_coin(self, coin: Optional[CoinRef]) -> None:
        with self._lock:
            self._selected = coin
            self._search.set(coin.name if coin else "")
            self._persist_selected()

    def matching_coins(self, available_coins: Sequence[CoinRef], limit: int = 10) -> list[CoinRef]:
        """Dropdown matches; empty unless a term is typed and nothing is selected."""
        with self._lock:
            if not self._search.term or self._selected is not None:
                return []
            return self._search.filter(available_coins)[:limit]

    def resolve_pending_coin_selection(self, coin_id: Optional[str],
                                       available_coins: Sequence[CoinRef]) -> Optional[CoinRef]:
        """
        Select the coin named by a navigation parameter. The parameter is
        consumed on a match; an unknown id sets the "coin not found" error.
        With no coins loaded yet the id stays pending.
        """
        with self._lock:
            if coin_id:
                self._pending_coin_id = coin_id
            pending = self._pending_coin_id
            if not pending or not available_coins:
                return None
            coin = next((c for c in available_coins if c.id == pending), None)
            if coin is None:
                self.error = NOT_FOUND_ERROR
                return None
            self.select_coin(coin)
            self._pending_coin_id = None
            if self.error == NOT_FOUND_ERROR:
                self.error = None
            return coin

    # ---- prices ----

    def _begin_refresh(self) -> Optional[_RefreshTicket]:
        with self._lock:
            self._refresh_seq += 1
            ids = [h.coin_id for h in self._holdings]
            if not ids:
                self.loading = False
                return None
            self.loading = True
            self.error = None
            return _RefreshTicket(self._refresh_seq, ids)

    def refresh_prices(self) -> bool:
        """
        Fetch quotes for every holding and re-derive. Returns True when this
        response was applied; False on failure or when a newer refresh
        superseded it. Fetch errors land in ``error`` and are not raised.
        """
        ticket = self._begin_refresh()
        if ticket is None:
            return False
        try:
            prices = self._client.get_price_map(ticket.ids, self.vs_currency)
        except FetchFailed as e:
            log.warning("Price refresh #%d failed: %s", ticket.seq, e)
            with self._lock:
                if ticket.seq == self._refresh_seq:
                    self.error = PRICE_ERROR
                    self.loading = False
            return False

        with self._lock:
            if ticket.seq != self._refresh_seq:
                log.info("Discarding stale price response #%d (latest #%d)", ticket.seq, self._refresh_seq)
                return False
            self._prices = dict(prices)
            self._priced_ids = set(ticket.ids)
            self.loading = False
            return True
