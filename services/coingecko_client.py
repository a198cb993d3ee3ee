# services/coingecko_client.py
from __future__ import annotations
import time, random
from typing import Sequence, Dict, Any, Optional
import requests
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone

from core.errors import FetchFailed
from core.models import PriceMap
from utils.logging import get_logger

log = get_logger("coingecko")

API_BASE = "https://api.coingecko.com/api/v3"

# Resilience tuning
MAX_RETRIES = 5                 # total attempts (first try + 4 retries)
BASE_BACKOFF = 0.6              # seconds (exponential)
MAX_BACKOFF = 8.0               # cap seconds
JITTER_RANGE = (0.0, 0.35)      # random jitter added to backoff


def _parse_retry_after(header_val: Optional[str]) -> float:
    """
    Returns seconds to wait per RFC7231 Retry-After:
      - if number: seconds
      - if HTTP-date: difference from now
      - else: 0
    """
    if not header_val:
        return 0.0
    header_val = header_val.strip()
    if header_val.isdigit():
        return max(0.0, float(int(header_val)))
    try:
        dt = parsedate_to_datetime(header_val)
    except (TypeError, ValueError):
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = (dt - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delta)


def _sleep_backoff(attempt: int, retry_after_hdr: Optional[str]) -> None:
    # Prefer server’s Retry-After if present and non-zero
    ra = _parse_retry_after(retry_after_hdr)
    if ra > 0:
        time.sleep(min(ra, MAX_BACKOFF * 4))
        return
    delay = min(MAX_BACKOFF, BASE_BACKOFF * (2 ** attempt))
    delay += random.uniform(*JITTER_RANGE)
    time.sleep(delay)


class CoinGeckoClient:
    """
    Thin CoinGecko v3 wrapper. Every call returns parsed JSON or raises
    FetchFailed; retries 429/5xx/timeouts with backoff + jitter.
    """

    def __init__(self, session: Optional[requests.Session] = None,
                 base_url: str = API_BASE,
                 timeout: tuple[float, float] = (3.0, 10.0),
                 max_retries: int = MAX_RETRIES):
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        last_exc: Optional[Exception] = None
        last_status: Optional[int] = None

        for attempt in range(self.max_retries):
            t0 = time.perf_counter()
            try:
                r = self.session.get(url, params=params, timeout=self.timeout)
            except requests.Timeout as e:
                last_exc = e
                log.warning("Timeout on %s attempt %d. Retrying...", path, attempt + 1)
                _sleep_backoff(attempt, None)
                continue
            except requests.RequestException as e:
                last_exc = e
                log.warning("%s on %s attempt %d. Retrying...", type(e).__name__, path, attempt + 1)
                _sleep_backoff(attempt, None)
                continue

            elapsed_ms = (time.perf_counter() - t0) * 1000.0
            last_status = r.status_code

            # Rate limited
            if r.status_code == 429:
                ra = r.headers.get("Retry-After")
                log.warning("429 Too Many Requests on %s (%.1f ms). Retry-After=%s", path, elapsed_ms, ra)
                _sleep_backoff(attempt, ra)
                continue

            # Transient 5xx
            if 500 <= r.status_code < 600:
                log.warning("%s on %s attempt %d (%.1f ms). Retrying...",
                            r.status_code, path, attempt + 1, elapsed_ms)
                _sleep_backoff(attempt, r.headers.get("Retry-After"))
                continue

            # Other errors are not worth retrying
            if r.status_code >= 400:
                log.error("%s on %s (%.1f ms).", r.status_code, path, elapsed_ms)
                raise FetchFailed(f"HTTP {r.status_code} for {path}", status=r.status_code, url=url)

            try:
                data = r.json()
            except ValueError as e:
                raise FetchFailed(f"Invalid JSON from {path}", status=r.status_code, cause=e, url=url) from e
            log.info("GET %s in %.1f ms (status %d).", path, elapsed_ms, r.status_code)
            return data

        # Exhausted retries
        msg = f"Request to {path} failed after {self.max_retries} attempts."
        if last_exc is not None and last_status is None:
            msg += f" Last error: {type(last_exc).__name__}"
        elif last_status is not None:
            msg += f" Last status: {last_status}"
        log.error(msg)
        raise FetchFailed(msg, status=last_status, cause=last_exc, url=url)

    # ---- endpoints ----

    def list_coins(self, vs_currency: str = "usd", per_page: int = 50, page: int = 1,
                   sparkline: bool = False, price_change: Optional[Sequence[str]] = None,
                   ids: Optional[Sequence[str]] = None) -> list[Dict[str, Any]]:
        """Market rows ordered by market cap (``/coins/markets``)."""
        params: Dict[str, Any] = {
            "vs_currency": vs_currency,
            "order": "market_cap_desc",
            "per_page": per_page,
            "page": page,
            "sparkline": "true" if sparkline else "false",
        }
        if price_change:
            params["price_change_percentage"] = ",".join(price_change)
        if ids:
            params["ids"] = ",".join(ids)
        data = self._get_json("/coins/markets", params)
        if not isinstance(data, list):
            raise FetchFailed("Unexpected coin list payload", url=f"{self.base_url}/coins/markets")
        return data

    def get_prices(self, ids: Sequence[str], vs_currency: str = "usd") -> Dict[str, Any]:
        """Returns e.g. {"bitcoin":{"usd":12345.67}, ...}"""
        if not ids:
            return {}
        params = {"ids": ",".join(ids), "vs_currencies": vs_currency}
        data = self._get_json("/simple/price", params)
        if not isinstance(data, dict):
            raise FetchFailed("Unexpected price payload", url=f"{self.base_url}/simple/price")
        return data

    def get_price_map(self, ids: Sequence[str], vs_currency: str = "usd") -> PriceMap:
        """Flat coin id -> price; ids the API has no quote for are left out."""
        raw = self.get_prices(ids, vs_currency)
        out: PriceMap = {}
        for cid in ids:
            entry = raw.get(cid)
            if entry is None:
                continue
            if not isinstance(entry, dict):
                raise FetchFailed(f"Unexpected price entry for {cid}: {entry!r}",
                                  url=f"{self.base_url}/simple/price")
            val = entry.get(vs_currency)
            if isinstance(val, (int, float)) and not isinstance(val, bool):
                out[cid] = float(val)
        return out

    def get_trending_ids(self) -> list[str]:
        data = self._get_json("/search/trending")
        coins = data.get("coins") if isinstance(data, dict) else None
        if not isinstance(coins, list):
            raise FetchFailed("Unexpected trending payload", url=f"{self.base_url}/search/trending")
        ids = []
        for c in coins:
            item = c.get("item") if isinstance(c, dict) else None
            if isinstance(item, dict) and item.get("id"):
                ids.append(str(item["id"]))
        return ids

    def get_trending(self, vs_currency: str = "usd") -> list[Dict[str, Any]]:
        """Market rows (with 7d sparkline and 1h/24h/7d change) for trending coins."""
        ids = self.get_trending_ids()
        if not ids:
            return []
        return self.list_coins(vs_currency, per_page=len(ids), sparkline=True,
                               price_change=("1h", "24h", "7d"), ids=ids)

    def get_market_chart(self, coin_id: str, vs_currency: str = "usd", days: int = 30,
                         interval: Optional[str] = None) -> list[tuple[int, float]]:
        params: Dict[str, Any] = {"vs_currency": vs_currency, "days": days}
        if interval:
            params["interval"] = interval
        data = self._get_json(f"/coins/{coin_id}/market_chart", params)
        url = f"{self.base_url}/coins/{coin_id}/market_chart"
        prices = data.get("prices") if isinstance(data, dict) else None
        if not isinstance(prices, list):
            raise FetchFailed(f"Unexpected chart payload for {coin_id}", url=url)
        points = []
        last_err: Optional[Exception] = None
        for item in prices:
            try:
                ts, p = item
                points.append((int(ts), float(p)))
            except (TypeError, ValueError) as e:
                last_err = e
        if prices and not points:
            raise FetchFailed(f"No usable chart points for {coin_id}", cause=last_err, url=url)
        return points

    def get_coin(self, coin_id: str) -> Dict[str, Any]:
        params = {
            "localization": "false",
            "tickers": "false",
            "community_data": "false",
            "developer_data": "false",
        }
        data = self._get_json(f"/coins/{coin_id}", params)
        if not isinstance(data, dict):
            raise FetchFailed(f"Unexpected payload for coin {coin_id}")
        return data
