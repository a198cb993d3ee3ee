import json

import pytest
import requests

from services import coingecko_client as cg
from core.controller import HOLDINGS_KEY, PortfolioController
from core.errors import FetchFailed

from fakes import MemoryStore


class DummyResp:
    def __init__(self, status=200, payload=None, headers=None):
        self.status_code = status
        self._payload = payload
        self.headers = headers or {}

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class ScriptedSession:
    """Returns (or raises) the scripted items in order; records every call."""
    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    slept = []
    monkeypatch.setattr(cg, "_sleep_backoff", lambda attempt, hdr: slept.append((attempt, hdr)))
    return slept


def test_retries_429_then_succeeds(no_sleep):
    sess = ScriptedSession(
        DummyResp(429, headers={"Retry-After": "2"}),
        DummyResp(200, {"bitcoin": {"usd": 50000.0}}),
    )
    client = cg.CoinGeckoClient(session=sess)
    data = client.get_prices(["bitcoin"], "usd")
    assert data == {"bitcoin": {"usd": 50000.0}}
    assert len(sess.calls) == 2
    assert no_sleep == [(0, "2")]
    url, params = sess.calls[0]
    assert url.endswith("/simple/price")
    assert params == {"ids": "bitcoin", "vs_currencies": "usd"}


def test_5xx_exhausts_retries_with_status():
    sess = ScriptedSession(*[DummyResp(503) for _ in range(3)])
    client = cg.CoinGeckoClient(session=sess, max_retries=3)
    with pytest.raises(FetchFailed) as ei:
        client.list_coins("usd")
    assert ei.value.status == 503
    assert len(sess.calls) == 3


def test_4xx_fails_without_retry():
    sess = ScriptedSession(DummyResp(404), DummyResp(200, []))
    client = cg.CoinGeckoClient(session=sess)
    with pytest.raises(FetchFailed) as ei:
        client.get_coin("nope")
    assert ei.value.status == 404
    assert len(sess.calls) == 1


def test_network_errors_carry_cause():
    sess = ScriptedSession(requests.Timeout("slow"), requests.ConnectionError("down"))
    client = cg.CoinGeckoClient(session=sess, max_retries=2)
    with pytest.raises(FetchFailed) as ei:
        client.get_prices(["bitcoin"])
    assert ei.value.status is None
    assert isinstance(ei.value.cause, requests.ConnectionError)


def test_invalid_json_is_fetch_failed():
    sess = ScriptedSession(DummyResp(200, ValueError("bad json")))
    with pytest.raises(FetchFailed):
        cg.CoinGeckoClient(session=sess).get_trending_ids()


def test_price_map_skips_missing_quotes():
    sess = ScriptedSession(DummyResp(200, {"bitcoin": {"usd": 50000}, "ethereum": {}}))
    pm = cg.CoinGeckoClient(session=sess).get_price_map(["bitcoin", "ethereum", "dogecoin"], "usd")
    assert pm == {"bitcoin": 50000.0}


def test_no_ids_means_no_request():
    sess = ScriptedSession()
    assert cg.CoinGeckoClient(session=sess).get_price_map([], "usd") == {}
    assert sess.calls == []


def test_list_coins_params():
    rows = [{"id": "bitcoin", "symbol": "btc", "name": "Bitcoin"}, {"symbol": "x"}]
    sess = ScriptedSession(DummyResp(200, rows))
    client = cg.CoinGeckoClient(session=sess)
    out = client.list_coins("eur", per_page=10, sparkline=True, price_change=("1h", "7d"))
    _, params = sess.calls[0]
    assert params["vs_currency"] == "eur"
    assert params["per_page"] == 10
    assert params["sparkline"] == "true"
    assert params["price_change_percentage"] == "1h,7d"
    assert out == rows


def test_trending_fetches_market_rows_for_trending_ids():
    trending = {"coins": [{"item": {"id": "pepe"}}, {"item": {"id": "solana"}}]}
    markets = [{"id": "solana"}, {"id": "pepe"}]
    sess = ScriptedSession(DummyResp(200, trending), DummyResp(200, markets))
    out = cg.CoinGeckoClient(session=sess).get_trending("usd")
    assert out == markets
    url, params = sess.calls[1]
    assert url.endswith("/coins/markets")
    assert params["ids"] == "pepe,solana"
    assert params["sparkline"] == "true"


def test_market_chart_pairs():
    payload = {"prices": [[1700000000000, 35000.5], [1700086400000, 36000]]}
    sess = ScriptedSession(DummyResp(200, payload))
    pts = cg.CoinGeckoClient(session=sess).get_market_chart("bitcoin", "usd", days=2, interval="daily")
    assert pts == [(1700000000000, 35000.5), (1700086400000, 36000.0)]
    url, params = sess.calls[0]
    assert url.endswith("/coins/bitcoin/market_chart")
    assert params == {"vs_currency": "usd", "days": 2, "interval": "daily"}


def test_malformed_price_entry_surfaces_as_fetch_error():
    sess = ScriptedSession(DummyResp(200, {"bitcoin": 123.0}))
    store = MemoryStore({HOLDINGS_KEY: json.dumps([{"coinId": "bitcoin", "investedUSD": 1000}])})
    ctl = PortfolioController(store, cg.CoinGeckoClient(session=sess))
    ctl.initialize()
    snap = ctl.snapshot()
    assert snap.error == "Failed to fetch prices"
    assert snap.loading is False
    assert snap.rows[0].price is None


def test_non_dict_price_payload_is_fetch_failed():
    sess = ScriptedSession(DummyResp(200, ["bitcoin"]))
    with pytest.raises(FetchFailed):
        cg.CoinGeckoClient(session=sess).get_price_map(["bitcoin"], "usd")


def test_market_chart_skips_bad_points():
    payload = {"prices": [[1700000000000, None], [1700086400000, 36000], ["x"], [None, 1.0]]}
    sess = ScriptedSession(DummyResp(200, payload))
    pts = cg.CoinGeckoClient(session=sess).get_market_chart("bitcoin")
    assert pts == [(1700086400000, 36000.0)]


@pytest.mark.parametrize("payload", [{"prices": [[None, 1.0]]}, {"prices": "nope"}, []])
def test_unusable_market_chart_is_fetch_failed(payload):
    sess = ScriptedSession(DummyResp(200, payload))
    with pytest.raises(FetchFailed) as ei:
        cg.CoinGeckoClient(session=sess).get_market_chart("bitcoin")
    assert ei.value.url.endswith("/coins/bitcoin/market_chart")


def test_market_chart_empty_history():
    sess = ScriptedSession(DummyResp(200, {"prices": []}))
    assert cg.CoinGeckoClient(session=sess).get_market_chart("bitcoin") == []


def test_trending_ignores_malformed_items():
    trending = {"coins": ["pepe", {"item": "solana"}, {"item": {"id": "bonk"}}, {}]}
    sess = ScriptedSession(DummyResp(200, trending))
    assert cg.CoinGeckoClient(session=sess).get_trending_ids() == ["bonk"]


def test_trending_without_coin_list_is_fetch_failed():
    sess = ScriptedSession(DummyResp(200, {"coins": None}))
    with pytest.raises(FetchFailed):
        cg.CoinGeckoClient(session=sess).get_trending_ids()


def test_parse_retry_after():
    assert cg._parse_retry_after(None) == 0.0
    assert cg._parse_retry_after("7") == 7.0
    assert cg._parse_retry_after("garbage") == 0.0
    assert cg._parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
