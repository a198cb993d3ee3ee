import json

import pytest

import cli
import storage.json_store as js

from fakes import FakeClient


class CliClient(FakeClient):
    def get_market_chart(self, coin_id, vs_currency="usd", days=30, interval=None):
        return [(1700000000000, 100.0), (1700086400000, 110.0)]

    def get_trending(self, vs_currency="usd"):
        return self.rows[:2]


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setattr(js, "HOME_DIR", str(tmp_path))
    monkeypatch.setattr(js, "CONFIG_PATH", str(tmp_path / "config.json"))
    monkeypatch.setattr(js, "STORE_PATH", str(tmp_path / "store.json"))
    client = CliClient(prices={"bitcoin": 50000.0, "ethereum": 2500.0})
    monkeypatch.setattr(cli, "make_client", lambda: client)
    return client, tmp_path


def _holdings(tmp_path):
    store = json.loads((tmp_path / "store.json").read_text(encoding="utf-8"))
    return json.loads(store["holdings"])


def test_add_edit_rm_flow(env, capsys):
    client, tmp_path = env
    assert cli.main(["add", "1000", "--coin", "btc"]) == 0
    out = capsys.readouterr().out
    assert "Added Bitcoin (BTC)" in out
    assert "Total Portfolio Value: $1,000.00" in out
    assert _holdings(tmp_path) == [{"coinId": "bitcoin", "investedUSD": 1000.0}]

    assert cli.main(["edit", "bitcoin", "2000"]) == 0
    assert _holdings(tmp_path) == [{"coinId": "bitcoin", "investedUSD": 2000.0}]

    assert cli.main(["rm", "bitcoin", "--yes"]) == 0
    assert _holdings(tmp_path) == []


def test_add_rejects_bad_amount(env, capsys):
    _, tmp_path = env
    assert cli.main(["add", "abc", "--coin", "bitcoin"]) == 1
    assert "valid amount" in capsys.readouterr().err
    assert not (tmp_path / "store.json").exists() or _holdings(tmp_path) == []


def test_add_duplicate_is_rejected(env, capsys):
    cli.main(["add", "10", "--coin", "bitcoin"])
    assert cli.main(["add", "20", "--coin", "bitcoin"]) == 1
    assert "already in portfolio" in capsys.readouterr().err


def test_ambiguous_coin_query(env, capsys):
    assert cli.main(["add", "10", "--coin", "bitc"]) == 1
    assert "matches several coins" in capsys.readouterr().err


def test_exact_coin_id_wins_over_substring_matches(env, capsys):
    _, tmp_path = env
    assert cli.main(["add", "10", "--coin", "Bitcoin-Cash"]) == 0
    assert _holdings(tmp_path) == [{"coinId": "bitcoin-cash", "investedUSD": 10.0}]


@pytest.mark.parametrize("every", ["-1", "0"])
def test_ticker_rejects_bad_interval(env, capsys, every):
    client, _ = env
    assert cli.main(["ticker", "--every", every]) == 1
    assert "--every must be >= 1" in capsys.readouterr().err
    assert client.price_calls == []


def test_rm_asks_for_confirmation(env, monkeypatch, capsys):
    _, tmp_path = env
    cli.main(["add", "10", "--coin", "eth"])
    monkeypatch.setattr(cli.Confirm, "ask", classmethod(lambda cls, *a, **kw: False))
    assert cli.main(["rm", "ethereum"]) == 0
    assert "Kept." in capsys.readouterr().out
    assert _holdings(tmp_path) == [{"coinId": "ethereum", "investedUSD": 10.0}]


def test_select_then_add_uses_selected_coin(env, capsys):
    _, tmp_path = env
    assert cli.main(["select", "solana"]) == 0
    assert "Selected Solana (SOL)" in capsys.readouterr().out
    assert cli.main(["add", "75"]) == 0
    assert _holdings(tmp_path) == [{"coinId": "solana", "investedUSD": 75.0}]
    store = json.loads((tmp_path / "store.json").read_text(encoding="utf-8"))
    assert "selectedCoin" not in store


def test_select_unknown_coin(env, capsys):
    assert cli.main(["select", "dogecoin"]) == 1
    assert "Coin not found." in capsys.readouterr().out


def test_search_lists_and_picks(env, capsys):
    _, tmp_path = env
    assert cli.main(["search", "bit"]) == 0
    out = capsys.readouterr().out
    assert "Bitcoin (BTC)" in out and "Bitcoin Cash (BCH)" in out
    assert cli.main(["search", "bit", "--pick", "2"]) == 0
    store = json.loads((tmp_path / "store.json").read_text(encoding="utf-8"))
    assert json.loads(store["selectedCoin"])["id"] == "bitcoin-cash"


def test_portfolio_survives_price_failure(env, capsys):
    client, _ = env
    cli.main(["add", "10", "--coin", "bitcoin"])
    capsys.readouterr()
    client.fail = True
    assert cli.main(["portfolio"]) == 0
    assert "Failed to fetch prices" in capsys.readouterr().out


def test_history_and_config(env, capsys):
    assert cli.main(["history", "bitcoin", "--days", "2"]) == 0
    assert "+10.00%" in capsys.readouterr().out

    assert cli.main(["config", "--set", "vs_currency=eur", "dark_mode=true"]) == 0
    cfg = js.read_config()
    assert cfg["vs_currency"] == "eur" and cfg["dark_mode"] is True
    assert cli.main(["config", "--set", "vs_currency=doge"]) == 1
    assert cli.main(["config", "--set", "update_interval_sec=1"]) == 1
