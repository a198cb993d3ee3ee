# cli.py
import sys
import time
import argparse
import json
from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from core.controller import PortfolioController, PortfolioSnapshot
from core.errors import DashboardError, NotFound, ValidationError
from core.models import CoinRef
from core.state import CoinCatalog, CurrencyState, SearchState, ThemeState, SUPPORTED_CURRENCIES
from scheduler.runner import PeriodicTask
from services.coingecko_client import CoinGeckoClient
from storage.json_store import (
    JsonKeyValueStore, read_config, write_config, ensure_config_exists
)
from utils.logging import get_logger, set_level
from utils.sparkline import sparkline
from utils.timeutils import fmt_day, utc_now_iso

log = get_logger("cli")

MARKET_CHANGES = ("1h", "24h", "7d")


def make_client() -> CoinGeckoClient:
    return CoinGeckoClient()


def make_console(args: argparse.Namespace, cfg: dict) -> Console:
    theme = ThemeState(cfg.get("dark_mode", False))
    if getattr(args, "dark", False):
        theme.toggle()
    return Console(theme=theme.theme)


def _currency(args: argparse.Namespace, cfg: dict) -> CurrencyState:
    return CurrencyState(getattr(args, "currency", None) or cfg.get("vs_currency", "usd"))


# -------- Formatting --------

def _fmt_money(value, prefix: str = "$", digits: int = 2) -> str:
    if value is None:
        return "N/A"
    return f"{prefix}{value:,.{digits}f}"


def _fmt_num(value) -> str:
    return "N/A" if value is None else f"{value:,.0f}"


def _fmt_pct(value) -> str:
    if value is None:
        return "N/A"
    style = "up" if value >= 0 else "down"
    return f"[{style}]{value:.2f}%[/{style}]"


def _change(row: dict, window: str):
    # 24h comes back under two names depending on price_change_percentage
    return row.get(f"price_change_percentage_{window}_in_currency",
                   row.get(f"price_change_percentage_{window}"))


def _market_table(title: str, rows: list, prefix: str) -> Table:
    t = Table(title=title, title_style="title")
    t.add_column("#", justify="right")
    t.add_column("Name", justify="left")
    t.add_column("Symbol", justify="left")
    t.add_column("Price", justify="right")
    t.add_column("1h %", justify="right")
    t.add_column("24h %", justify="right")
    t.add_column("7d %", justify="right")
    t.add_column("Market Cap", justify="right")
    t.add_column("Volume (24h)", justify="right")
    t.add_column("Circulating Supply", justify="right")
    t.add_column("Last 7 Days", justify="left")
    for idx, c in enumerate(rows, start=1):
        spark = (c.get("sparkline_in_7d") or {}).get("price")
        week = _change(c, "7d")
        style = "up" if (week or 0) >= 0 else "down"
        t.add_row(
            str(c.get("market_cap_rank") or idx),
            c.get("name", ""),
            (c.get("symbol") or "").upper(),
            _fmt_money(c.get("current_price"), prefix),
            _fmt_pct(_change(c, "1h")),
            _fmt_pct(_change(c, "24h")),
            _fmt_pct(week),
            _fmt_money(c.get("market_cap"), prefix, 0),
            _fmt_money(c.get("total_volume"), prefix, 0),
            _fmt_num(c.get("circulating_supply")),
            f"[{style}]{sparkline(spark)}[/{style}]" if spark else "N/A",
        )
    return t


def render_portfolio(snap: PortfolioSnapshot) -> Table:
    t = Table(title="My Portfolio", title_style="title")
    t.add_column("Coin", justify="left")
    t.add_column("Amount (Coins)", justify="right")
    t.add_column("Price (USD)", justify="right")
    t.add_column("Invested (USD)", justify="right")
    t.add_column("Market Value", justify="right")

    for r in snap.rows:
        amount = "" if r.coin_amount is None else f"{r.coin_amount:.6f}"
        invested = _fmt_money(r.invested_usd)
        if r.editing:
            invested = f"[b]> {snap.edit_draft}[/b]"
        t.add_row(r.symbol.upper(), amount, _fmt_money(r.price), invested, _fmt_money(r.market_value))
    if not snap.rows:
        t.add_row("[muted]No holdings added yet.[/muted]", "", "", "", "")
    t.add_row("", "", "", "", "")
    t.add_row("[b]TOTAL[/b]", "", "", f"[b]{_fmt_money(snap.total_value)}[/b]",
              f"[b]{_fmt_money(snap.market_value)}[/b]")
    return t


def _print_portfolio(console: Console, ctl: PortfolioController) -> None:
    snap = ctl.snapshot()
    if snap.loading:
        console.print("[muted]Loading prices...[/muted]")
    if snap.error:
        console.print(f"[error]{snap.error}[/error]")
    console.print(render_portfolio(snap))
    console.print(f"Total Portfolio Value: {_fmt_money(snap.total_value)}")
    if snap.selected_coin:
        console.print(f"[muted]Selected: {snap.selected_coin.label}[/muted]")


def _portfolio(client: CoinGeckoClient, catalog: Optional[CoinCatalog] = None) -> PortfolioController:
    ctl = PortfolioController(JsonKeyValueStore(), client)
    ctl.initialize()
    if catalog is not None and not catalog.error:
        ctl.remember_symbols(catalog.coins)
    return ctl


def _catalog(client: CoinGeckoClient, cfg: dict) -> CoinCatalog:
    # portfolio amounts are USD, so the coin picker always lists USD markets
    catalog = CoinCatalog(client, CurrencyState("usd"), per_page=int(cfg.get("per_page", 50)))
    catalog.load()
    return catalog


def _resolve_coin(query: str, catalog: CoinCatalog) -> CoinRef:
    """Exact id or symbol wins; otherwise a single name/symbol match."""
    q = query.strip().lower()
    by_id = catalog.find(q)
    if by_id is not None:
        return by_id
    coins = catalog.coins
    by_symbol = [c for c in coins if c.symbol.lower() == q]
    if by_symbol:
        return by_symbol[0]
    search = SearchState(q)
    matches = search.filter(coins)
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise NotFound(f"No coins found for '{query}'.")
    names = ", ".join(c.id for c in matches[:10])
    raise ValidationError(f"'{query}' matches several coins: {names}. Use the coin id.")


# -------- Commands --------

def cmd_coins(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    currency = _currency(args, cfg)
    catalog = CoinCatalog(make_client(), currency, per_page=args.limit or int(cfg.get("per_page", 50)))
    with console.status("Loading coins..."):
        catalog.load(sparkline=True, price_change=MARKET_CHANGES)
    if catalog.error:
        console.print(f"[error]{catalog.error}[/error]")
        return 1
    rows = SearchState(args.search).filter(catalog.rows)
    if not rows:
        console.print(f"[muted]No coins match '{args.search}'.[/muted]")
        return 0
    console.print(_market_table(f"Top {catalog.per_page} Cryptocurrencies", rows, currency.prefix))
    return 0


def cmd_trending(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    currency = _currency(args, cfg)
    with console.status("Loading trending coins..."):
        rows = make_client().get_trending(currency.currency)
    if not rows:
        console.print("[muted]No trending coins right now.[/muted]")
        return 0
    console.print(_market_table("Trending Coins", rows, currency.prefix))
    return 0


def cmd_history(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    currency = _currency(args, cfg)
    days = args.days or int(cfg.get("history_days", 30))
    with console.status("Loading price history..."):
        points = make_client().get_market_chart(args.coin_id, currency.currency, days=days, interval="daily")
    if not points:
        console.print("[error]No data[/error]")
        return 1

    prices = [p for _, p in points]
    first, last = prices[0], prices[-1]
    pct = ((last - first) / first * 100.0) if first else 0.0
    style = "up" if pct >= 0 else "down"

    t = Table(title=f"{args.coin_id} Price ({currency.currency.upper()}), last {days} days", title_style="title")
    t.add_column("Day", justify="left")
    t.add_column("Price", justify="right")
    t.add_column("Δ vs prev", justify="right")
    prev = None
    for ts, p in points:
        if prev is None:
            delta = "–"
        else:
            diff = p - prev
            d_pct = (diff / prev * 100.0) if prev else 0.0
            delta = f"{diff:+,.2f} ({d_pct:+.2f}%)"
        t.add_row(fmt_day(ts), _fmt_money(p, currency.prefix), delta)
        prev = p
    console.print(t)
    console.print(f"[{style}]{sparkline(prices, width=60)}[/{style}]")
    console.print(
        f"Low {_fmt_money(min(prices), currency.prefix)}  High {_fmt_money(max(prices), currency.prefix)}  "
        f"Change [{style}]{pct:+.2f}%[/{style}]"
    )
    return 0


def cmd_coin(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    currency = _currency(args, cfg)
    vs = currency.currency
    client = make_client()
    with console.status("Loading coin..."):
        coin = client.get_coin(args.coin_id)
        points = client.get_market_chart(args.coin_id, vs, days=7)

    md = coin.get("market_data") or {}
    desc = ((coin.get("description") or {}).get("en") or "").strip()
    if len(desc) > 400:
        desc = desc[:400].rsplit(" ", 1)[0] + "…"
    lines = [
        f"Price: {_fmt_money((md.get('current_price') or {}).get(vs), currency.prefix)}",
        f"Market Cap: {_fmt_money((md.get('market_cap') or {}).get(vs), currency.prefix, 0)}",
        f"Volume (24h): {_fmt_money((md.get('total_volume') or {}).get(vs), currency.prefix, 0)}",
        f"Circulating Supply: {_fmt_num(md.get('circulating_supply'))}",
    ]
    if points:
        lines.append(f"7 days: {sparkline([p for _, p in points], width=40)}")
    if desc:
        lines += ["", desc]
    title = f"{coin.get('name', args.coin_id)} ({(coin.get('symbol') or '').upper()})"
    console.print(Panel("\n".join(lines), title=title, title_align="left"))
    return 0


def cmd_ticker(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    currency = _currency(args, cfg)
    ids = _parse_csv(args.ids) or list(cfg.get("ticker_ids") or [])
    if not ids:
        console.print("Provide coin ids, e.g. crypto ticker --ids bitcoin,ethereum")
        return 1
    if args.every is not None:
        every = _int_setting("--every", str(args.every), 1)
    else:
        every = _int_setting("update_interval_sec", str(cfg.get("update_interval_sec", 30)), 1)
    client = make_client()
    state = {"prices": {}, "ts": None, "error": None}

    def render() -> Panel:
        parts = []
        for cid in ids:
            p = state["prices"].get(cid)
            parts.append(f"{cid.upper()}: {_fmt_money(p, currency.prefix) if p is not None else '…'}")
        body = "  |  ".join(parts)
        if state["error"]:
            body += f"\n[error]{state['error']}[/error]"
        sub = f"updated {state['ts']}" if state["ts"] else "loading"
        return Panel(body, title=f"Live ({currency.currency.upper()}, every {every}s)", subtitle=sub)

    with Live(render(), console=console, refresh_per_second=4) as live:
        def tick():
            try:
                state["prices"] = client.get_price_map(ids, currency.currency)
                state["ts"] = utc_now_iso()
                state["error"] = None
            except DashboardError as e:
                state["error"] = str(e)
            live.update(render())

        task = PeriodicTask(tick, every, name="ticker")
        task.start()
        try:
            while task.running:
                time.sleep(0.5)
        except KeyboardInterrupt:
            pass
        finally:
            task.stop()
    console.print("Stopped.")
    return 0


def cmd_portfolio(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    client = make_client()
    catalog = _catalog(client, cfg)
    ctl = _portfolio(client, catalog)
    _print_portfolio(console, ctl)
    return 0


def cmd_add(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    client = make_client()
    catalog = _catalog(client, cfg)
    ctl = _portfolio(client, catalog)

    if args.coin:
        if catalog.error:
            console.print(f"[error]{catalog.error}[/error]")
            return 1
        coin = _resolve_coin(args.coin, catalog)
    else:
        coin = ctl.snapshot().selected_coin
        if coin is None:
            raise ValidationError("Please select a coin and enter a valid amount in USD.")

    holding = ctl.add_holding(coin, args.amount)
    console.print(f"Added {coin.label} invested={_fmt_money(holding.invested_usd)}")
    _print_portfolio(console, ctl)
    return 0


def cmd_edit(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    ctl = _portfolio(make_client())
    ctl.start_edit(args.coin_id)
    holding = ctl.save_edit(args.amount)
    console.print(f"Set {holding.coin_id} invested={_fmt_money(holding.invested_usd)}")
    _print_portfolio(console, ctl)
    return 0


def cmd_rm(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    ctl = _portfolio(make_client())
    if ctl.find(args.coin_id) is None:
        raise NotFound(f"No holding for '{args.coin_id}'.")
    if not args.yes and not Confirm.ask("Are you sure you want to remove this holding?", console=console):
        console.print("Kept.")
        return 0
    ctl.delete_holding(args.coin_id)
    console.print(f"Removed {args.coin_id}.")
    _print_portfolio(console, ctl)
    return 0


def cmd_select(args: argparse.Namespace):
    """Preselect a coin by id, the way a ?coinId= link does."""
    cfg = read_config()
    console = make_console(args, cfg)
    client = make_client()
    catalog = _catalog(client, cfg)
    if catalog.error:
        console.print(f"[error]{catalog.error}[/error]")
        return 1
    ctl = _portfolio(client, catalog)
    coin = ctl.resolve_pending_coin_selection(args.coin_id, catalog.coins)
    if coin is None:
        console.print(f"[error]{ctl.snapshot().error or 'Coin not found.'}[/error]")
        return 1
    console.print(f"Selected {coin.label}. Add it with: crypto add <usd>")
    return 0


def cmd_search(args: argparse.Namespace):
    cfg = read_config()
    console = make_console(args, cfg)
    client = make_client()
    catalog = _catalog(client, cfg)
    if catalog.error:
        console.print(f"[error]{catalog.error}[/error]")
        return 1
    ctl = _portfolio(client, catalog)
    ctl.set_search_term(args.term)
    matches = ctl.matching_coins(catalog.coins)

    if args.pick is not None:
        if not 1 <= args.pick <= len(matches):
            raise ValidationError(f"--pick must be between 1 and {len(matches)}.")
        coin = matches[args.pick - 1]
        ctl.select_coin(coin)
        console.print(f"Selected {coin.label}. Add it with: crypto add <usd>")
        return 0

    if not matches:
        console.print("No coins found")
        return 0
    for i, coin in enumerate(matches, start=1):
        console.print(f"{i:>2}. {coin.label}  [muted]{coin.id}[/muted]")
    return 0


def _parse_kv_list(pairs: list[str]) -> dict:
    out = {}
    for item in pairs or []:
        if "=" not in item:
            raise ValidationError(f"Expected key=value, got '{item}'")
        k, v = item.split("=", 1)
        out[k.strip()] = v.strip()
    return out


def _parse_csv(s: Optional[str]) -> list[str]:
    if not s:
        return []
    return [x.strip().lower() for x in s.split(",") if x.strip()]


def _int_setting(key: str, v: str, minimum: int) -> int:
    try:
        n = int(v)
    except ValueError:
        raise ValidationError(f"{key} must be an integer.")
    if n < minimum:
        raise ValidationError(f"{key} must be >= {minimum}.")
    return n


def cmd_config(args: argparse.Namespace):
    # Always ensure there is a config file to work with
    ensure_config_exists()
    cfg = read_config()
    console = make_console(args, cfg)

    if args.path:
        from storage.json_store import CONFIG_PATH
        console.print(CONFIG_PATH)
        return 0

    if args.set:
        for k, v in _parse_kv_list(args.set).items():
            if k == "vs_currency":
                cfg["vs_currency"] = CurrencyState(v).currency
            elif k == "update_interval_sec":
                cfg["update_interval_sec"] = _int_setting(k, v, 5)
            elif k == "per_page":
                cfg["per_page"] = _int_setting(k, v, 1)
            elif k == "history_days":
                cfg["history_days"] = _int_setting(k, v, 1)
            elif k == "dark_mode":
                cfg["dark_mode"] = v.lower() in ("1", "true", "yes", "on")
            elif k == "ticker_ids":
                cfg["ticker_ids"] = _parse_csv(v)
            else:
                raise ValidationError(
                    f"Unknown key '{k}'. Allowed: vs_currency, update_interval_sec, per_page, "
                    "history_days, dark_mode, ticker_ids"
                )
        write_config(cfg)
        console.print("Config updated.")

    if args.show or not args.set:
        console.print_json(json.dumps(read_config(), ensure_ascii=False))
    return 0


# -------- Parser --------

def build_parser():
    p = argparse.ArgumentParser(prog="crypto", description="Crypto dashboard in your terminal")
    p.add_argument("--dark", action="store_true", help="Flip dark mode for this run")
    p.add_argument("-v", "--verbose", action="store_true", help="Log requests and retries")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_coins = sub.add_parser("coins", help="Top coins by market cap")
    p_coins.add_argument("--search", default="", help="Filter by name or symbol")
    p_coins.add_argument("--limit", type=int, help="How many coins (default per_page from config)")
    p_coins.add_argument("--currency", choices=SUPPORTED_CURRENCIES, help="Quote currency")
    p_coins.set_defaults(func=cmd_coins)

    p_tr = sub.add_parser("trending", help="Trending coins with 7 day sparklines")
    p_tr.add_argument("--currency", choices=SUPPORTED_CURRENCIES, help="Quote currency")
    p_tr.set_defaults(func=cmd_trending)

    p_hist = sub.add_parser("history", help="Daily price history for a coin")
    p_hist.add_argument("coin_id", help="CoinGecko id, e.g. bitcoin")
    p_hist.add_argument("--days", type=int, help="Range in days (default history_days from config)")
    p_hist.add_argument("--currency", choices=SUPPORTED_CURRENCIES, help="Quote currency")
    p_hist.set_defaults(func=cmd_history)

    p_coin = sub.add_parser("coin", help="Details for one coin")
    p_coin.add_argument("coin_id", help="CoinGecko id, e.g. bitcoin")
    p_coin.add_argument("--currency", choices=SUPPORTED_CURRENCIES, help="Quote currency")
    p_coin.set_defaults(func=cmd_coin)

    p_tick = sub.add_parser("ticker", help="Live price ticker")
    p_tick.add_argument("--ids", help="Comma-separated coin ids (default ticker_ids from config)")
    p_tick.add_argument("--every", type=int, help="Refresh interval in seconds")
    p_tick.add_argument("--currency", choices=SUPPORTED_CURRENCIES, help="Quote currency")
    p_tick.set_defaults(func=cmd_ticker)

    p_port = sub.add_parser("portfolio", help="Show holdings with live prices")
    p_port.set_defaults(func=cmd_portfolio)

    p_add = sub.add_parser("add", help="Add a holding (USD invested)")
    p_add.add_argument("amount", help="Amount invested in USD")
    p_add.add_argument("--coin", help="Coin id, symbol or name (default: the selected coin)")
    p_add.set_defaults(func=cmd_add)

    p_edit = sub.add_parser("edit", help="Change the USD invested in a holding")
    p_edit.add_argument("coin_id", help="e.g. bitcoin")
    p_edit.add_argument("amount", help="New amount invested in USD")
    p_edit.set_defaults(func=cmd_edit)

    p_rm = sub.add_parser("rm", help="Remove a holding")
    p_rm.add_argument("coin_id", help="e.g. bitcoin")
    p_rm.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation prompt")
    p_rm.set_defaults(func=cmd_rm)

    p_sel = sub.add_parser("select", help="Preselect a coin by id for the next add")
    p_sel.add_argument("coin_id", help="e.g. bitcoin")
    p_sel.set_defaults(func=cmd_select)

    p_search = sub.add_parser("search", help="Search coins to add")
    p_search.add_argument("term", help="Part of a coin name or symbol")
    p_search.add_argument("--pick", type=int, help="Select the N-th match")
    p_search.set_defaults(func=cmd_search)

    p_cfg = sub.add_parser("config", help="Show or edit configuration")
    p_cfg.add_argument("--show", action="store_true", help="Show current config")
    p_cfg.add_argument("--set", nargs="*", help="Set key=value. Ex: --set vs_currency=eur dark_mode=true")
    p_cfg.add_argument("--path", action="store_true", help="Print the config file path and exit")
    p_cfg.set_defaults(func=cmd_config)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_level("INFO")
    try:
        return args.func(args) or 0
    except DashboardError as e:
        Console(stderr=True).print(f"[bold red]{e}[/bold red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
