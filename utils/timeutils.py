# utils/timeutils.py
from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def from_ms(ts_ms: float) -> datetime:
    """CoinGecko chart timestamps are epoch milliseconds."""
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)


def fmt_day(ts_ms: float) -> str:
    return from_ms(ts_ms).strftime("%b %d")
