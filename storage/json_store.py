# storage/json_store.py
import io
import json
import os
import tempfile
from typing import Any, Dict, Optional

from core.errors import PersistenceParseError
from utils.logging import get_logger

log = get_logger("store")

HOME_DIR = os.environ.get("COIN_DASHBOARD_HOME") or os.path.expanduser("~/.coin_dashboard")
CONFIG_PATH = os.path.join(HOME_DIR, "config.json")
STORE_PATH = os.path.join(HOME_DIR, "store.json")


def ensure_home():
    os.makedirs(HOME_DIR, exist_ok=True)


def _atomic_write_text(path: str, text: str):
    directory = os.path.dirname(str(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-", text=True)
    try:
        with io.open(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def write_json(path: str, data: Dict[str, Any]):
    _atomic_write_text(path, json.dumps(data, ensure_ascii=False, indent=2))


def read_json(path: str, default: Dict[str, Any] | None = None) -> Dict[str, Any]:
    if not os.path.exists(path):
        return default or {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


# ---- Key-value store (holdings, selectedCoin) ----

class JsonKeyValueStore:
    """
    get/set/remove over a single JSON object on disk. Values are strings
    (callers JSON-encode their records), mirroring browser localStorage.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = str(path or STORE_PATH)

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as e:
            raise PersistenceParseError(f"{self.path} is corrupt: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceParseError(f"{self.path} must hold a JSON object")
        return data

    def get(self, key: str) -> Optional[str]:
        val = self._load().get(key)
        return None if val is None else str(val)

    def set(self, key: str, value: str) -> None:
        try:
            data = self._load()
        except PersistenceParseError:
            log.warning("Overwriting corrupt store at %s", self.path)
            data = {}
        data[key] = value
        _atomic_write_text(self.path, json.dumps(data, ensure_ascii=False, indent=2))

    def remove(self, key: str) -> None:
        try:
            data = self._load()
        except PersistenceParseError:
            data = {}
        if key in data:
            del data[key]
            _atomic_write_text(self.path, json.dumps(data, ensure_ascii=False, indent=2))


# ---- Config helpers ----

DEFAULT_CONFIG = {
    "vs_currency": "usd",
    "update_interval_sec": 30,
    "dark_mode": False,
    "per_page": 50,
    "history_days": 30,
    "ticker_ids": ["bitcoin", "ethereum", "solana"],
}


def read_config() -> Dict[str, Any]:
    # Defaults if user hasn't created config.json
    cfg = json.loads(json.dumps(DEFAULT_CONFIG))
    try:
        disk = read_json(CONFIG_PATH, {})
    except ValueError:
        log.warning("Ignoring unreadable config at %s", CONFIG_PATH)
        disk = {}
    cfg.update(disk)
    return cfg


def _as_bool(v) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def write_config(cfg: dict):
    """Atomic write of config.json."""
    # keep only known top-level keys; ignore accidental extras
    clean = {
        "vs_currency": str(cfg.get("vs_currency", DEFAULT_CONFIG["vs_currency"])).lower(),
        "update_interval_sec": int(
            cfg.get("update_interval_sec", DEFAULT_CONFIG["update_interval_sec"])
        ),
        "dark_mode": _as_bool(cfg.get("dark_mode", DEFAULT_CONFIG["dark_mode"])),
        "per_page": int(cfg.get("per_page", DEFAULT_CONFIG["per_page"])),
        "history_days": int(cfg.get("history_days", DEFAULT_CONFIG["history_days"])),
        "ticker_ids": list(cfg.get("ticker_ids", DEFAULT_CONFIG["ticker_ids"])),
    }
    write_json(CONFIG_PATH, clean)


def ensure_config_exists():
    """Create config.json with defaults if missing."""
    if not os.path.exists(CONFIG_PATH):
        ensure_home()
        write_config(DEFAULT_CONFIG.copy())
