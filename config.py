"""Application configuration."""

import os
from pathlib import Path
from typing import Any, Dict, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def reload_env_files() -> None:
    """Re-read .env and BOT_ENV_FILE over the current process environment."""
    _load_dotenv_safe(override=True)
    if _BOT_ENV_FILE:
        _load_dotenv_safe(str(_bot_env_path), override=True)


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except Exception:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except Exception:
            continue
    return out


def _numbered_ladder(prefix: str, count: int, defaults: Dict[int, Tuple[str, str]]) -> str:
    """Build a ladder string from TP1_MULTIPLE/TP1_SELL_PERCENT style keys.

    A rung is kept when its multiple is set (or has a default). The sell
    percent defaults to 100 when only the multiple is given.
    """
    rungs = []
    for idx in range(1, count + 1):
        default_multiple, default_percent = defaults.get(idx, ("", ""))
        multiple = os.getenv(f"{prefix}{idx}_MULTIPLE", default_multiple).strip()
        if not multiple:
            continue
        percent = os.getenv(f"{prefix}{idx}_SELL_PERCENT", default_percent or "100").strip() or "100"
        enabled = os.getenv(f"{prefix}{idx}_ENABLED", "true").strip().lower() in ("1", "true", "yes", "on")
        rung = f"{prefix.lower()}{idx}:{multiple}:{percent}"
        if not enabled:
            rung += ":off"
        rungs.append(rung)
    return ",".join(rungs)


TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
PERSONAL_TELEGRAM_ID = int(os.getenv("PERSONAL_TELEGRAM_ID", "0"))
RUN_TAG = os.getenv("RUN_TAG", os.getenv("BOT_INSTANCE_ID", "")).strip()

CHAIN_ID = os.getenv("CHAIN_ID", "base")
EVM_CHAIN_ID = os.getenv("EVM_CHAIN_ID", "8453")

# Price source
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex")
DEX_BOOSTS_API = os.getenv("DEX_BOOSTS_API", "https://api.dexscreener.com/token-boosts/latest/v1")
DEX_BOOSTS_MAX_TOKENS = max(0, int(os.getenv("DEX_BOOSTS_MAX_TOKENS", "20")))
DEX_TIMEOUT = int(os.getenv("DEX_TIMEOUT", "15"))
PRICE_SOURCE_NAME = os.getenv("PRICE_SOURCE_NAME", "dex_price").strip().lower() or "dex_price"

HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.00")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "90")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv(
        "HTTP_SOURCE_RATE_LIMITS",
        "dex_price:240/60,dex_boosts:30/60",
    )
)
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(
    os.getenv(
        "HTTP_SOURCE_429_COOLDOWNS",
        "dex_price:20,dex_boosts:20",
    )
)

# Wallet / venue
AUTO_TRADE_ENABLED = os.getenv("AUTO_TRADE_ENABLED", "false").lower() == "true"
AUTO_TRADE_PAPER = os.getenv("AUTO_TRADE_PAPER", "true").lower() == "true"
PAPER_START_BALANCE_ETH = max(0.0, float(os.getenv("PAPER_START_BALANCE_ETH", "1.0")))
RPC_PRIMARY = os.getenv("RPC_PRIMARY", "").strip()
RPC_TIMEOUT_SECONDS = max(3, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
WETH_ADDRESS = os.getenv("WETH_ADDRESS", "0x4200000000000000000000000000000000000006").strip().lower()
WETH_PRICE_FALLBACK_USD = float(os.getenv("WETH_PRICE_FALLBACK_USD", "3000"))
LIVE_WALLET_ADDRESS = os.getenv("LIVE_WALLET_ADDRESS", "").strip()
LIVE_PRIVATE_KEY = os.getenv("LIVE_PRIVATE_KEY", "").strip()
LIVE_CHAIN_ID = int(os.getenv("LIVE_CHAIN_ID", EVM_CHAIN_ID))
LIVE_ROUTER_ADDRESS = os.getenv("LIVE_ROUTER_ADDRESS", "").strip()
LIVE_SLIPPAGE_BPS = max(1, int(os.getenv("LIVE_SLIPPAGE_BPS", "300")))
LIVE_SWAP_DEADLINE_SECONDS = max(30, int(os.getenv("LIVE_SWAP_DEADLINE_SECONDS", "45")))
LIVE_TX_TIMEOUT_SECONDS = max(30, int(os.getenv("LIVE_TX_TIMEOUT_SECONDS", "180")))
LIVE_MAX_GAS_GWEI = float(os.getenv("LIVE_MAX_GAS_GWEI", "2.0"))
LIVE_PRIORITY_FEE_GWEI = float(os.getenv("LIVE_PRIORITY_FEE_GWEI", "0.02"))
LIVE_MAX_SWAP_GAS = max(50_000, int(os.getenv("LIVE_MAX_SWAP_GAS", "450000")))


# Position lifecycle. Re-read on operator reload, see main.reload_settings.
def read_lifecycle_values() -> Dict[str, Any]:
    """Parse the hot-reloadable sizing, cadence and ladder keys from the environment."""
    return {
        "BUY_AMOUNT_ETH": max(0.0, float(os.getenv("BUY_AMOUNT_ETH", "0.01"))),
        "BUY_DELAY_SECONDS": max(0.0, float(os.getenv("BUY_DELAY_SECONDS", "0"))),
        "PRICE_CHECK_SECONDS": max(0.5, float(os.getenv("PRICE_CHECK_SECONDS", "5"))),
        "PRICE_BATCH_SIZE": max(1, int(os.getenv("PRICE_BATCH_SIZE", "5"))),
        "PRICE_BATCH_PAUSE_SECONDS": max(0.0, float(os.getenv("PRICE_BATCH_PAUSE_SECONDS", "0.1"))),
        "PRICE_STALE_DEMOTE_AFTER": max(1, int(os.getenv("PRICE_STALE_DEMOTE_AFTER", "5"))),
        "ENTRY_PRICE_ATTEMPTS": max(1, int(os.getenv("ENTRY_PRICE_ATTEMPTS", "20"))),
        "ENTRY_PRICE_RETRY_SECONDS": max(0.0, float(os.getenv("ENTRY_PRICE_RETRY_SECONDS", "2.0"))),
        "PAUSED_RECHECK_SECONDS": max(1.0, float(os.getenv("PAUSED_RECHECK_SECONDS", "30"))),
        "DISCOVERY_INTERVAL_SECONDS": max(1.0, float(os.getenv("DISCOVERY_INTERVAL_SECONDS", "10"))),
        "MIN_SCORE": float(os.getenv("MIN_SCORE", "0")),
        "TAKE_PROFIT_LADDER": os.getenv(
            "TAKE_PROFIT_LADDER",
            _numbered_ladder(
                "TP",
                5,
                {1: ("2", "50"), 2: ("5", "50"), 3: ("10", "50"), 4: ("20", "100")},
            ),
        ).strip(),
        "STOP_LOSS_LADDER": os.getenv("STOP_LOSS_LADDER", _numbered_ladder("SL", 5, {})).strip(),
    }


_LIFECYCLE = read_lifecycle_values()
BUY_AMOUNT_ETH = _LIFECYCLE["BUY_AMOUNT_ETH"]
BUY_DELAY_SECONDS = _LIFECYCLE["BUY_DELAY_SECONDS"]
PRICE_CHECK_SECONDS = _LIFECYCLE["PRICE_CHECK_SECONDS"]
PRICE_BATCH_SIZE = _LIFECYCLE["PRICE_BATCH_SIZE"]
PRICE_BATCH_PAUSE_SECONDS = _LIFECYCLE["PRICE_BATCH_PAUSE_SECONDS"]
PRICE_STALE_DEMOTE_AFTER = _LIFECYCLE["PRICE_STALE_DEMOTE_AFTER"]
ENTRY_PRICE_ATTEMPTS = _LIFECYCLE["ENTRY_PRICE_ATTEMPTS"]
ENTRY_PRICE_RETRY_SECONDS = _LIFECYCLE["ENTRY_PRICE_RETRY_SECONDS"]
PAUSED_RECHECK_SECONDS = _LIFECYCLE["PAUSED_RECHECK_SECONDS"]
DISCOVERY_INTERVAL_SECONDS = _LIFECYCLE["DISCOVERY_INTERVAL_SECONDS"]
MIN_SCORE = _LIFECYCLE["MIN_SCORE"]
TAKE_PROFIT_LADDER = _LIFECYCLE["TAKE_PROFIT_LADDER"]
STOP_LOSS_LADDER = _LIFECYCLE["STOP_LOSS_LADDER"]
LIFECYCLE_KEYS = tuple(_LIFECYCLE)

# Persisted state
POSITIONS_STATE_FILE = os.getenv("POSITIONS_STATE_FILE", os.path.join("data", "positions_state.json"))
STATE_FILE_LOCK_TIMEOUT_SECONDS = max(0.1, float(os.getenv("STATE_FILE_LOCK_TIMEOUT_SECONDS", "2.0")))
STATE_FILE_LOCK_RETRY_SECONDS = max(0.01, float(os.getenv("STATE_FILE_LOCK_RETRY_SECONDS", "0.05")))
STATE_FLUSH_RETRIES = max(1, int(os.getenv("STATE_FLUSH_RETRIES", "3")))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
EVENT_LOG_FILE = os.getenv("EVENT_LOG_FILE", os.path.join(LOG_DIR, "events.jsonl"))
