"""Application configuration."""

import json
import os
from pathlib import Path
from typing import List

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


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_address_list(raw: str) -> List[str]:
    """Accept a JSON array or a comma separated list of addresses."""
    text = str(raw or "").strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            items = json.loads(text)
        except ValueError:
            items = []
    else:
        items = text.split(",")
    out: List[str] = []
    for item in items:
        value = str(item or "").strip().lower()
        if value and value not in out:
            out.append(value)
    return out


def _parse_rpc_urls(raw: str) -> List[str]:
    text = str(raw or "").strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            items = json.loads(text)
        except ValueError:
            items = []
    else:
        items = text.split(",")
    return [str(item).strip() for item in items if str(item or "").strip()]


# Chain / RPC
EVM_CHAIN_ID = int(os.getenv("EVM_CHAIN_ID", "56"))
RPC_URLS = _parse_rpc_urls(os.getenv("RPC_URLS", "")) or _parse_rpc_urls(
    os.getenv("RPC_URL", "https://bsc-dataseed.binance.org")
)
RPC_TIMEOUT_SECONDS = max(1, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
RPC_RETRY_ATTEMPTS = max(1, int(os.getenv("RPC_RETRY_ATTEMPTS", "3")))
RPC_BACKOFF_SECONDS = max(0.0, float(os.getenv("RPC_BACKOFF_SECONDS", "0.3")))

# Launch platform (four.meme on BSC)
PLATFORM_CONTRACT_ADDRESS = os.getenv(
    "PLATFORM_CONTRACT_ADDRESS", "0x5c952063c7fc8610ffdb798152d69f0b9550762b"
).strip().lower()
CREATE_TOKEN_SELECTOR = os.getenv("CREATE_TOKEN_SELECTOR", "0x519ebb10").strip().lower()
TOKEN_MANAGER_HELPER_ADDRESS = os.getenv(
    "TOKEN_MANAGER_HELPER_ADDRESS", "0xF251F83e40a78868FcfA3FA4599Dad6494E46034"
).strip()
WRAPPED_NATIVE_ADDRESS = os.getenv(
    "WRAPPED_NATIVE_ADDRESS", "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"
).strip()
QUOTE_USD_ADDRESS = os.getenv("QUOTE_USD_ADDRESS", "0x55d398326f99059fF775485246999027B3197955").strip()
QUOTE_ROUTER_ADDRESS = os.getenv("QUOTE_ROUTER_ADDRESS", "0x10ED43C718714eb63d5aA57B78B54704E256024E").strip()
STABLE_QUOTE_ADDRESSES = _parse_address_list(
    os.getenv(
        "STABLE_QUOTE_ADDRESSES",
        ",".join(
            [
                "0x55d398326f99059ff775485246999027b3197955",  # USDT
                "0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d",  # USDC
                "0x90c97f71e18723b0cf0dfa30ee176ab653e89f40",  # FRAX
                "0xe0e514c71282b6f4e823703a39374cf58dc3ea4f",
                "0x1b80eeead41c2ed6cc1f70f76105f0e4e0f76d1c",
                "0x1fad948c7f211bcae0d67b2b31c6bd3fa69a3c7f",
                "0xe0007e25c4d4c8e6aa2f17b84da7b7c8f7c3f2b7",
            ]
        ),
    )
)

# Quote asset (BNB) -> USD price
QUOTE_PRICE_SOURCE = os.getenv("QUOTE_PRICE_SOURCE", "router").strip().lower()
QUOTE_PRICE_TTL_SECONDS = max(1, int(os.getenv("QUOTE_PRICE_TTL_SECONDS", "60")))
QUOTE_PRICE_FALLBACK_USD = float(os.getenv("QUOTE_PRICE_FALLBACK_USD", "1000"))
QUOTE_PRICE_RETRY_SECONDS = max(1, int(os.getenv("QUOTE_PRICE_RETRY_SECONDS", "10")))
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex").strip().rstrip("/")
# WBNB/USDT PancakeSwap v2 pair.
QUOTE_PAIR_ADDRESS = os.getenv("QUOTE_PAIR_ADDRESS", "0x16b9a82891338f9ba80e2d6970fdda79d1eb0dae").strip().lower()
HTTP_TIMEOUT_SECONDS = max(1, int(os.getenv("HTTP_TIMEOUT_SECONDS", "10")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.5")))
HTTP_BACKOFF_MAX_SECONDS = max(HTTP_BACKOFF_BASE_SECONDS, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "4")))

# Price validation
PRICE_MIN_USD = float(os.getenv("PRICE_MIN_USD", "0.00000001"))
PRICE_MAX_USD = float(os.getenv("PRICE_MAX_USD", "1"))
UNKNOWN_QUOTE_NATIVE_MAX = float(os.getenv("UNKNOWN_QUOTE_NATIVE_MAX", "0.000001"))

# Discovery
SCAN_INTERVAL_SECONDS = max(0.05, float(os.getenv("SCAN_INTERVAL_SECONDS", "0.3")))
MAX_BLOCKS_PER_SCAN = max(1, int(os.getenv("MAX_BLOCKS_PER_SCAN", "1")))
SCAN_START_OFFSET_BLOCKS = max(0, int(os.getenv("SCAN_START_OFFSET_BLOCKS", "10")))
PATTERNS_FILE = os.getenv("PATTERNS_FILE", "patterns.json").strip()
MAX_CONCURRENT_TOKENS = max(1, int(os.getenv("MAX_CONCURRENT_TOKENS", "200")))

# Trading
TRADING_ENABLED = _env_bool("TRADING_ENABLED", False)
TEST_MODE = _env_bool("TEST_MODE", True)
LOW_THRESHOLD_USD = float(os.getenv("LOW_THRESHOLD_USD", "0.00002"))
REENTRY_LOW_THRESHOLD_USD = float(os.getenv("REENTRY_LOW_THRESHOLD_USD", str(LOW_THRESHOLD_USD)))
FIRST_SELL_PERCENT = max(0.0, float(os.getenv("FIRST_SELL_PERCENT", "20")))
SECOND_SELL_PERCENT = max(FIRST_SELL_PERCENT, float(os.getenv("SECOND_SELL_PERCENT", "50")))
STOP_LOSS_FROM_PEAK_PERCENT = min(100.0, max(0.0, float(os.getenv("STOP_LOSS_FROM_PEAK_PERCENT", "15"))))
PRICE_STAGNATION_TIMEOUT_SECONDS = max(1, int(os.getenv("PRICE_STAGNATION_TIMEOUT_SECONDS", "30")))
MAX_TRADES_PER_TOKEN = max(1, int(os.getenv("MAX_TRADES_PER_TOKEN", "2")))
REENTRY_ENABLED = _env_bool("REENTRY_ENABLED", False)
SELL_COOLDOWN_SECONDS = max(0, int(os.getenv("SELL_COOLDOWN_SECONDS", "5")))
MAX_BUY_AMOUNT_NATIVE = max(0.0, float(os.getenv("MAX_BUY_AMOUNT_NATIVE", "0.01")))
BUY_AMOUNT_NATIVE = min(MAX_BUY_AMOUNT_NATIVE, max(0.0, float(os.getenv("BUY_AMOUNT_NATIVE", "0.001"))))

# Monitoring
MONITOR_INTERVAL_SECONDS = max(0.1, float(os.getenv("MONITOR_INTERVAL_SECONDS", "1")))
INACTIVE_TIMEOUT_MINUTES = max(1, int(os.getenv("INACTIVE_TIMEOUT_MINUTES", "30")))
PRICE_CHANGE_THRESHOLD_PERCENT = max(0.0, float(os.getenv("PRICE_CHANGE_THRESHOLD_PERCENT", "0.000001")))
LOW_PRICE_REMOVAL_USD = max(0.0, float(os.getenv("LOW_PRICE_REMOVAL_USD", "0.00000001")))
LOW_PRICE_REMOVAL_MINUTES = max(0, int(os.getenv("LOW_PRICE_REMOVAL_MINUTES", "10")))
MONITOR_BATCH_SIZE = max(1, int(os.getenv("MONITOR_BATCH_SIZE", "3")))
MONITOR_BATCH_DELAY_MS = max(0, int(os.getenv("MONITOR_BATCH_DELAY_MS", "0")))

# Safety
MAX_TRADES_PER_HOUR = max(0, int(os.getenv("MAX_TRADES_PER_HOUR", "50")))
MAX_TRADES_PER_DAY = max(0, int(os.getenv("MAX_TRADES_PER_DAY", "200")))
EMERGENCY_STOP = _env_bool("EMERGENCY_STOP", False)
KILL_SWITCH_FILE = os.getenv("KILL_SWITCH_FILE", os.path.join("data", "kill.txt")).strip()
MIN_WALLET_BALANCE_NATIVE = max(0.0, float(os.getenv("MIN_WALLET_BALANCE_NATIVE", "0.01")))

# Live execution
LIVE_PRIVATE_KEY = os.getenv("LIVE_PRIVATE_KEY", "").strip()
LIVE_WALLET_ADDRESS = os.getenv("LIVE_WALLET_ADDRESS", "").strip()
LIVE_GAS_LIMIT = max(21_000, int(os.getenv("LIVE_GAS_LIMIT", "500000")))
LIVE_APPROVE_GAS_LIMIT = max(21_000, int(os.getenv("LIVE_APPROVE_GAS_LIMIT", "100000")))
LIVE_MAX_GAS_GWEI = max(0.0, float(os.getenv("LIVE_MAX_GAS_GWEI", "5")))
LIVE_TX_TIMEOUT_SECONDS = max(5, int(os.getenv("LIVE_TX_TIMEOUT_SECONDS", "60")))

# Runtime
STATUS_INTERVAL_SECONDS = max(1, int(os.getenv("STATUS_INTERVAL_SECONDS", "30")))
SHUTDOWN_TIMEOUT_SECONDS = max(1, int(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "15")))
RUN_TAG = os.getenv("RUN_TAG", "single").strip() or "single"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
TELEMETRY_FILE = os.getenv("TELEMETRY_FILE", os.path.join(LOG_DIR, "events.jsonl"))


def config_problems() -> List[str]:
    """Return misconfigurations that must stop the process at startup."""
    problems: List[str] = []
    if not RPC_URLS:
        problems.append("RPC_URLS/RPC_URL is empty")
    if not PLATFORM_CONTRACT_ADDRESS:
        problems.append("PLATFORM_CONTRACT_ADDRESS is empty")
    if not TOKEN_MANAGER_HELPER_ADDRESS:
        problems.append("TOKEN_MANAGER_HELPER_ADDRESS is empty")
    if QUOTE_PRICE_SOURCE not in {"router", "dexscreener"}:
        problems.append(f"QUOTE_PRICE_SOURCE must be router or dexscreener, got {QUOTE_PRICE_SOURCE!r}")
    if BUY_AMOUNT_NATIVE <= 0:
        problems.append("BUY_AMOUNT_NATIVE must be positive")
    if not TEST_MODE and not LIVE_PRIVATE_KEY:
        problems.append("LIVE_PRIVATE_KEY is required when TEST_MODE=false")
    return problems
