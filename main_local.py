"""Local runner: discovery, pricing and status loops over one token registry."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Any, Awaitable, Callable

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from monitor.launch_scanner import LaunchScanner
from monitor.ledger import Web3Ledger
from monitor.patterns import TradingPattern, load_patterns
from monitor.quote_price import DexScreenerQuoteSource, QuotePriceCache, RouterQuoteSource
from monitor.telemetry import TelemetrySink
from monitor.token_price import TokenPriceReader
from trading.executor import TradeExecutor
from trading.live_executor import LiveOrderSubmitter
from trading.paper_executor import PaperOrderSubmitter
from trading.price_loop import PriceDecisionLoop
from trading.registry import TokenRegistry
from utils.http_client import FeedHttpClient

logger = logging.getLogger(__name__)
RUN_TAG = str(config.RUN_TAG or "single").strip() or "single"


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] [%(run_tag)s] %(name)s: %(message)s")
    prev_factory = logging.getLogRecordFactory()

    def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = prev_factory(*args, **kwargs)
        if not hasattr(record, "run_tag"):
            setattr(record, "run_tag", RUN_TAG)
        return record

    logging.setLogRecordFactory(_record_factory)

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


@dataclass
class LocalRuntime:
    registry: TokenRegistry
    telemetry: TelemetrySink
    quote_cache: QuotePriceCache
    executor: TradeExecutor
    price_loop: PriceDecisionLoop
    scanner: LaunchScanner
    http: FeedHttpClient | None = None
    started_at: float = field(default_factory=time.monotonic)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)


def build_submitter() -> Any:
    if config.TEST_MODE:
        return PaperOrderSubmitter()
    try:
        submitter = LiveOrderSubmitter()
    except Exception as exc:
        raise SystemExit(f"Live trading wallet init failed: {exc}") from exc
    logger.info(
        "LIVE_WALLET address=%s balance=%.6f",
        submitter.wallet,
        submitter.native_balance(),
    )
    return submitter


def build_runtime(patterns: list[TradingPattern] | None = None, submitter: Any = None) -> LocalRuntime:
    ledger = Web3Ledger()
    http: FeedHttpClient | None = None
    if config.QUOTE_PRICE_SOURCE == "dexscreener":
        http = FeedHttpClient()
        source: Any = DexScreenerQuoteSource(http)
    else:
        source = RouterQuoteSource(ledger)
    quote_cache = QuotePriceCache(source)
    price_reader = TokenPriceReader(ledger, quote_cache)
    registry = TokenRegistry(config.MAX_CONCURRENT_TOKENS)
    telemetry = TelemetrySink(config.TELEMETRY_FILE)
    executor = TradeExecutor(
        registry,
        submitter if submitter is not None else build_submitter(),
        telemetry,
        quote_cache=quote_cache,
    )
    if patterns is None:
        patterns = load_patterns(config.PATTERNS_FILE)
    return LocalRuntime(
        registry=registry,
        telemetry=telemetry,
        quote_cache=quote_cache,
        executor=executor,
        price_loop=PriceDecisionLoop(registry, price_reader, quote_cache, executor, telemetry),
        scanner=LaunchScanner(ledger, registry, price_reader, patterns, telemetry),
        http=http,
    )


def _format_uptime(seconds: float) -> str:
    total = int(max(0.0, seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}h{minutes:02d}m{secs:02d}s"


async def log_status(runtime: LocalRuntime) -> None:
    tokens = await runtime.registry.active_snapshot()
    usage = await runtime.registry.pattern_usage()
    stats = runtime.telemetry.stats
    open_positions = sum(1 for token in tokens if token.position_open)
    logger.info(
        "STATUS uptime=%s tracked=%s open=%s traded=%s quote=$%.2f mode=%s scanned_block=%s",
        _format_uptime(time.monotonic() - runtime.started_at),
        len(tokens),
        open_positions,
        len(runtime.registry.traded_addresses()),
        runtime.quote_cache.last_price_usd,
        runtime.executor.mode,
        runtime.scanner.last_processed_block,
    )
    top = sorted(tokens, key=lambda t: t.price_change_percent, reverse=True)[:10]
    for token in top:
        logger.info(
            "STATUS token=%s pattern=%s price=$%.10f change=%.2f%% open=%s trades=%s",
            token.address,
            token.matched_pattern,
            token.current_price_usd,
            token.price_change_percent,
            token.position_open,
            token.trade_count,
        )
    for name, row in usage.items():
        logger.info(
            "STATUS pattern=%s active=%s traded=%s total=%s",
            name,
            row["active"],
            row["traded"],
            row["total"],
        )
    logger.info(
        "STATUS stats monitored=%s traded=%s trades=%s buys=%s/%s sells=%s/%s pnl=$%.4f errors=%s",
        stats.tokens_monitored,
        stats.tokens_traded,
        stats.total_trades,
        stats.successful_buys,
        stats.failed_buys,
        stats.successful_sells,
        stats.failed_sells,
        stats.total_profit_usd,
        stats.errors,
    )


async def run_periodic(
    name: str,
    interval_seconds: float,
    step: Callable[[], Awaitable[Any]],
    stop_event: asyncio.Event,
) -> None:
    """Run `step` every `interval_seconds` until `stop_event` is set."""
    while not stop_event.is_set():
        started = time.perf_counter()
        try:
            await step()
        except Exception:
            logger.exception("LOOP_ERROR loop=%s", name)
        elapsed = time.perf_counter() - started
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, float(interval_seconds) - elapsed))
        except asyncio.TimeoutError:
            pass


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C cancels asyncio.run instead.
            pass


async def shutdown(runtime: LocalRuntime) -> None:
    runtime.stop_event.set()
    idle = await runtime.executor.wait_idle(float(config.SHUTDOWN_TIMEOUT_SECONDS))
    if not idle:
        logger.warning(
            "SHUTDOWN trades_still_in_flight buys=%s sells=%s",
            runtime.executor.buy_locks.held_keys(),
            runtime.executor.sell_locks.held_keys(),
        )
    if runtime.http is not None:
        await runtime.http.close()
    await log_status(runtime)
    logger.info("SHUTDOWN complete stats=%s", runtime.telemetry.stats.as_dict())


async def run_local_loop() -> None:
    runtime = build_runtime()
    if not runtime.scanner.patterns:
        logger.warning("No trading patterns loaded from %s; discovery will not register tokens.", config.PATTERNS_FILE)
    await runtime.quote_cache.refresh()
    _install_signal_handlers(runtime.stop_event)

    logger.info(
        "Local mode started. mode=%s patterns=%s platform=%s quote_source=%s quote=$%.2f",
        runtime.executor.mode,
        len(runtime.scanner.patterns),
        config.PLATFORM_CONTRACT_ADDRESS,
        config.QUOTE_PRICE_SOURCE,
        runtime.quote_cache.last_price_usd,
    )
    tasks = [
        asyncio.create_task(
            run_periodic("discovery", config.SCAN_INTERVAL_SECONDS, runtime.scanner.tick, runtime.stop_event)
        ),
        asyncio.create_task(
            run_periodic("price", config.MONITOR_INTERVAL_SECONDS, runtime.price_loop.tick, runtime.stop_event)
        ),
        asyncio.create_task(
            run_periodic("status", config.STATUS_INTERVAL_SECONDS, lambda: log_status(runtime), runtime.stop_event)
        ),
    ]
    try:
        await runtime.stop_event.wait()
        logger.info("SHUTDOWN requested")
        await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await shutdown(runtime)


def main() -> None:
    configure_logging()
    problems = config.config_problems()
    if problems:
        for problem in problems:
            logger.error("CONFIG %s", problem)
        raise SystemExit("Invalid configuration. Fix .env and restart.")
    if not config.TRADING_ENABLED:
        logger.error("TRADING_ENABLED=false. Set TRADING_ENABLED=true to start the bot.")
        raise SystemExit(1)
    try:
        asyncio.run(run_local_loop())
    except KeyboardInterrupt:
        logger.info("Interrupted.")


if __name__ == "__main__":
    main()
