"""Per-token trade execution and reconciliation into the registry."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import config
from monitor.telemetry import TelemetrySink
from trading.decision import DecisionSettings
from trading.live_executor import MigratedOrUnsupported, NoFundedResource, OrderResult
from trading.registry import MonitoredToken, TokenRegistry
from utils.keyed_lock import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class TradeResult:
    success: bool
    side: str
    mode: str = ""
    reference: str = ""
    error: str = ""
    token: MonitoredToken | None = None
    finalized: bool = False


def _now_ts() -> float:
    return datetime.now(timezone.utc).timestamp()


def _error_key(exc: Exception) -> str:
    if isinstance(exc, NoFundedResource):
        return "no_funded_resource"
    if isinstance(exc, MigratedOrUnsupported):
        return "migrated_or_unsupported"
    return ""


class TradeExecutor:
    """Runs buy/sell orders with one in-flight operation per token and side.

    Buy and sell use independent lock maps. A busy lock means the same
    operation is already running for that token, so the call returns a failed
    result immediately instead of queueing a duplicate order.
    """

    def __init__(
        self,
        registry: TokenRegistry,
        submitter: Any,
        telemetry: TelemetrySink,
        quote_cache: Any = None,
    ) -> None:
        self.registry = registry
        self.submitter = submitter
        self.telemetry = telemetry
        self.quote_cache = quote_cache
        self.buy_locks = KeyedLocks("buy")
        self.sell_locks = KeyedLocks("sell")
        self.trade_open_timestamps: list[float] = []
        self.tx_event_timestamps: list[float] = []

    @property
    def stats(self):
        return self.telemetry.stats

    @property
    def mode(self) -> str:
        return str(getattr(self.submitter, "mode", "paper"))

    @staticmethod
    def _kill_switch_active() -> bool:
        if config.EMERGENCY_STOP:
            return True
        try:
            return bool(config.KILL_SWITCH_FILE) and os.path.exists(config.KILL_SWITCH_FILE)
        except OSError:
            return False

    def _prune_windows(self, now_ts: float) -> None:
        self.trade_open_timestamps = [ts for ts in self.trade_open_timestamps if (now_ts - ts) <= 3600]
        self.tx_event_timestamps = [ts for ts in self.tx_event_timestamps if (now_ts - ts) <= 86400]

    def buy_block_reason(self, now_ts: float | None = None) -> str:
        """Return why new buys are blocked right now, or "" when they are allowed."""
        now_ts = _now_ts() if now_ts is None else now_ts
        if not config.TRADING_ENABLED:
            return "trading_disabled"
        if self._kill_switch_active():
            logger.warning("KILL_SWITCH active path=%s emergency_stop=%s", config.KILL_SWITCH_FILE, config.EMERGENCY_STOP)
            return "kill_switch_active"
        self._prune_windows(now_ts)
        max_per_hour = int(config.MAX_TRADES_PER_HOUR)
        if max_per_hour > 0 and len(self.trade_open_timestamps) >= max_per_hour:
            return "hourly_cap"
        max_per_day = int(config.MAX_TRADES_PER_DAY)
        if max_per_day > 0 and len(self.tx_event_timestamps) >= max_per_day:
            return "daily_cap"
        return ""

    async def _submit(self, side: str, address: str, *args: Any) -> tuple[OrderResult, str]:
        try:
            if side == "buy":
                result = await self.submitter.submit_buy(address, *args)
            else:
                result = await self.submitter.submit_sell(address, *args)
        except Exception as exc:
            key = _error_key(exc)
            if not key:
                key = f"{side}_fail"
                logger.warning("AUTO_%s submit_error token=%s err=%s", side.upper(), address, exc)
            return OrderResult(success=False, error=f"{type(exc).__name__}: {exc}"), key
        if not result.success:
            return result, f"{side}_fail"
        return result, ""

    async def buy(self, address: str) -> TradeResult:
        async with self.buy_locks.hold(address) as acquired:
            if not acquired:
                return TradeResult(success=False, side="buy", error="buy_in_flight")
            return await self._buy_locked(address)

    async def _buy_locked(self, address: str) -> TradeResult:
        token = await self.registry.get(address)
        if token is None:
            return TradeResult(success=False, side="buy", error="not_tracked")
        now_ts = _now_ts()
        settings = DecisionSettings.from_config()
        if token.trade_count >= settings.max_trades_per_token:
            return await self._buy_failed(token, "trade_cap", "trade_cap")
        blocked = self.buy_block_reason(now_ts)
        if blocked:
            return await self._buy_failed(token, blocked, blocked)

        amount_native = float(token.params.buy_amount_native)
        result, error_key = await self._submit("buy", token.address, amount_native)
        if not result.success:
            return await self._buy_failed(token, error_key, result.error or error_key)

        quote_usd = float(self.quote_cache.last_price_usd) if self.quote_cache is not None else 0.0

        def _record_buy(t: MonitoredToken) -> None:
            price = t.current_price_usd if t.current_price_usd > 0 else t.buy_price_usd
            t.position_open = True
            t.buy_price_usd = price
            t.buy_ts = now_ts
            t.peak_price_usd = price
            t.has_sold_half = False
            t.buy_tx_ref = result.reference
            t.position_size_usd = amount_native * quote_usd
            t.has_been_traded = True

        updated = await self.registry.update(token.address, _record_buy)
        self.trade_open_timestamps.append(now_ts)
        self.tx_event_timestamps.append(now_ts)
        self.stats.successful_buys += 1
        self.stats.total_trades += 1
        price = updated.buy_price_usd if updated is not None else token.current_price_usd
        self.telemetry.emit(
            "entry",
            token.address,
            reason=f"buy_{self.mode}",
            price_usd=price,
            tx_ref=result.reference,
            matched_pattern=token.matched_pattern,
            trade_cycle=token.trade_cycle,
            amount_native=amount_native,
        )
        logger.info(
            "AUTO_BUY %s token=%s price=$%.10f amount=%.6f cycle=%s pattern=%s tx=%s",
            self.mode,
            token.address,
            price,
            amount_native,
            token.trade_cycle,
            token.matched_pattern,
            result.reference,
        )
        return TradeResult(success=True, side="buy", reference=result.reference, token=updated)

    async def _buy_failed(self, token: MonitoredToken, reason: str, detail: str) -> TradeResult:
        def _rollback(t: MonitoredToken) -> None:
            t.position_open = False
            t.buy_price_usd = 0.0
            t.buy_ts = 0.0
            t.peak_price_usd = 0.0

        updated = await self.registry.update(token.address, _rollback)
        self.stats.failed_buys += 1
        self.telemetry.emit(
            "error",
            token.address,
            reason=reason,
            side="buy",
            detail=detail,
            price_usd=token.current_price_usd,
            matched_pattern=token.matched_pattern,
            trade_cycle=token.trade_cycle,
        )
        logger.warning("AUTO_BUY failed token=%s reason=%s detail=%s", token.address, reason, detail)
        return TradeResult(success=False, side="buy", error=detail, token=updated)

    async def sell(self, address: str, mode: str, reason: str = "") -> TradeResult:
        if mode not in {"half", "all"}:
            raise ValueError(f"unknown sell mode: {mode}")
        async with self.sell_locks.hold(address) as acquired:
            if not acquired:
                return TradeResult(success=False, side="sell", mode=mode, error="sell_in_flight")
            return await self._sell_locked(address, mode, reason)

    async def _sell_locked(self, address: str, mode: str, reason: str) -> TradeResult:
        token = await self.registry.get(address)
        if token is None:
            return TradeResult(success=False, side="sell", mode=mode, error="not_tracked")
        if not token.position_open:
            return TradeResult(success=False, side="sell", mode=mode, error="no_open_position", token=token)
        now_ts = _now_ts()
        cooldown = float(config.SELL_COOLDOWN_SECONDS)
        if token.last_sell_attempt_ts > 0 and (now_ts - token.last_sell_attempt_ts) < cooldown:
            logger.debug("AUTO_SELL cooldown token=%s left=%.1fs", token.address, cooldown - (now_ts - token.last_sell_attempt_ts))
            return TradeResult(success=False, side="sell", mode=mode, error="cooldown", token=token)

        def _mark_attempt(t: MonitoredToken) -> None:
            t.last_sell_attempt_ts = now_ts

        await self.registry.update(token.address, _mark_attempt)
        result, error_key = await self._submit("sell", token.address, mode)
        if not result.success:
            self.stats.failed_sells += 1
            self.telemetry.emit(
                "error",
                token.address,
                reason=error_key,
                side="sell",
                mode=mode,
                exit_reason=reason,
                detail=result.error,
                price_usd=token.current_price_usd,
                matched_pattern=token.matched_pattern,
                trade_cycle=token.trade_cycle,
            )
            logger.warning(
                "AUTO_SELL failed token=%s mode=%s exit=%s reason=%s detail=%s",
                token.address,
                mode,
                reason,
                error_key,
                result.error,
            )
            return TradeResult(success=False, side="sell", mode=mode, error=result.error or error_key, token=token)

        settings = DecisionSettings.from_config()
        outcome: dict[str, Any] = {"pnl_usd": 0.0, "finalize": False, "price": token.current_price_usd}

        def _record_sell(t: MonitoredToken) -> None:
            price = t.current_price_usd
            change = (price / t.buy_price_usd - 1.0) if t.buy_price_usd > 0 else 0.0
            outcome["price"] = price
            if mode == "half":
                outcome["pnl_usd"] = t.position_size_usd * 0.5 * change
                t.has_sold_half = True
                t.partial_sell_price_usd = price
                t.partial_sell_tx_ref = result.reference
                t.realized_pnl_usd += outcome["pnl_usd"]
                return
            remaining = 0.5 if t.has_sold_half else 1.0
            outcome["pnl_usd"] = t.position_size_usd * remaining * change
            t.realized_pnl_usd += outcome["pnl_usd"]
            t.sell_price_usd = price
            t.sell_tx_ref = result.reference
            t.position_open = False
            t.last_sell_price_usd = price
            t.trade_count += 1
            if settings.reentry_enabled and t.trade_count < settings.max_trades_per_token:
                t.trade_cycle += 1
                t.has_completed_first_cycle = True
                t.buy_price_usd = 0.0
                t.buy_ts = 0.0
                t.peak_price_usd = 0.0
                t.has_sold_half = False
                t.position_size_usd = 0.0
                t.buy_tx_ref = ""
                t.partial_sell_price_usd = 0.0
                t.partial_sell_tx_ref = ""
                t.sell_tx_ref = ""
            else:
                outcome["finalize"] = True

        updated = await self.registry.update(token.address, _record_sell)
        self.tx_event_timestamps.append(now_ts)
        self.stats.successful_sells += 1
        self.stats.total_trades += 1
        self.stats.total_profit_usd += float(outcome["pnl_usd"])
        self.telemetry.emit(
            "partial_exit" if mode == "half" else "full_exit",
            token.address,
            reason=reason or mode,
            price_usd=outcome["price"],
            buy_price_usd=token.buy_price_usd,
            peak_price_usd=token.peak_price_usd,
            pnl_usd=outcome["pnl_usd"],
            tx_ref=result.reference,
            matched_pattern=token.matched_pattern,
            trade_cycle=token.trade_cycle,
        )
        logger.info(
            "AUTO_SELL %s token=%s mode=%s exit=%s price=$%.10f buy=$%.10f pnl=$%.4f tx=%s",
            self.mode,
            token.address,
            mode,
            reason,
            outcome["price"],
            token.buy_price_usd,
            outcome["pnl_usd"],
            result.reference,
        )
        if outcome["finalize"]:
            await self.retire(token.address, "post_trade", mark_traded=True)
        return TradeResult(
            success=True,
            side="sell",
            mode=mode,
            reference=result.reference,
            token=updated,
            finalized=bool(outcome["finalize"]),
        )

    async def retire(self, address: str, reason: str, mark_traded: bool = False) -> bool:
        """Remove a token from monitoring and record the removal."""
        removal = await self.registry.remove(address, reason=reason, mark_traded=mark_traded)
        if removal is None:
            return False
        token = removal.token
        if mark_traded or token.has_been_traded:
            self.stats.tokens_traded += 1
        self.telemetry.emit(
            "removal",
            token.address,
            reason=reason,
            price_usd=token.current_price_usd,
            matched_pattern=token.matched_pattern,
            trade_cycle=token.trade_cycle,
            traded=bool(mark_traded or token.has_been_traded),
            realized_pnl_usd=token.realized_pnl_usd,
        )
        return True

    async def stop_monitoring(self, address: str) -> bool:
        """Operator request: stop tracking a token without marking it traded."""
        return await self.retire(address, "manual")

    async def wait_idle(self, timeout: float) -> bool:
        buys_done = await self.buy_locks.wait_idle(timeout)
        sells_done = await self.sell_locks.wait_idle(timeout)
        return buys_done and sells_done
