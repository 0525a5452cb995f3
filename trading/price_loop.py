"""Periodic re-pricing of monitored tokens and dispatch of trade/removal decisions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import config
from monitor.ledger import TransientIOError
from monitor.telemetry import TelemetrySink
from monitor.token_price import ImplausiblePrice, NotLiquidUnavailable
from trading.decision import DecisionSettings, DecisionStep, RemovalIntent, TradeIntent, decide, evaluate_removal
from trading.executor import TradeExecutor
from trading.registry import MonitoredToken, TokenRegistry

logger = logging.getLogger(__name__)


def _now_ts() -> float:
    return datetime.now(timezone.utc).timestamp()


class PriceDecisionLoop:
    def __init__(
        self,
        registry: TokenRegistry,
        price_reader: Any,
        quote_cache: Any,
        executor: TradeExecutor,
        telemetry: TelemetrySink,
    ) -> None:
        self.registry = registry
        self.price_reader = price_reader
        self.quote_cache = quote_cache
        self.executor = executor
        self.telemetry = telemetry
        self.ticks = 0
        self.price_reads_ok = 0
        self.price_reads_failed = 0
        # Tokens whose latest read failed; a failure streak is reported once.
        self._failing: set[str] = set()

    async def tick(self) -> int:
        """Re-price every tracked token once. Returns how many tokens were processed."""
        self.ticks += 1
        if self.quote_cache.is_stale():
            await self.quote_cache.refresh()
        tokens = await self.registry.active_snapshot()
        if not tokens:
            return 0

        settings = DecisionSettings.from_config()
        blocked = self.executor.buy_block_reason()
        if blocked:
            logger.debug("PRICE_LOOP entries_blocked reason=%s", blocked)
        batch_size = max(1, int(config.MONITOR_BATCH_SIZE))
        batch_delay = max(0.0, float(config.MONITOR_BATCH_DELAY_MS) / 1000.0)
        for start in range(0, len(tokens), batch_size):
            batch = tokens[start : start + batch_size]
            await asyncio.gather(*(self._process_token(token, settings, not blocked) for token in batch))
            if batch_delay > 0 and start + batch_size < len(tokens):
                await asyncio.sleep(batch_delay)
        return len(tokens)

    async def _read_price(self, token: MonitoredToken) -> float | None:
        address = token.address
        try:
            quote = await self.price_reader.read_price(address)
        except (NotLiquidUnavailable, ImplausiblePrice) as exc:
            self._price_failed(token, "price_unavailable", exc)
            return None
        except TransientIOError as exc:
            self._price_failed(token, "price_rpc_error", exc)
            return None
        except Exception as exc:
            logger.warning("PRICE_READ unexpected_error token=%s err=%s", address, exc)
            self._price_failed(token, "price_error", exc)
            return None
        self.price_reads_ok += 1
        self._failing.discard(address)
        return float(quote.price_usd)

    def _price_failed(self, token: MonitoredToken, reason: str, exc: Exception) -> None:
        self.price_reads_failed += 1
        logger.debug("PRICE_READ failed token=%s reason=%s err=%s", token.address, reason, exc)
        if token.address in self._failing:
            return
        self._failing.add(token.address)
        self.telemetry.emit(
            "error",
            token.address,
            reason=reason,
            detail=f"{type(exc).__name__}: {exc}",
            price_usd=token.current_price_usd,
            matched_pattern=token.matched_pattern,
            trade_cycle=token.trade_cycle,
        )

    async def _process_token(self, token: MonitoredToken, settings: DecisionSettings, allow_entry: bool) -> None:
        address = token.address
        try:
            price = await self._read_price(token)
            now_ts = _now_ts()
            steps: list[DecisionStep] = []

            def _decide(t: MonitoredToken) -> MonitoredToken:
                step = decide(t, price, settings, now_ts, allow_entry=allow_entry)
                steps.append(step)
                return step.token

            if await self.registry.update(address, _decide) is None:
                return
            if steps and steps[0].trade is not None:
                await self._dispatch(address, steps[0].trade)

            removals: list[RemovalIntent] = []

            def _check_removal(t: MonitoredToken) -> MonitoredToken:
                updated, intent = evaluate_removal(t, settings, _now_ts())
                if intent is not None:
                    removals.append(intent)
                return updated

            if await self.registry.update(address, _check_removal) is None:
                return
            if removals:
                await self.executor.retire(address, removals[0].reason, mark_traded=removals[0].mark_traded)
        except Exception as exc:
            logger.exception("PRICE_LOOP token_error token=%s", address)
            self.telemetry.emit("error", address, reason="loop_error", detail=f"{type(exc).__name__}: {exc}")

    async def _dispatch(self, address: str, intent: TradeIntent) -> None:
        if intent.side == "buy":
            await self.executor.buy(address)
        else:
            await self.executor.sell(address, intent.mode, reason=intent.reason)
