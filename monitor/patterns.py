"""Token-creation patterns: gas-price/gas-limit rules with per-pattern trading parameters."""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, field, replace
from typing import Any

import config

logger = logging.getLogger(__name__)

# JSON bundle key -> TradingParams field. Snake-case keys are accepted too.
_PARAM_KEYS: dict[str, str] = {
    "buyThresholdUSD": "buy_threshold_usd",
    "reentryBuyThresholdUSD": "reentry_buy_threshold_usd",
    "firstSellPercent": "first_sell_percent",
    "secondSellPercent": "second_sell_percent",
    "stopLossFromPeakPercent": "stop_loss_from_peak_percent",
    "priceStagnationTimeoutSeconds": "stagnation_timeout_seconds",
    "buyAmountBNB": "buy_amount_native",
}


@dataclass(frozen=True)
class TradingParams:
    buy_threshold_usd: float
    reentry_buy_threshold_usd: float
    first_sell_percent: float
    second_sell_percent: float
    stop_loss_from_peak_percent: float
    stagnation_timeout_seconds: float
    buy_amount_native: float

    @classmethod
    def from_config(cls) -> "TradingParams":
        return cls(
            buy_threshold_usd=float(config.LOW_THRESHOLD_USD),
            reentry_buy_threshold_usd=float(config.REENTRY_LOW_THRESHOLD_USD),
            first_sell_percent=float(config.FIRST_SELL_PERCENT),
            second_sell_percent=float(config.SECOND_SELL_PERCENT),
            stop_loss_from_peak_percent=float(config.STOP_LOSS_FROM_PEAK_PERCENT),
            stagnation_timeout_seconds=float(config.PRICE_STAGNATION_TIMEOUT_SECONDS),
            buy_amount_native=float(config.BUY_AMOUNT_NATIVE),
        )

    def with_overrides(self, bundle: dict[str, Any] | None) -> "TradingParams":
        changes: dict[str, float] = {}
        for key, value in (bundle or {}).items():
            name = _PARAM_KEYS.get(key, key)
            if name not in self.__dataclass_fields__ or value is None:
                continue
            try:
                changes[name] = float(value)
            except (TypeError, ValueError):
                logger.warning("PATTERN_PARAM invalid key=%s value=%r", key, value)
        if "buy_amount_native" in changes:
            changes["buy_amount_native"] = min(float(config.MAX_BUY_AMOUNT_NATIVE), changes["buy_amount_native"])
        return replace(self, **changes)


@dataclass(frozen=True)
class ValueRange:
    low: float = 0.0
    high: float = math.inf

    def contains(self, value: float) -> bool:
        return self.low <= float(value) <= self.high

    @classmethod
    def parse(cls, raw: Any) -> "ValueRange":
        if not isinstance(raw, dict):
            return cls()
        low = raw.get("min")
        high = raw.get("max")
        return cls(
            low=float(low) if low is not None else 0.0,
            high=float(high) if high is not None else math.inf,
        )


@dataclass(frozen=True)
class TradingPattern:
    name: str
    enabled: bool = True
    priority: int = 0
    gas_price_gwei: ValueRange = field(default_factory=ValueRange)
    gas_limit: ValueRange = field(default_factory=ValueRange)
    trading: dict[str, Any] = field(default_factory=dict)

    def matches(self, gas_price_gwei: float, gas_limit: int) -> bool:
        return self.gas_price_gwei.contains(gas_price_gwei) and self.gas_limit.contains(gas_limit)

    def trading_params(self, defaults: TradingParams | None = None) -> TradingParams:
        base = defaults if defaults is not None else TradingParams.from_config()
        return base.with_overrides(self.trading)


def parse_pattern(raw: dict[str, Any], position: int) -> TradingPattern:
    name = str(raw.get("name") or f"pattern_{position}").strip()
    priority = raw.get("priority")
    return TradingPattern(
        name=name,
        enabled=bool(raw.get("enabled", True)),
        priority=int(priority) if priority is not None else position,
        gas_price_gwei=ValueRange.parse(raw.get("gasPrice", raw.get("gas_price"))),
        gas_limit=ValueRange.parse(raw.get("gasLimit", raw.get("gas_limit"))),
        trading=dict(raw.get("trading") or {}),
    )


def load_patterns(path: str | None = None) -> list[TradingPattern]:
    """Load the pattern store. A missing file yields an empty list."""
    pattern_file = os.path.abspath(path or config.PATTERNS_FILE)
    if not os.path.exists(pattern_file):
        logger.warning("PATTERNS_MISSING file=%s", pattern_file)
        return []
    with open(pattern_file, "r", encoding="utf-8-sig") as f:
        payload = json.load(f)
    rows = payload.get("patterns", []) if isinstance(payload, dict) else payload
    patterns = [parse_pattern(row, idx) for idx, row in enumerate(rows or []) if isinstance(row, dict)]
    logger.info(
        "PATTERNS_LOADED file=%s total=%s enabled=%s",
        pattern_file,
        len(patterns),
        sum(1 for p in patterns if p.enabled),
    )
    return patterns


def match_pattern(event: Any, patterns: list[TradingPattern]) -> TradingPattern | None:
    """Return the highest-precedence enabled pattern whose ranges contain the event's gas values."""
    ordered = sorted((p for p in patterns if p.enabled), key=lambda p: (p.priority, p.name))
    for pattern in ordered:
        if pattern.matches(event.gas_price_gwei, event.gas_limit):
            return pattern
    return None
