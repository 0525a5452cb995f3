"""Pure per-token decision rules: price update, entry, exit and removal.

Every function takes a MonitoredToken and returns an updated copy plus at
most one intent. Nothing here awaits, locks or talks to the chain, so the
rules can be exercised directly in tests and the loop decides when to act.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

import config
from trading.registry import MonitoredToken

PRICE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class DecisionSettings:
    max_trades_per_token: int
    reentry_enabled: bool
    noise_threshold_percent: float
    inactive_timeout_seconds: float
    low_price_floor_usd: float
    low_price_timeout_seconds: float

    @classmethod
    def from_config(cls) -> "DecisionSettings":
        return cls(
            max_trades_per_token=int(config.MAX_TRADES_PER_TOKEN),
            reentry_enabled=bool(config.REENTRY_ENABLED),
            noise_threshold_percent=float(config.PRICE_CHANGE_THRESHOLD_PERCENT),
            inactive_timeout_seconds=float(config.INACTIVE_TIMEOUT_MINUTES) * 60.0,
            low_price_floor_usd=float(config.LOW_PRICE_REMOVAL_USD),
            low_price_timeout_seconds=float(config.LOW_PRICE_REMOVAL_MINUTES) * 60.0,
        )


@dataclass(frozen=True)
class TradeIntent:
    side: str
    mode: str = "all"
    reason: str = ""


@dataclass(frozen=True)
class RemovalIntent:
    reason: str
    mark_traded: bool = False


@dataclass
class DecisionStep:
    token: MonitoredToken
    trade: TradeIntent | None = None


def _reached(price: float, target: float) -> bool:
    return price >= target or math.isclose(price, target, rel_tol=PRICE_TOLERANCE)


def _fell_to(price: float, target: float) -> bool:
    return price <= target or math.isclose(price, target, rel_tol=PRICE_TOLERANCE)


def apply_price(token: MonitoredToken, price_usd: float, now_ts: float, noise_threshold_percent: float) -> MonitoredToken:
    previous = float(token.current_price_usd)
    change_percent = ((price_usd - previous) / previous * 100.0) if previous > 0 else 0.0
    updated = replace(
        token,
        previous_price_usd=previous,
        current_price_usd=float(price_usd),
        price_change_percent=change_percent,
    )
    if previous <= 0 or abs(change_percent) > noise_threshold_percent:
        updated.last_price_update_ts = now_ts
        updated.last_price_change_ts = now_ts
    return updated


def entry_threshold(token: MonitoredToken) -> float:
    if token.has_completed_first_cycle:
        return float(token.params.reentry_buy_threshold_usd)
    return float(token.params.buy_threshold_usd)


def evaluate_entry(token: MonitoredToken, settings: DecisionSettings, now_ts: float) -> DecisionStep:
    """Open a position optimistically when every entry condition holds."""
    price = float(token.current_price_usd)
    if token.position_open or price <= 0:
        return DecisionStep(token)
    if token.trade_count >= settings.max_trades_per_token:
        return DecisionStep(token)
    if token.trade_count > 0 and not settings.reentry_enabled:
        return DecisionStep(token)
    if not _reached(price, entry_threshold(token)):
        return DecisionStep(token)
    if price <= float(token.last_sell_price_usd):
        return DecisionStep(token)

    opened = replace(
        token,
        position_open=True,
        buy_price_usd=price,
        buy_ts=now_ts,
        peak_price_usd=price,
        has_sold_half=False,
        last_price_change_ts=now_ts,
        sell_price_usd=0.0,
        sell_tx_ref="",
    )
    reason = "reentry_threshold" if token.has_completed_first_cycle else "buy_threshold"
    return DecisionStep(opened, TradeIntent(side="buy", reason=reason))


def evaluate_exit(token: MonitoredToken, now_ts: float) -> DecisionStep:
    """Raise the running peak, then pick the first exit rule that fires.

    Order: first-threshold half sell, second-threshold full sell, stop loss
    measured from the peak, stagnation timeout.
    """
    if not token.position_open or token.sell_finalized or token.buy_price_usd <= 0:
        return DecisionStep(token)
    price = float(token.current_price_usd)
    if price > token.peak_price_usd:
        token = replace(token, peak_price_usd=price)

    params = token.params
    buy = float(token.buy_price_usd)
    if not token.has_sold_half and _reached(price, buy * (1.0 + params.first_sell_percent / 100.0)):
        return DecisionStep(token, TradeIntent(side="sell", mode="half", reason="first_sell"))
    if _reached(price, buy * (1.0 + params.second_sell_percent / 100.0)):
        return DecisionStep(token, TradeIntent(side="sell", mode="all", reason="second_sell"))
    if params.stop_loss_from_peak_percent > 0 and _fell_to(
        price, token.peak_price_usd * (1.0 - params.stop_loss_from_peak_percent / 100.0)
    ):
        return DecisionStep(token, TradeIntent(side="sell", mode="all", reason="stop_loss_peak"))
    if (now_ts - float(token.last_price_change_ts)) > float(params.stagnation_timeout_seconds):
        return DecisionStep(token, TradeIntent(side="sell", mode="all", reason="stagnation"))
    return DecisionStep(token)


def decide(
    token: MonitoredToken,
    price_usd: float | None,
    settings: DecisionSettings,
    now_ts: float,
    allow_entry: bool = True,
) -> DecisionStep:
    """One loop step for one token. `price_usd` is None when the read failed."""
    if price_usd is not None:
        token = apply_price(token, price_usd, now_ts, settings.noise_threshold_percent)
    if token.position_open:
        return evaluate_exit(token, now_ts)
    if not allow_entry:
        return DecisionStep(token)
    return evaluate_entry(token, settings, now_ts)


def evaluate_removal(
    token: MonitoredToken,
    settings: DecisionSettings,
    now_ts: float,
) -> tuple[MonitoredToken, RemovalIntent | None]:
    price = float(token.current_price_usd)
    floor = float(settings.low_price_floor_usd)
    if floor > 0 and 0 < price <= floor:
        if token.low_price_since_ts is None:
            token = replace(token, low_price_since_ts=now_ts)
    elif token.low_price_since_ts is not None:
        token = replace(token, low_price_since_ts=None)

    last_update = float(token.last_price_update_ts or token.created_ts)
    if (now_ts - last_update) >= settings.inactive_timeout_seconds:
        return token, RemovalIntent(reason="inactive")

    if token.sell_finalized and (
        not settings.reentry_enabled or token.trade_count >= settings.max_trades_per_token
    ):
        return token, RemovalIntent(reason="post_trade", mark_traded=True)

    if (
        token.low_price_since_ts is not None
        and settings.low_price_timeout_seconds > 0
        and (now_ts - token.low_price_since_ts) >= settings.low_price_timeout_seconds
    ):
        return token, RemovalIntent(reason="low_price")
    return token, None
