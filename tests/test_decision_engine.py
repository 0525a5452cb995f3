from __future__ import annotations

import unittest
from dataclasses import replace

from monitor.patterns import TradingParams
from trading.decision import DecisionSettings, apply_price, decide, evaluate_removal
from trading.registry import MonitoredToken

NOW = 1_800_000_000.0
TOKEN = "0x" + "ab" * 20


def _params(**overrides: float) -> TradingParams:
    base = TradingParams(
        buy_threshold_usd=0.00003,
        reentry_buy_threshold_usd=0.00004,
        first_sell_percent=20,
        second_sell_percent=50,
        stop_loss_from_peak_percent=15,
        stagnation_timeout_seconds=30,
        buy_amount_native=0.001,
    )
    return replace(base, **overrides)


def _settings(**overrides: object) -> DecisionSettings:
    base = DecisionSettings(
        max_trades_per_token=2,
        reentry_enabled=False,
        noise_threshold_percent=0.000001,
        inactive_timeout_seconds=1800,
        low_price_floor_usd=1e-8,
        low_price_timeout_seconds=600,
    )
    return replace(base, **overrides)


def _token(**fields: object) -> MonitoredToken:
    defaults: dict[str, object] = {
        "address": TOKEN,
        "creator": "0x" + "cd" * 20,
        "created_ts": NOW - 60,
        "params": _params(),
        "current_price_usd": 0.00002,
        "last_price_update_ts": NOW - 1,
        "last_price_change_ts": NOW - 1,
    }
    defaults.update(fields)
    return MonitoredToken(**defaults)


def _open_position(buy: float, **fields: object) -> MonitoredToken:
    defaults: dict[str, object] = {
        "position_open": True,
        "buy_price_usd": buy,
        "peak_price_usd": buy,
        "current_price_usd": buy,
        "buy_ts": NOW - 5,
        "buy_tx_ref": "TEST_BUY_1",
        "has_been_traded": True,
    }
    defaults.update(fields)
    return _token(**defaults)


class PriceUpdateTests(unittest.TestCase):
    def test_change_above_noise_moves_timestamps(self) -> None:
        token = apply_price(_token(current_price_usd=0.00002), 0.000021, NOW, 0.000001)
        self.assertEqual(token.previous_price_usd, 0.00002)
        self.assertAlmostEqual(token.price_change_percent, 5.0)
        self.assertEqual(token.last_price_update_ts, NOW)
        self.assertEqual(token.last_price_change_ts, NOW)

    def test_unchanged_price_keeps_timestamps(self) -> None:
        token = apply_price(_token(current_price_usd=0.00002), 0.00002, NOW, 0.000001)
        self.assertEqual(token.last_price_update_ts, NOW - 1)
        self.assertEqual(token.last_price_change_ts, NOW - 1)

    def test_first_price_always_moves_timestamps(self) -> None:
        token = apply_price(_token(current_price_usd=0.0, last_price_update_ts=0.0), 0.00002, NOW, 0.000001)
        self.assertEqual(token.price_change_percent, 0.0)
        self.assertEqual(token.last_price_update_ts, NOW)


class EntryTests(unittest.TestCase):
    def test_buy_fires_when_price_reaches_threshold(self) -> None:
        step = decide(_token(), 0.00003, _settings(), NOW)
        self.assertIsNotNone(step.trade)
        self.assertEqual(step.trade.side, "buy")
        self.assertEqual(step.trade.reason, "buy_threshold")
        self.assertTrue(step.token.position_open)
        self.assertEqual(step.token.buy_price_usd, 0.00003)
        self.assertEqual(step.token.peak_price_usd, 0.00003)

    def test_no_buy_below_threshold(self) -> None:
        step = decide(_token(), 0.0000299, _settings(), NOW)
        self.assertIsNone(step.trade)
        self.assertFalse(step.token.position_open)

    def test_blocked_entries_still_update_price(self) -> None:
        step = decide(_token(), 0.00005, _settings(), NOW, allow_entry=False)
        self.assertIsNone(step.trade)
        self.assertEqual(step.token.current_price_usd, 0.00005)

    def test_trade_cap_blocks_entry(self) -> None:
        token = _token(trade_count=2, has_completed_first_cycle=True)
        step = decide(token, 0.0001, _settings(reentry_enabled=True), NOW)
        self.assertIsNone(step.trade)

    def test_reentry_needs_flag_higher_threshold_and_price_above_last_sell(self) -> None:
        token = _token(trade_count=1, trade_cycle=1, has_completed_first_cycle=True, last_sell_price_usd=0.00005)
        self.assertIsNone(decide(token, 0.00006, _settings(reentry_enabled=False), NOW).trade)
        self.assertIsNone(decide(token, 0.000035, _settings(reentry_enabled=True), NOW).trade)
        self.assertIsNone(decide(token, 0.00005, _settings(reentry_enabled=True), NOW).trade)
        step = decide(token, 0.00006, _settings(reentry_enabled=True), NOW)
        self.assertEqual(step.trade.reason, "reentry_threshold")

    def test_failed_price_read_changes_nothing(self) -> None:
        token = _token()
        step = decide(token, None, _settings(), NOW)
        self.assertIsNone(step.trade)
        self.assertEqual(step.token, token)


class ExitTests(unittest.TestCase):
    def test_half_at_first_threshold_then_all_at_second(self) -> None:
        token = _open_position(0.00005)
        step = decide(token, 0.00005 * 1.2, _settings(), NOW)
        self.assertEqual((step.trade.side, step.trade.mode, step.trade.reason), ("sell", "half", "first_sell"))

        half_sold = replace(step.token, has_sold_half=True)
        step = decide(half_sold, 0.00006, _settings(), NOW)
        self.assertIsNone(step.trade)
        step = decide(half_sold, 0.000075, _settings(), NOW)
        self.assertEqual((step.trade.mode, step.trade.reason), ("all", "second_sell"))

    def test_jump_past_both_thresholds_sells_half_first(self) -> None:
        step = decide(_open_position(0.00005), 0.0001, _settings(), NOW)
        self.assertEqual(step.trade.reason, "first_sell")

    def test_second_threshold_wins_over_stop_loss(self) -> None:
        token = _open_position(0.0001, has_sold_half=True, peak_price_usd=0.0002)
        step = decide(token, 0.00016, _settings(), NOW)
        self.assertEqual((step.trade.mode, step.trade.reason), ("all", "second_sell"))

    def test_stop_loss_is_measured_from_peak(self) -> None:
        token = _open_position(0.0001)
        step = decide(token, 0.00012, _settings(), NOW)
        token = replace(step.token, has_sold_half=True)
        self.assertEqual(token.peak_price_usd, 0.00012)
        self.assertIsNone(decide(token, 0.000103, _settings(), NOW).trade)
        step = decide(token, 0.00012 * 0.85, _settings(), NOW)
        self.assertEqual((step.trade.mode, step.trade.reason), ("all", "stop_loss_peak"))

    def test_stagnation_sells_all(self) -> None:
        token = _open_position(0.0001, last_price_change_ts=NOW - 31)
        step = decide(token, 0.0001, _settings(), NOW)
        self.assertEqual(step.trade.reason, "stagnation")
        fresh = _open_position(0.0001, last_price_change_ts=NOW - 29)
        self.assertIsNone(decide(fresh, 0.0001, _settings(), NOW).trade)

    def test_peak_never_decreases(self) -> None:
        token = _open_position(0.0001)
        token = decide(token, 0.00011, _settings(), NOW).token
        token = decide(token, 0.000105, _settings(), NOW).token
        self.assertEqual(token.peak_price_usd, 0.00011)


class RemovalTests(unittest.TestCase):
    def test_inactive_token_is_removed(self) -> None:
        token = _token(last_price_update_ts=NOW - 1801)
        _, intent = evaluate_removal(token, _settings(), NOW)
        self.assertEqual(intent.reason, "inactive")
        self.assertFalse(intent.mark_traded)

    def test_finished_token_is_removed_and_marked_traded(self) -> None:
        token = _token(sell_tx_ref="TEST_SELL_1", trade_count=1, has_been_traded=True)
        _, intent = evaluate_removal(token, _settings(reentry_enabled=False), NOW)
        self.assertEqual(intent.reason, "post_trade")
        self.assertTrue(intent.mark_traded)

    def test_low_price_needs_to_persist(self) -> None:
        settings = _settings()
        token, intent = evaluate_removal(_token(current_price_usd=5e-9), settings, NOW)
        self.assertIsNone(intent)
        self.assertEqual(token.low_price_since_ts, NOW)
        token.last_price_update_ts = NOW + 600
        _, intent = evaluate_removal(token, settings, NOW + 600)
        self.assertEqual(intent.reason, "low_price")

    def test_price_recovery_clears_low_price_anchor(self) -> None:
        token = _token(current_price_usd=0.00002, low_price_since_ts=NOW - 300)
        token, intent = evaluate_removal(token, _settings(), NOW)
        self.assertIsNone(intent)
        self.assertIsNone(token.low_price_since_ts)


if __name__ == "__main__":
    unittest.main()
