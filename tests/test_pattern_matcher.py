from __future__ import annotations

import json
import math
import os
import tempfile
import unittest
from types import SimpleNamespace

import config
from monitor.patterns import TradingParams, load_patterns, match_pattern, parse_pattern


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


def _event(gas_price_gwei: float, gas_limit: int) -> SimpleNamespace:
    return SimpleNamespace(gas_price_gwei=gas_price_gwei, gas_limit=gas_limit)


class PatternMatcherTests(ConfigPatchMixin, unittest.TestCase):
    def test_first_pattern_by_priority_wins(self) -> None:
        patterns = [
            parse_pattern({"name": "wide", "priority": 5, "gasPrice": {"min": 0}}, 0),
            parse_pattern({"name": "narrow", "priority": 1, "gasPrice": {"min": 0.05, "max": 0.11}}, 1),
        ]
        self.assertEqual(match_pattern(_event(0.1, 2_000_000), patterns).name, "narrow")
        self.assertEqual(match_pattern(_event(1.0, 2_000_000), patterns).name, "wide")
        reordered = list(reversed(patterns))
        self.assertEqual(match_pattern(_event(0.1, 2_000_000), reordered).name, "narrow")
        self.assertEqual(match_pattern(_event(1.0, 2_000_000), reordered).name, "wide")

    def test_disabled_patterns_and_out_of_range_events_do_not_match(self) -> None:
        patterns = [
            parse_pattern({"name": "off", "enabled": False}, 0),
            parse_pattern({"name": "limit", "gasLimit": {"min": 1_000_000, "max": 3_000_000}}, 1),
        ]
        self.assertIsNone(match_pattern(_event(0.1, 500_000), patterns))
        self.assertEqual(match_pattern(_event(0.1, 3_000_000), patterns).name, "limit")

    def test_matching_is_deterministic_for_equal_priority(self) -> None:
        patterns = [
            parse_pattern({"name": "b", "priority": 0}, 0),
            parse_pattern({"name": "a", "priority": 0}, 1),
        ]
        for _ in range(3):
            self.assertEqual(match_pattern(_event(1, 1), patterns).name, "a")
            self.assertEqual(match_pattern(_event(1, 1), list(reversed(patterns))).name, "a")

    def test_missing_range_bounds_are_open(self) -> None:
        pattern = parse_pattern({"name": "open", "gas_price": {"min": 2}}, 0)
        self.assertEqual(pattern.gas_price_gwei.high, math.inf)
        self.assertEqual(pattern.gas_limit.low, 0.0)
        self.assertTrue(pattern.matches(50.0, 10))
        self.assertFalse(pattern.matches(1.0, 10))

    def test_trading_bundle_overrides_defaults_and_caps_buy_amount(self) -> None:
        self.patch_cfg(MAX_BUY_AMOUNT_NATIVE=0.01)
        defaults = TradingParams(
            buy_threshold_usd=0.00002,
            reentry_buy_threshold_usd=0.00002,
            first_sell_percent=20,
            second_sell_percent=50,
            stop_loss_from_peak_percent=15,
            stagnation_timeout_seconds=30,
            buy_amount_native=0.001,
        )
        pattern = parse_pattern(
            {
                "name": "custom",
                "trading": {"buyThresholdUSD": "0.00003", "firstSellPercent": 30, "buyAmountBNB": 1, "bogus": 1},
            },
            0,
        )
        params = pattern.trading_params(defaults)
        self.assertAlmostEqual(params.buy_threshold_usd, 0.00003)
        self.assertEqual(params.first_sell_percent, 30.0)
        self.assertEqual(params.second_sell_percent, 50)
        self.assertEqual(params.buy_amount_native, 0.01)

    def test_load_patterns_reads_file_and_tolerates_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "patterns.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"patterns": [{"name": "p1", "gasPrice": {"min": 0.1}}, "junk", {"priority": 3}]}, f)
            patterns = load_patterns(path)
            missing = load_patterns(os.path.join(tmpdir, "nope.json"))
        self.assertEqual([p.name for p in patterns], ["p1", "pattern_2"])
        self.assertEqual(patterns[1].priority, 3)
        self.assertEqual(missing, [])


if __name__ == "__main__":
    unittest.main()
