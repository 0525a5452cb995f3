from __future__ import annotations

import asyncio
import unittest

from monitor.patterns import TradingParams
from trading.registry import MonitoredToken, TokenRegistry

PARAMS = TradingParams(
    buy_threshold_usd=0.00003,
    reentry_buy_threshold_usd=0.00003,
    first_sell_percent=20,
    second_sell_percent=50,
    stop_loss_from_peak_percent=15,
    stagnation_timeout_seconds=30,
    buy_amount_native=0.001,
)


def _token(address: str, pattern: str = "p1") -> MonitoredToken:
    return MonitoredToken(address=address, creator="", created_ts=1.0, params=PARAMS, matched_pattern=pattern)


class TokenRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_insert_normalizes_and_rejects_duplicates(self) -> None:
        registry = TokenRegistry(max_tokens=10)
        self.assertTrue(await registry.insert(_token("0x" + "AB" * 20)))
        self.assertFalse(await registry.insert(_token("0x" + "ab" * 20)))
        self.assertIn("0x" + "Ab" * 20, registry)
        self.assertEqual(len(registry), 1)

    async def test_capacity_is_enforced(self) -> None:
        registry = TokenRegistry(max_tokens=2)
        self.assertTrue(await registry.insert(_token("0x" + "01" * 20)))
        self.assertTrue(await registry.insert(_token("0x" + "02" * 20)))
        self.assertTrue(registry.at_capacity())
        self.assertFalse(await registry.insert(_token("0x" + "03" * 20)))

    async def test_traded_tokens_are_never_reinserted(self) -> None:
        registry = TokenRegistry(max_tokens=10)
        address = "0x" + "04" * 20
        await registry.insert(_token(address))
        removal = await registry.remove(address, reason="post_trade", mark_traded=True)
        self.assertIsNotNone(removal)
        self.assertTrue(registry.is_traded(address))
        self.assertFalse(await registry.insert(_token(address)))
        self.assertNotIn(address, registry)

    async def test_snapshot_returns_copies(self) -> None:
        registry = TokenRegistry(max_tokens=10)
        address = "0x" + "05" * 20
        await registry.insert(_token(address))
        snapshot = await registry.active_snapshot()
        snapshot[0].current_price_usd = 123.0
        stored = await registry.get(address)
        self.assertEqual(stored.current_price_usd, 0.0)

    async def test_concurrent_updates_are_not_lost(self) -> None:
        registry = TokenRegistry(max_tokens=10)
        address = "0x" + "06" * 20
        await registry.insert(_token(address))

        def _bump(token: MonitoredToken) -> None:
            token.trade_cycle += 1

        await asyncio.gather(*(registry.update(address, _bump) for _ in range(25)))
        self.assertEqual((await registry.get(address)).trade_cycle, 25)

    async def test_update_of_unknown_token_returns_none(self) -> None:
        registry = TokenRegistry(max_tokens=10)
        self.assertIsNone(await registry.update("0x" + "07" * 20, lambda t: t))

    async def test_stop_monitoring_removes_without_marking_traded(self) -> None:
        registry = TokenRegistry(max_tokens=10)
        address = "0x" + "08" * 20
        await registry.insert(_token(address))
        removal = await registry.stop_monitoring(address)
        self.assertEqual(removal.reason, "manual")
        self.assertFalse(registry.is_traded(address))
        self.assertIsNone(await registry.stop_monitoring(address))

    async def test_pattern_usage_counts_active_traded_and_total(self) -> None:
        registry = TokenRegistry(max_tokens=10)
        await registry.insert(_token("0x" + "09" * 20, pattern="a"))
        await registry.insert(_token("0x" + "0a" * 20, pattern="a"))
        await registry.insert(_token("0x" + "0b" * 20, pattern="b"))
        await registry.remove("0x" + "09" * 20, reason="post_trade", mark_traded=True)
        usage = await registry.pattern_usage()
        self.assertEqual(usage["a"], {"active": 1, "traded": 1, "total": 2})
        self.assertEqual(usage["b"], {"active": 1, "traded": 0, "total": 1})


if __name__ == "__main__":
    unittest.main()
