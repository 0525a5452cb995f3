from __future__ import annotations

import asyncio
import unittest

from monitor.quote_price import DexScreenerQuoteSource, QuotePriceCache
from utils.http_client import HttpResult


class _FakeSource:
    name = "fake"

    def __init__(self, prices: list[object]) -> None:
        self.prices = list(prices)
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def fetch_usd(self) -> float:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        value = self.prices.pop(0)
        if isinstance(value, Exception):
            raise value
        return float(value)


class _FakeHttp:
    def __init__(self, result: HttpResult) -> None:
        self.result = result
        self.urls: list[str] = []

    async def get_json(self, url: str, *, source: str = "default", **_: object) -> HttpResult:
        self.urls.append(url)
        return self.result


class QuotePriceCacheTests(unittest.IsolatedAsyncioTestCase):
    async def test_fallback_is_used_until_first_successful_refresh(self) -> None:
        cache = QuotePriceCache(_FakeSource([RuntimeError("down"), 612.5]), ttl_seconds=60, fallback_usd=1000)
        self.assertTrue(cache.is_stale())
        self.assertEqual(await cache.get(), 1000)
        self.assertEqual(cache.refresh_failures, 1)
        self.assertFalse(cache.is_stale())
        self.assertEqual(await cache.refresh(), 612.5)
        self.assertEqual(cache.last_price_usd, 612.5)

    async def test_failed_refresh_is_retried_before_the_ttl(self) -> None:
        source = _FakeSource([RuntimeError("down"), 605.0])
        cache = QuotePriceCache(source, ttl_seconds=60, fallback_usd=1000, retry_seconds=0)
        self.assertEqual(await cache.get(), 1000)
        self.assertTrue(cache.is_stale())
        self.assertEqual(await cache.get(), 605.0)
        self.assertFalse(cache.is_stale())
        self.assertEqual(source.calls, 2)

    async def test_fresh_value_is_served_without_refetch(self) -> None:
        source = _FakeSource([600.0, 700.0])
        cache = QuotePriceCache(source, ttl_seconds=60, fallback_usd=1000)
        self.assertEqual(await cache.get(), 600.0)
        self.assertEqual(await cache.get(), 600.0)
        self.assertEqual(source.calls, 1)

    async def test_failed_refresh_keeps_last_good_value(self) -> None:
        cache = QuotePriceCache(_FakeSource([600.0, RuntimeError("timeout"), 0.0]), ttl_seconds=60, fallback_usd=1000)
        await cache.refresh()
        self.assertEqual(await cache.refresh(), 600.0)
        self.assertEqual(await cache.refresh(), 600.0)
        self.assertEqual(cache.refresh_failures, 2)

    async def test_concurrent_refreshes_share_one_fetch(self) -> None:
        source = _FakeSource([610.0])
        source.gate = asyncio.Event()
        cache = QuotePriceCache(source, ttl_seconds=60, fallback_usd=1000)
        first = asyncio.create_task(cache.refresh())
        await asyncio.sleep(0)
        second = asyncio.create_task(cache.refresh())
        await asyncio.sleep(0)
        source.gate.set()
        self.assertEqual(await asyncio.gather(first, second), [610.0, 610.0])
        self.assertEqual(source.calls, 1)

    async def test_dexscreener_source_parses_pair_price(self) -> None:
        http = _FakeHttp(HttpResult(ok=True, status=200, data={"pairs": [{"priceUsd": "0"}, {"priceUsd": "598.31"}]}))
        source = DexScreenerQuoteSource(http)
        self.assertAlmostEqual(await source.fetch_usd(), 598.31)
        self.assertIn("/pairs/bsc/", http.urls[0])

    async def test_dexscreener_source_raises_on_failed_request(self) -> None:
        source = DexScreenerQuoteSource(_FakeHttp(HttpResult(ok=False, status=503, data=None, error="http_503")))
        with self.assertRaises(RuntimeError):
            await source.fetch_usd()


if __name__ == "__main__":
    unittest.main()
