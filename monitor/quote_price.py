"""Quote asset (BNB) to USD price cache with TTL and last-good fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from web3 import Web3

import config
from utils.http_client import FeedHttpClient

logger = logging.getLogger(__name__)

ROUTER_QUOTE_ABI: list[dict[str, Any]] = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
]

ONE_NATIVE_WEI = 10**18


class RouterQuoteSource:
    """Prices one wrapped native unit through the DEX router's getAmountsOut."""

    name = "router"

    def __init__(self, ledger: Any) -> None:
        self.ledger = ledger
        self.router_address = Web3.to_checksum_address(config.QUOTE_ROUTER_ADDRESS)
        self.path = [
            Web3.to_checksum_address(config.WRAPPED_NATIVE_ADDRESS),
            Web3.to_checksum_address(config.QUOTE_USD_ADDRESS),
        ]

    async def fetch_usd(self) -> float:
        amounts = await self.ledger.read_contract(
            self.router_address,
            ROUTER_QUOTE_ABI,
            "getAmountsOut",
            [ONE_NATIVE_WEI, self.path],
        )
        # USDT on BSC has 18 decimals.
        return float(int(amounts[-1])) / 1e18


class DexScreenerQuoteSource:
    name = "dexscreener"

    def __init__(self, http: FeedHttpClient) -> None:
        self.http = http
        self.url = f"{config.DEXSCREENER_API}/pairs/bsc/{config.QUOTE_PAIR_ADDRESS}"

    async def fetch_usd(self) -> float:
        result = await self.http.get_json(self.url, source="dexscreener")
        if not result.ok:
            raise RuntimeError(f"dexscreener quote failed: {result.error}")
        payload = result.data or {}
        pairs = payload.get("pairs") or ([payload["pair"]] if payload.get("pair") else [])
        for pair in pairs:
            try:
                price = float(pair.get("priceUsd") or 0)
            except (TypeError, ValueError):
                continue
            if price > 0:
                return price
        raise RuntimeError("dexscreener quote payload has no priceUsd")


class QuotePriceCache:
    def __init__(
        self,
        source: Any,
        ttl_seconds: float | None = None,
        fallback_usd: float | None = None,
        retry_seconds: float | None = None,
    ) -> None:
        self.source = source
        self.ttl_seconds = float(config.QUOTE_PRICE_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        self.fallback_usd = float(config.QUOTE_PRICE_FALLBACK_USD if fallback_usd is None else fallback_usd)
        retry = float(config.QUOTE_PRICE_RETRY_SECONDS if retry_seconds is None else retry_seconds)
        self.retry_seconds = min(self.ttl_seconds, max(0.0, retry))
        self._price_usd = 0.0
        self._price_ts = 0.0
        self._attempt_ts = 0.0
        self._last_failed = False
        self._lock = asyncio.Lock()
        self.refresh_failures = 0

    @property
    def last_price_usd(self) -> float:
        return self._price_usd if self._price_usd > 0 else self.fallback_usd

    def is_stale(self) -> bool:
        """A good value ages out after the TTL. A failed attempt is retried after `retry_seconds`."""
        if self._attempt_ts <= 0:
            return True
        window = self.retry_seconds if self._last_failed else self.ttl_seconds
        return (time.monotonic() - self._attempt_ts) >= window

    async def get(self) -> float:
        if not self.is_stale():
            return self.last_price_usd
        return await self.refresh()

    async def refresh(self) -> float:
        if self._lock.locked():
            # A refresh is already running; share its result.
            async with self._lock:
                return self.last_price_usd
        async with self._lock:
            self._attempt_ts = time.monotonic()
            try:
                price = float(await self.source.fetch_usd())
            except Exception as exc:
                self._last_failed = True
                self.refresh_failures += 1
                logger.warning(
                    "QUOTE_PRICE refresh_failed source=%s error=%s using=%.4f",
                    self.source.name,
                    exc,
                    self.last_price_usd,
                )
                return self.last_price_usd
            if price <= 0:
                self._last_failed = True
                self.refresh_failures += 1
                logger.warning("QUOTE_PRICE refresh_failed source=%s error=non_positive_price", self.source.name)
                return self.last_price_usd
            self._price_usd = price
            self._price_ts = self._attempt_ts
            self._last_failed = False
            logger.debug("QUOTE_PRICE refreshed source=%s price=%.4f", self.source.name, price)
            return price
