"""Test-mode order submission: no chain writes, synthetic references."""

from __future__ import annotations

import logging
import time

from trading.live_executor import NoFundedResource, OrderResult
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)


class PaperOrderSubmitter:
    mode = "paper"

    def __init__(self) -> None:
        # token -> simulated holding in native units spent, halved on partial sells.
        self.holdings: dict[str, float] = {}
        self.orders = 0

    @staticmethod
    def _reference(side: str) -> str:
        return f"TEST_{side}_{int(time.time() * 1000)}"

    async def submit_buy(self, token_address: str, amount_native: float) -> OrderResult:
        key = normalize_address(token_address)
        self.holdings[key] = self.holdings.get(key, 0.0) + max(0.0, float(amount_native))
        self.orders += 1
        reference = self._reference("BUY")
        logger.info("PAPER_BUY token=%s amount_native=%.6f ref=%s", key, float(amount_native), reference)
        return OrderResult(success=True, reference=reference)

    async def submit_sell(self, token_address: str, mode: str) -> OrderResult:
        key = normalize_address(token_address)
        held = self.holdings.get(key, 0.0)
        if held <= 0:
            raise NoFundedResource(f"no_paper_balance token={key}")
        if mode == "half":
            self.holdings[key] = held / 2.0
        else:
            self.holdings.pop(key, None)
        self.orders += 1
        reference = self._reference("SELL")
        logger.info("PAPER_SELL token=%s mode=%s ref=%s", key, mode, reference)
        return OrderResult(success=True, reference=reference)
