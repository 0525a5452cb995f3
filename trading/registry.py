"""In-memory registry of monitored launch tokens."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable

from monitor.patterns import TradingParams
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)


@dataclass
class MonitoredToken:
    address: str
    creator: str
    created_ts: float
    params: TradingParams
    matched_pattern: str = ""
    block_number: int = 0
    tx_hash: str = ""
    gas_price_gwei: float = 0.0
    gas_limit: int = 0

    current_price_usd: float = 0.0
    previous_price_usd: float = 0.0
    price_change_percent: float = 0.0
    last_price_update_ts: float = 0.0
    last_price_change_ts: float = 0.0

    position_open: bool = False
    buy_price_usd: float = 0.0
    buy_ts: float = 0.0
    peak_price_usd: float = 0.0
    position_size_usd: float = 0.0
    buy_tx_ref: str = ""

    has_sold_half: bool = False
    partial_sell_price_usd: float = 0.0
    partial_sell_tx_ref: str = ""
    sell_price_usd: float = 0.0
    sell_tx_ref: str = ""
    last_sell_price_usd: float = 0.0
    last_sell_attempt_ts: float = 0.0
    realized_pnl_usd: float = 0.0

    trade_count: int = 0
    trade_cycle: int = 0
    has_completed_first_cycle: bool = False
    has_been_traded: bool = False

    low_price_since_ts: float | None = None

    @property
    def sell_finalized(self) -> bool:
        return bool(self.sell_tx_ref) and not self.position_open


@dataclass
class RegistryRemoval:
    token: MonitoredToken
    reason: str
    marked_traded: bool


class TokenRegistry:
    """Owns every MonitoredToken record and the set of finished (traded) addresses.

    Readers get copies; every mutation goes through `update` under one
    asyncio lock so concurrent discovery, pricing and execution never lose a
    write. Addresses in the traded set can never be inserted again.
    """

    def __init__(self, max_tokens: int) -> None:
        self.max_tokens = max(1, int(max_tokens))
        self._tokens: dict[str, MonitoredToken] = {}
        self._traded: set[str] = set()
        self._lock = asyncio.Lock()
        self.pattern_totals: dict[str, int] = {}
        self.pattern_traded: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, address: object) -> bool:
        return normalize_address(str(address)) in self._tokens

    def is_traded(self, address: str) -> bool:
        return normalize_address(address) in self._traded

    def at_capacity(self) -> bool:
        return len(self._tokens) >= self.max_tokens

    def traded_addresses(self) -> set[str]:
        return set(self._traded)

    async def insert(self, token: MonitoredToken) -> bool:
        key = normalize_address(token.address)
        async with self._lock:
            if key in self._tokens or key in self._traded or len(self._tokens) >= self.max_tokens:
                return False
            self._tokens[key] = replace(token, address=key)
            pattern = token.matched_pattern or "unmatched"
            self.pattern_totals[pattern] = self.pattern_totals.get(pattern, 0) + 1
        return True

    async def get(self, address: str) -> MonitoredToken | None:
        async with self._lock:
            token = self._tokens.get(normalize_address(address))
            return replace(token) if token is not None else None

    async def active_snapshot(self) -> list[MonitoredToken]:
        async with self._lock:
            return [replace(token) for token in self._tokens.values()]

    async def update(
        self,
        address: str,
        mutate: Callable[[MonitoredToken], MonitoredToken | None],
    ) -> MonitoredToken | None:
        """Apply `mutate` to a copy of the record and store the result atomically.

        `mutate` must be synchronous. Returning None keeps the mutated copy.
        Returns the stored record, or None when the token is not tracked.
        """
        key = normalize_address(address)
        async with self._lock:
            current = self._tokens.get(key)
            if current is None:
                return None
            draft = replace(current)
            updated = mutate(draft)
            stored = updated if updated is not None else draft
            stored.address = key
            self._tokens[key] = stored
            return replace(stored)

    async def remove(self, address: str, reason: str, mark_traded: bool = False) -> RegistryRemoval | None:
        key = normalize_address(address)
        async with self._lock:
            token = self._tokens.pop(key, None)
            if mark_traded:
                self._traded.add(key)
            if token is None:
                return None
            if mark_traded or token.has_been_traded:
                pattern = token.matched_pattern or "unmatched"
                self.pattern_traded[pattern] = self.pattern_traded.get(pattern, 0) + 1
        logger.info(
            "TOKEN_REMOVED token=%s reason=%s traded=%s pattern=%s",
            key,
            reason,
            mark_traded or token.has_been_traded,
            token.matched_pattern,
        )
        return RegistryRemoval(token=token, reason=reason, marked_traded=mark_traded)

    async def stop_monitoring(self, address: str) -> RegistryRemoval | None:
        return await self.remove(address, reason="manual")

    async def pattern_usage(self) -> dict[str, dict[str, int]]:
        async with self._lock:
            active: dict[str, int] = {}
            for token in self._tokens.values():
                pattern = token.matched_pattern or "unmatched"
                active[pattern] = active.get(pattern, 0) + 1
            names = set(active) | set(self.pattern_totals) | set(self.pattern_traded)
            return {
                name: {
                    "active": active.get(name, 0),
                    "traded": self.pattern_traded.get(name, 0),
                    "total": self.pattern_totals.get(name, 0),
                }
                for name in sorted(names)
            }
