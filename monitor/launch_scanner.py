"""Block scanner for createToken transactions on the launch platform."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import config
from monitor.ledger import TransientIOError
from monitor.patterns import TradingParams, TradingPattern, match_pattern
from monitor.telemetry import TelemetrySink
from monitor.token_price import ImplausiblePrice, NotLiquidUnavailable
from trading.registry import MonitoredToken, TokenRegistry
from utils.addressing import ZERO_ADDRESS, hex_text, is_zero_address, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class TokenCreationEvent:
    token_address: str
    creator: str
    block_number: int
    tx_hash: str
    gas_price_gwei: float
    gas_limit: int


@dataclass
class ScanStats:
    blocks_scanned: int = 0
    creations_seen: int = 0
    registered: int = 0
    no_pattern: int = 0
    already_known: int = 0
    at_capacity: int = 0
    unpriced: int = 0
    tx_errors: int = 0
    by_pattern: dict[str, int] = field(default_factory=dict)


class LaunchScanner:
    def __init__(
        self,
        ledger: Any,
        registry: TokenRegistry,
        price_reader: Any,
        patterns: list[TradingPattern],
        telemetry: TelemetrySink,
        defaults: TradingParams | None = None,
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.price_reader = price_reader
        self.patterns = list(patterns)
        self.telemetry = telemetry
        self.defaults = defaults
        self.platform_address = normalize_address(config.PLATFORM_CONTRACT_ADDRESS)
        self.create_selector = hex_text(config.CREATE_TOKEN_SELECTOR)
        self.last_processed_block: int | None = None
        self.stats = ScanStats()

    @staticmethod
    def _parse_slot_address(clean_data_hex: str, slot_index: int) -> str:
        start = slot_index * 64
        end = start + 64
        if len(clean_data_hex) < end:
            return ""
        address = f"0x{clean_data_hex[start:end][-40:]}"
        if address == ZERO_ADDRESS:
            return ""
        return address

    def token_from_receipt(self, receipt: Any) -> str:
        """Second data word of the platform's creation log, else the receipt's contractAddress."""
        for row in receipt.get("logs") or []:
            if normalize_address(row.get("address")) != self.platform_address:
                continue
            address = self._parse_slot_address(hex_text(row.get("data")), 1)
            if address:
                return address
        contract_address = normalize_address(receipt.get("contractAddress"))
        if is_zero_address(contract_address):
            return ""
        return contract_address

    def is_create_token_tx(self, tx: Any) -> bool:
        if normalize_address(tx.get("to")) != self.platform_address:
            return False
        return hex_text(tx.get("input")).startswith(self.create_selector)

    async def tick(self) -> int:
        """Scan the next block window. Returns how many tokens were registered."""
        try:
            latest = int(await self.ledger.latest_block_height())
        except TransientIOError as exc:
            logger.warning("SCAN latest_block_failed err=%s", exc)
            self.telemetry.emit("error", reason="scan_rpc_error", detail=str(exc))
            return 0

        if self.last_processed_block is None:
            self.last_processed_block = max(0, latest - int(config.SCAN_START_OFFSET_BLOCKS))
            logger.info("SCAN start block=%s latest=%s", self.last_processed_block + 1, latest)

        from_block = self.last_processed_block + 1
        to_block = min(latest, self.last_processed_block + int(config.MAX_BLOCKS_PER_SCAN))
        registered = 0
        for height in range(from_block, to_block + 1):
            try:
                block = await self.ledger.get_block_with_transactions(height)
            except TransientIOError as exc:
                # Leave the cursor before this block so the next tick retries it.
                logger.warning("SCAN block_failed block=%s err=%s", height, exc)
                self.telemetry.emit("error", reason="scan_rpc_error", detail=str(exc), block_number=height)
                break
            if block is None:
                break
            for event in await self._events_from_block(block, height):
                registered += await self.handle_event(event)
            self.last_processed_block = height
            self.stats.blocks_scanned += 1
        return registered

    async def _events_from_block(self, block: Any, height: int) -> list[TokenCreationEvent]:
        events: list[TokenCreationEvent] = []
        for tx in block.get("transactions") or []:
            if isinstance(tx, (str, bytes)) or not self.is_create_token_tx(tx):
                continue
            self.stats.creations_seen += 1
            tx_hash = f"0x{hex_text(tx.get('hash'))}"
            try:
                receipt = await self.ledger.get_transaction_receipt(tx_hash)
            except TransientIOError as exc:
                self.stats.tx_errors += 1
                logger.warning("SCAN tx_failed block=%s tx=%s err=%s", height, tx_hash, exc)
                self.telemetry.emit("error", reason="scan_tx_error", detail=str(exc), tx_hash=tx_hash, block_number=height)
                continue
            if receipt is None:
                self.stats.tx_errors += 1
                logger.debug("SCAN receipt_missing block=%s tx=%s", height, tx_hash)
                continue
            token_address = self.token_from_receipt(receipt)
            if not token_address:
                logger.debug("SCAN no_token_address block=%s tx=%s", height, tx_hash)
                continue
            events.append(
                TokenCreationEvent(
                    token_address=token_address,
                    creator=normalize_address(tx.get("from")),
                    block_number=height,
                    tx_hash=tx_hash,
                    gas_price_gwei=float(int(tx.get("gasPrice") or 0)) / 1e9,
                    gas_limit=int(tx.get("gas") or 0),
                )
            )
        return events

    async def handle_event(self, event: TokenCreationEvent) -> int:
        address = normalize_address(event.token_address)
        pattern = match_pattern(event, self.patterns)
        if pattern is None:
            self.stats.no_pattern += 1
            logger.debug(
                "SCAN no_pattern token=%s gas_price=%.3f gas_limit=%s",
                address,
                event.gas_price_gwei,
                event.gas_limit,
            )
            return 0
        if address in self.registry or self.registry.is_traded(address):
            self.stats.already_known += 1
            return 0
        if self.registry.at_capacity():
            self.stats.at_capacity += 1
            logger.warning("SCAN at_capacity token=%s tracked=%s", address, len(self.registry))
            return 0

        try:
            quote = await self.price_reader.read_price(address)
        except (NotLiquidUnavailable, ImplausiblePrice, TransientIOError) as exc:
            self.stats.unpriced += 1
            logger.info("SCAN unpriced token=%s pattern=%s err=%s", address, pattern.name, exc)
            self.telemetry.emit(
                "error",
                address,
                reason="initial_price_unavailable",
                detail=f"{type(exc).__name__}: {exc}",
                matched_pattern=pattern.name,
            )
            return 0

        now_ts = datetime.now(timezone.utc).timestamp()
        token = MonitoredToken(
            address=address,
            creator=event.creator,
            created_ts=now_ts,
            params=pattern.trading_params(self.defaults),
            matched_pattern=pattern.name,
            block_number=event.block_number,
            tx_hash=event.tx_hash,
            gas_price_gwei=event.gas_price_gwei,
            gas_limit=event.gas_limit,
            current_price_usd=quote.price_usd,
            last_price_update_ts=now_ts,
            last_price_change_ts=now_ts,
        )
        if not await self.registry.insert(token):
            self.stats.already_known += 1
            return 0
        self.stats.registered += 1
        self.stats.by_pattern[pattern.name] = self.stats.by_pattern.get(pattern.name, 0) + 1
        self.telemetry.stats.tokens_monitored += 1
        self.telemetry.emit(
            "discovered",
            address,
            reason="pattern_match",
            price_usd=quote.price_usd,
            matched_pattern=pattern.name,
            creator=event.creator,
            block_number=event.block_number,
            tx_hash=event.tx_hash,
            gas_price_gwei=event.gas_price_gwei,
            gas_limit=event.gas_limit,
        )
        logger.info(
            "TOKEN_DISCOVERED token=%s pattern=%s price=$%.10f gas_price=%.3f gas_limit=%s block=%s tx=%s",
            address,
            pattern.name,
            quote.price_usd,
            event.gas_price_gwei,
            event.gas_limit,
            event.block_number,
            event.tx_hash,
        )
        return 1
