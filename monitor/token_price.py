"""Launch-platform token pricing from on-chain getTokenInfo."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from web3 import Web3

import config
from utils.addressing import ZERO_ADDRESS, is_zero_address, normalize_address

logger = logging.getLogger(__name__)

TOKEN_MANAGER_HELPER_ABI: list[dict[str, Any]] = [
    {
        "name": "getTokenInfo",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [
            {"name": "version", "type": "uint256"},
            {"name": "tokenManager", "type": "address"},
            {"name": "quote", "type": "address"},
            {"name": "lastPrice", "type": "uint256"},
            {"name": "tradingFeeRate", "type": "uint256"},
            {"name": "minTradingFee", "type": "uint256"},
            {"name": "launchTime", "type": "uint256"},
            {"name": "offers", "type": "uint256"},
            {"name": "maxOffers", "type": "uint256"},
            {"name": "funds", "type": "uint256"},
            {"name": "maxFunds", "type": "uint256"},
            {"name": "liquidityAdded", "type": "bool"},
        ],
    },
    {
        "name": "tryBuy",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "funds", "type": "uint256"},
        ],
        "outputs": [
            {"name": "tokenManager", "type": "address"},
            {"name": "quote", "type": "address"},
            {"name": "estimatedAmount", "type": "uint256"},
            {"name": "estimatedCost", "type": "uint256"},
            {"name": "estimatedFee", "type": "uint256"},
            {"name": "amountMsgValue", "type": "uint256"},
            {"name": "amountApproval", "type": "uint256"},
            {"name": "amountFunds", "type": "uint256"},
        ],
    },
]


class NotLiquidUnavailable(RuntimeError):
    """Raised when the platform reports no last trade price for a token."""


class ImplausiblePrice(RuntimeError):
    """Raised when a normalized price falls outside the plausible USD band."""


@dataclass
class LaunchTokenInfo:
    version: int
    token_manager: str
    quote: str
    last_price_raw: int
    trading_fee_rate: int
    launch_time: int
    offers: int
    max_offers: int
    funds: int
    max_funds: int
    liquidity_added: bool

    @property
    def last_price(self) -> float:
        return float(self.last_price_raw) / 1e18

    @property
    def migrated(self) -> bool:
        """Liquidity has left the launch platform for a general DEX."""
        if is_zero_address(self.token_manager):
            return True
        return bool(self.liquidity_added and self.offers == 0)

    @classmethod
    def from_call(cls, values: Any) -> "LaunchTokenInfo":
        row = list(values)
        return cls(
            version=int(row[0]),
            token_manager=normalize_address(row[1]),
            quote=normalize_address(row[2]),
            last_price_raw=int(row[3]),
            trading_fee_rate=int(row[4]),
            launch_time=int(row[6]),
            offers=int(row[7]),
            max_offers=int(row[8]),
            funds=int(row[9]),
            max_funds=int(row[10]),
            liquidity_added=bool(row[11]),
        )


@dataclass
class PriceQuote:
    price_usd: float
    quote_price_usd: float
    price_native: float
    quote_address: str


class TokenPriceReader:
    def __init__(self, ledger: Any, quote_cache: Any) -> None:
        self.ledger = ledger
        self.quote_cache = quote_cache
        self.helper_address = Web3.to_checksum_address(config.TOKEN_MANAGER_HELPER_ADDRESS)
        self.wrapped_native = normalize_address(config.WRAPPED_NATIVE_ADDRESS)
        self.stable_quotes = {normalize_address(a) for a in config.STABLE_QUOTE_ADDRESSES}
        self._unknown_quote_warned: set[str] = set()

    async def read_token_info(self, token_address: str) -> LaunchTokenInfo:
        values = await self.ledger.read_contract(
            self.helper_address,
            TOKEN_MANAGER_HELPER_ABI,
            "getTokenInfo",
            [Web3.to_checksum_address(token_address)],
        )
        return LaunchTokenInfo.from_call(values)

    async def read_price(self, token_address: str) -> PriceQuote:
        address = normalize_address(token_address)
        info = await self.read_token_info(address)
        if info.last_price_raw <= 0:
            raise NotLiquidUnavailable(f"no last price token={address}")

        price_native = info.last_price
        quote = info.quote or ZERO_ADDRESS
        if quote in self.stable_quotes:
            quote_price_usd = 1.0
            price_usd = price_native
        elif quote == self.wrapped_native or is_zero_address(quote):
            quote_price_usd = await self.quote_cache.get()
            price_usd = price_native * quote_price_usd
        else:
            if address not in self._unknown_quote_warned:
                self._unknown_quote_warned.add(address)
                logger.warning("PRICE_UNKNOWN_QUOTE token=%s quote=%s assuming=native", address, quote)
            if price_native < float(config.UNKNOWN_QUOTE_NATIVE_MAX):
                quote_price_usd = await self.quote_cache.get()
                price_usd = price_native * quote_price_usd
            else:
                quote_price_usd = 1.0
                price_usd = price_native

        if not (float(config.PRICE_MIN_USD) <= price_usd <= float(config.PRICE_MAX_USD)):
            raise ImplausiblePrice(
                f"price out of band token={address} price_usd={price_usd:.12g} "
                f"band=[{config.PRICE_MIN_USD:g},{config.PRICE_MAX_USD:g}]"
            )
        return PriceQuote(
            price_usd=price_usd,
            quote_price_usd=quote_price_usd,
            price_native=price_native,
            quote_address=quote,
        )
