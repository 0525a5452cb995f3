"""On-chain order submission against the launch platform's token manager contracts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.contract import Contract

import config
from monitor.token_price import TOKEN_MANAGER_HELPER_ABI, LaunchTokenInfo

logger = logging.getLogger(__name__)

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

TOKEN_MANAGER_V1_ABI: list[dict[str, Any]] = [
    {
        "name": "purchaseTokenAMAP",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "funds", "type": "uint256"},
            {"name": "minAmount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "saleToken",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "token", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
]

TOKEN_MANAGER_V2_ABI: list[dict[str, Any]] = [
    {
        "name": "buyTokenAMAP",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "funds", "type": "uint256"},
            {"name": "minAmount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "sellToken",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "token", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
]

_NONCE_ERRORS = ("nonce too low", "nonce provided", "already used", "already known")


class NoFundedResource(RuntimeError):
    """Raised when the wallet lacks the native balance or token balance for an order."""


class MigratedOrUnsupported(RuntimeError):
    """Raised when a token is no longer tradable through the launch platform."""


@dataclass
class OrderResult:
    success: bool
    reference: str = ""
    error: str = ""


class LiveOrderSubmitter:
    mode = "live"

    def __init__(self) -> None:
        if not config.LIVE_PRIVATE_KEY:
            raise ValueError("LIVE_PRIVATE_KEY is empty")
        rpc = next((url for url in config.RPC_URLS if url), "")
        if not rpc:
            raise ValueError("RPC_URLS is empty")

        self.w3 = Web3(HTTPProvider(rpc, request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS}))
        if not self.w3.is_connected():
            raise ValueError("Web3 not connected")

        self.account = Account.from_key(config.LIVE_PRIVATE_KEY)
        self.wallet = self.w3.to_checksum_address(config.LIVE_WALLET_ADDRESS or self.account.address)
        if self.account.address.lower() != self.wallet.lower():
            raise ValueError("LIVE_WALLET_ADDRESS does not match LIVE_PRIVATE_KEY")
        self.helper: Contract = self.w3.eth.contract(
            address=self.w3.to_checksum_address(config.TOKEN_MANAGER_HELPER_ADDRESS),
            abi=TOKEN_MANAGER_HELPER_ABI,
        )

    def native_balance(self) -> float:
        wei = self.w3.eth.get_balance(self.wallet)
        return float(self.w3.from_wei(wei, "ether"))

    async def submit_buy(self, token_address: str, amount_native: float) -> OrderResult:
        tx_hash = await asyncio.to_thread(self.buy_token, token_address, amount_native)
        return OrderResult(success=True, reference=tx_hash)

    async def submit_sell(self, token_address: str, mode: str) -> OrderResult:
        tx_hash = await asyncio.to_thread(self.sell_token, token_address, mode)
        return OrderResult(success=True, reference=tx_hash)

    def token_info(self, token_address: str) -> LaunchTokenInfo:
        token = self.w3.to_checksum_address(token_address)
        try:
            info = LaunchTokenInfo.from_call(self.helper.functions.getTokenInfo(token).call())
        except Exception as exc:
            # An unreadable platform record is treated the same as a migrated token.
            raise MigratedOrUnsupported(f"token_info_unavailable:{exc}") from exc
        if info.migrated:
            raise MigratedOrUnsupported(
                f"migrated token={token_address} manager={info.token_manager} "
                f"liquidity_added={info.liquidity_added} offers={info.offers}"
            )
        return info

    def _manager(self, info: LaunchTokenInfo) -> Contract:
        abi = TOKEN_MANAGER_V1_ABI if info.version == 1 else TOKEN_MANAGER_V2_ABI
        return self.w3.eth.contract(address=self.w3.to_checksum_address(info.token_manager), abi=abi)

    def buy_token(self, token_address: str, amount_native: float) -> str:
        token = self.w3.to_checksum_address(token_address)
        amount_wei = int(self.w3.to_wei(max(0.0, float(amount_native)), "ether"))
        if amount_wei <= 0:
            raise ValueError("amount_native is zero")
        info = self.token_info(token_address)

        balance = int(self.w3.eth.get_balance(self.wallet))
        required = amount_wei + int(self.w3.to_wei(config.MIN_WALLET_BALANCE_NATIVE, "ether"))
        if balance < required:
            raise NoFundedResource(
                f"insufficient_native have={self.w3.from_wei(balance, 'ether')} "
                f"want={self.w3.from_wei(required, 'ether')}"
            )

        quote = self.helper.functions.tryBuy(token, 0, amount_wei).call()
        amount_msg_value, amount_funds = int(quote[5]), int(quote[7])
        # tryBuy names the manager that will actually settle the purchase.
        info.token_manager = str(quote[0]).lower()
        manager = self._manager(info)
        fn = manager.functions.purchaseTokenAMAP if info.version == 1 else manager.functions.buyTokenAMAP
        tx = fn(token, amount_funds, 0).build_transaction(
            self._tx_params(value_wei=amount_msg_value, gas=config.LIVE_GAS_LIMIT)
        )
        tx_hash = self._send_and_wait(tx)
        logger.info("LIVE_BUY token=%s funds_wei=%s tx=%s", token_address, amount_funds, tx_hash)
        return tx_hash

    def sell_token(self, token_address: str, mode: str) -> str:
        token = self.w3.to_checksum_address(token_address)
        info = self.token_info(token_address)
        token_contract = self.w3.eth.contract(address=token, abi=ERC20_ABI)
        balance = int(token_contract.functions.balanceOf(self.wallet).call())
        amount = balance // 2 if mode == "half" else balance
        if amount <= 0:
            raise NoFundedResource(f"no_token_balance token={token_address} balance={balance} mode={mode}")

        manager_address = self.w3.to_checksum_address(info.token_manager)
        allowance = int(token_contract.functions.allowance(self.wallet, manager_address).call())
        if allowance < amount:
            approve_tx = token_contract.functions.approve(manager_address, (2**256) - 1).build_transaction(
                self._tx_params(gas=config.LIVE_APPROVE_GAS_LIMIT)
            )
            self._send_and_wait(approve_tx)

        manager = self._manager(info)
        fn = manager.functions.saleToken if info.version == 1 else manager.functions.sellToken
        tx = fn(token, amount).build_transaction(self._tx_params(gas=config.LIVE_GAS_LIMIT))
        tx_hash = self._send_and_wait(tx)
        logger.info("LIVE_SELL token=%s mode=%s amount_raw=%s tx=%s", token_address, mode, amount, tx_hash)
        return tx_hash

    def _tx_params(self, value_wei: int = 0, gas: int = 0) -> dict[str, Any]:
        cap = int(self.w3.to_wei(max(0.0, float(config.LIVE_MAX_GAS_GWEI)), "gwei"))
        if cap <= 0:
            cap = int(self.w3.to_wei(1, "gwei"))
        gas_price = int(self.w3.eth.gas_price or 0)
        if gas_price > cap:
            raise RuntimeError(
                f"gas_price_too_high observed_gwei={self.w3.from_wei(gas_price, 'gwei')} "
                f"cap_gwei={self.w3.from_wei(cap, 'gwei')}"
            )
        return {
            "from": self.wallet,
            "chainId": int(config.EVM_CHAIN_ID),
            "nonce": self.w3.eth.get_transaction_count(self.wallet, "pending"),
            "value": int(value_wei),
            "gas": int(gas or config.LIVE_GAS_LIMIT),
            "gasPrice": gas_price,
        }

    def _send_raw(self, tx: dict[str, Any]) -> Any:
        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise RuntimeError("signed_tx_missing_raw_bytes")
        return self.w3.eth.send_raw_transaction(raw_tx)

    def _send_and_wait(self, tx: dict[str, Any]) -> str:
        try:
            tx_hash = self._send_raw(tx)
        except Exception as exc:
            if not any(marker in str(exc).lower() for marker in _NONCE_ERRORS):
                raise
            tx["nonce"] = self.w3.eth.get_transaction_count(self.wallet, "pending")
            logger.warning("LIVE_NONCE_RETRY nonce=%s error=%s", tx["nonce"], exc)
            tx_hash = self._send_raw(tx)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=int(config.LIVE_TX_TIMEOUT_SECONDS))
        if int(receipt.status) != 1:
            raise RuntimeError(f"tx_failed hash={tx_hash.hex()}")
        return tx_hash.hex()
