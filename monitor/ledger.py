"""web3 ledger reader with bounded retries and RPC endpoint rotation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from web3 import HTTPProvider, Web3
from web3.exceptions import BlockNotFound, TransactionNotFound

import config

logger = logging.getLogger(__name__)


class TransientIOError(RuntimeError):
    """Raised when a ledger read keeps failing after bounded retries."""


class Web3Ledger:
    """Read-only ledger access used by discovery, pricing and the quote source.

    Every call runs the blocking web3 request in a worker thread and retries
    with linear backoff, rotating to the next configured RPC endpoint between
    attempts. "Not found" answers come back as None and are never retried.
    """

    def __init__(self, providers: list[str] | None = None) -> None:
        self.providers = [p for p in (providers if providers is not None else config.RPC_URLS) if p]
        self.provider_index = 0
        self.attempts = max(1, int(config.RPC_RETRY_ATTEMPTS))
        self.backoff_seconds = max(0.0, float(config.RPC_BACKOFF_SECONDS))
        self.web3 = self._build_web3()
        self._contracts: dict[tuple[str, int], Any] = {}

    def _build_web3(self) -> Web3:
        if not self.providers:
            raise TransientIOError("RPC_URLS is not configured.")
        provider = self.providers[self.provider_index]
        return Web3(
            HTTPProvider(
                provider,
                request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS},
            )
        )

    def _rotate_provider(self) -> None:
        if len(self.providers) <= 1:
            return
        self.provider_index = (self.provider_index + 1) % len(self.providers)
        self.web3 = self._build_web3()
        self._contracts = {}
        logger.info("RPC_ROTATE provider_index=%s", self.provider_index)

    async def _rpc_with_backoff(self, call: Callable[[], Any], op_name: str) -> Any:
        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return await asyncio.to_thread(call)
            except (BlockNotFound, TransactionNotFound):
                raise
            except Exception as exc:  # pragma: no cover - network/runtime dependent
                last_error = exc
                logger.debug("RPC_RETRY op=%s attempt=%s/%s error=%s", op_name, attempt, self.attempts, exc)
                if attempt < self.attempts:
                    self._rotate_provider()
                    await asyncio.sleep(self.backoff_seconds * attempt)
        raise TransientIOError(f"{op_name} failed after retries: {last_error}")

    def _contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        key = (address.lower(), id(abi))
        contract = self._contracts.get(key)
        if contract is None:
            contract = self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
            self._contracts[key] = contract
        return contract

    async def latest_block_height(self) -> int:
        return int(await self._rpc_with_backoff(lambda: self.web3.eth.block_number, "block_number"))

    async def get_block_with_transactions(self, height: int) -> Any | None:
        try:
            return await self._rpc_with_backoff(
                lambda: self.web3.eth.get_block(int(height), full_transactions=True),
                f"get_block:{height}",
            )
        except BlockNotFound:
            return None

    async def get_transaction_receipt(self, tx_hash: str) -> Any | None:
        try:
            return await self._rpc_with_backoff(
                lambda: self.web3.eth.get_transaction_receipt(tx_hash),
                "get_transaction_receipt",
            )
        except TransactionNotFound:
            return None

    async def read_contract(
        self,
        address: str,
        abi: list[dict[str, Any]],
        function_name: str,
        args: list[Any] | tuple[Any, ...] = (),
    ) -> Any:
        def _call() -> Any:
            contract = self._contract(address, abi)
            return contract.get_function_by_name(function_name)(*args).call()

        return await self._rpc_with_backoff(_call, f"{function_name}@{address}")
