"""
EVM JSON-RPC Client

One instance per EVM network (BNB Smart Chain, Ethereum). Verifies native
coin deposits: receipt status for success, block depth for finality.
"""

import itertools
import logging
import re
from typing import Any, Optional

import httpx

from .assets import Asset
from .base import (
    ChainError,
    ConfirmationStatus,
    FeeEstimate,
    HttpChainClient,
    RetryableChainError,
    TransactionConfirmation,
)

logger = logging.getLogger(__name__)

NATIVE_TRANSFER_GAS = 21_000
DEFAULT_GAS_PRICE_WEI = 10_000_000_000  # 10 gwei

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


class RpcError(ChainError):
    """Error object returned by the node"""

    def __init__(self, code: Any, message: str):
        self.code = code
        super().__init__(f"RPC error {code}: {message}")


class EvmRpcClient(HttpChainClient):
    """
    Async JSON-RPC client for an EVM network

    Args:
        rpc_url: Node endpoint
        native_asset: Coin deposited on this network (Asset.BNB_BSC, Asset.ETH)
        chain_id: EIP-155 chain id, used for payment URIs
        confirmations_required: Block depth treated as final
    """

    def __init__(
        self,
        rpc_url: str,
        native_asset: Asset,
        chain_id: int,
        confirmations_required: int = 12,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            rpc_url,
            timeout=timeout,
            retry_attempts=retry_attempts,
            retry_delay=retry_delay,
            transport=transport,
        )
        self.network = native_asset.network
        self.native_asset = native_asset
        self.chain_id = chain_id
        self.confirmations_required = max(1, confirmations_required)
        self._ids = itertools.count(1)

    @property
    def supported_assets(self) -> tuple[Asset, ...]:
        return (self.native_asset,)

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        body = await self._post(
            "",
            {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params},
        )
        if not isinstance(body, dict):
            raise RetryableChainError(f"Malformed JSON-RPC response from {self.network.value} node")
        error = body.get("error")
        if error:
            if not isinstance(error, dict):
                raise RpcError(None, str(error))
            raise RpcError(error.get("code"), error.get("message", "unknown error"))
        return body.get("result")

    def normalize_address(self, address: str) -> str:
        value = address.strip().lower()
        if not _ADDRESS_RE.match(value):
            raise ValueError(f"Invalid {self.network.value} address: {address}")
        return value

    def normalize_reference(self, reference: str) -> str:
        value = reference.strip().lower()
        if not value.startswith("0x"):
            value = "0x" + value
        if not _TX_HASH_RE.match(value):
            raise ValueError("EVM transaction hash must be 0x followed by 64 hex characters")
        return value

    async def confirm_transaction(self, reference: str) -> TransactionConfirmation:
        tx_hash = self.normalize_reference(reference)

        try:
            tx = await self._rpc("eth_getTransactionByHash", [tx_hash])
            if tx is None:
                return TransactionConfirmation(
                    reference=tx_hash,
                    status=ConfirmationStatus.NOT_FOUND,
                    reason="transaction not found",
                )

            if tx.get("blockNumber") is None:
                return TransactionConfirmation(
                    reference=tx_hash,
                    status=ConfirmationStatus.UNCONFIRMED,
                    reason="transaction is pending in the mempool",
                )

            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt is None:
                return TransactionConfirmation(
                    reference=tx_hash,
                    status=ConfirmationStatus.UNCONFIRMED,
                    reason="receipt not available yet",
                )

            head = int(await self._rpc("eth_blockNumber", []), 16)
            block = int(tx["blockNumber"], 16)
            succeeded = int(receipt.get("status") or "0x0", 16) == 1
            value = int(tx.get("value") or "0x0", 16)
            recipient = (tx.get("to") or "").lower() or None
        except RpcError as e:
            raise RetryableChainError(str(e)) from e
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise RetryableChainError(
                f"Malformed transaction data from {self.network.value} node: {e}"
            ) from e

        confirmations = max(0, head - block + 1)
        if confirmations < self.confirmations_required:
            return TransactionConfirmation(
                reference=tx_hash,
                status=ConfirmationStatus.UNCONFIRMED,
                confirmations=confirmations,
                reason=f"{confirmations}/{self.confirmations_required} confirmations",
            )

        if not succeeded:
            logger.info("%s transaction %s reverted", self.network.value, tx_hash[:18])
            return TransactionConfirmation(
                reference=tx_hash,
                status=ConfirmationStatus.FAILED,
                confirmations=confirmations,
                reason="transaction reverted on chain",
            )

        return TransactionConfirmation(
            reference=tx_hash,
            status=ConfirmationStatus.FINALIZED,
            amount_minor=value,
            recipient=recipient,
            asset=self.native_asset,
            confirmations=confirmations,
        )

    async def get_balance(self, address: str, asset: Asset) -> int:
        if asset is not self.native_asset:
            raise ValueError(f"{asset.value} is not held on {self.network.value}")
        result = await self._rpc("eth_getBalance", [self.normalize_address(address), "latest"])
        return int(result, 16)

    async def estimate_fee(self) -> FeeEstimate:
        try:
            gas_price = int(await self._rpc("eth_gasPrice", []), 16)
            estimated = True
        except (ChainError, TypeError, ValueError) as e:
            logger.warning("%s fee estimation failed, using default: %s", self.network.value, e)
            gas_price = DEFAULT_GAS_PRICE_WEI
            estimated = False

        return FeeEstimate(
            amount_minor=NATIVE_TRANSFER_GAS * gas_price,
            fee_symbol=self.native_asset.symbol,
            decimals=self.native_asset.decimals,
            estimated=estimated,
        )

    async def submit_transfer(self, signed_transaction: str) -> str:
        return await self._rpc("eth_sendRawTransaction", [signed_transaction])

    def build_payment_uri(
        self,
        address: str,
        asset: Asset,
        amount_minor: int,
        memo: Optional[str] = None,
    ) -> str:
        # EIP-681; native transfers have no memo field
        return f"ethereum:{address}@{self.chain_id}?value={amount_minor}"
