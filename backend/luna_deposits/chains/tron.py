"""
TronGrid API Client

Client for the TRON HTTP API (TronGrid or a self-hosted full node).
Verifies TRC-20 USDT deposits through the solidity node, which only
returns transactions that are already irreversible.
"""

import logging
import re
from typing import Any, Optional
from urllib.parse import urlencode

import base58
import httpx

from .assets import Asset, Network, format_amount
from .base import (
    ChainError,
    ConfirmationStatus,
    FeeEstimate,
    HttpChainClient,
    RetryableChainError,
    TransactionConfirmation,
    Transfer,
)

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "ddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# Blocks confirmed by 2/3+1 of the 27 super representatives
SOLIDIFIED_CONFIRMATIONS = 19

# Energy for a USDT transfer to an address that has never held USDT (worst case)
TRC20_TRANSFER_ENERGY = 65_000
DEFAULT_FEE_SUN = 30_000_000  # 30 TRX

TRON_ADDRESS_PREFIX = b"\x41"
_TXID_RE = re.compile(r"^[0-9a-f]{64}$")


def tron_address_from_hex(hex_address: str) -> str:
    """Base58check address from a 20-byte hex address (with or without the 41 prefix)"""
    raw = bytes.fromhex(hex_address[-40:])
    return base58.b58encode_check(TRON_ADDRESS_PREFIX + raw).decode()


def tron_address_to_hex(address: str) -> str:
    """41-prefixed hex form of a base58check address"""
    try:
        decoded = base58.b58decode_check(address)
    except ValueError:
        raise ValueError(f"Invalid TRON address: {address}") from None
    if len(decoded) != 21 or decoded[:1] != TRON_ADDRESS_PREFIX:
        raise ValueError(f"Invalid TRON address: {address}")
    return decoded.hex()


def _decode_message(value: Optional[str]) -> Optional[str]:
    """TRON returns error messages hex-encoded"""
    if not value:
        return None
    try:
        return bytes.fromhex(value).decode("utf-8", errors="replace")
    except ValueError:
        return value


class TronGridClient(HttpChainClient):
    """
    Async client for the TRON HTTP API

    Only TRC-20 USDT deposits are supported on this network.
    """

    network = Network.TRON

    def __init__(
        self,
        api_url: str,
        usdt_contract: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"TRON-PRO-API-KEY": api_key} if api_key else None
        super().__init__(
            api_url,
            headers=headers,
            timeout=timeout,
            retry_attempts=retry_attempts,
            retry_delay=retry_delay,
            transport=transport,
        )
        self.usdt_contract = usdt_contract
        # Log entries carry the contract as 20-byte hex without the 41 prefix
        self._usdt_contract_hex = tron_address_to_hex(usdt_contract)[2:]

    @property
    def supported_assets(self) -> tuple[Asset, ...]:
        return (Asset.USDT_TRC20,)

    def normalize_address(self, address: str) -> str:
        address = address.strip()
        if address.startswith("41") and len(address) == 42:
            return tron_address_from_hex(address)
        tron_address_to_hex(address)  # validates
        return address

    def normalize_reference(self, reference: str) -> str:
        value = reference.strip().lower()
        if value.startswith("0x"):
            value = value[2:]
        if not _TXID_RE.match(value):
            raise ValueError("TRON transaction id must be 64 hex characters")
        return value

    async def confirm_transaction(self, reference: str) -> TransactionConfirmation:
        """
        Check a transaction against the solidity node

        The full node is only consulted to tell "unknown" apart from
        "included but not solidified yet".
        """
        txid = self.normalize_reference(reference)

        info = await self._post("/walletsolidity/gettransactioninfobyid", {"value": txid})
        if not info:
            tx = await self._post("/wallet/gettransactionbyid", {"value": txid})
            if not tx:
                return TransactionConfirmation(
                    reference=txid,
                    status=ConfirmationStatus.NOT_FOUND,
                    reason="transaction not found",
                )
            return TransactionConfirmation(
                reference=txid,
                status=ConfirmationStatus.UNCONFIRMED,
                reason="awaiting solidification",
            )

        if not isinstance(info, dict) or not isinstance(info.get("receipt") or {}, dict):
            raise RetryableChainError("Malformed transaction info from tron node")

        receipt = info.get("receipt") or {}
        outcome = receipt.get("result")
        if info.get("result") == "FAILED" or (outcome and outcome != "SUCCESS"):
            reason = outcome or _decode_message(info.get("resMessage")) or "FAILED"
            logger.info("TRON transaction %s failed on chain: %s", txid[:16], reason)
            return TransactionConfirmation(
                reference=txid,
                status=ConfirmationStatus.FAILED,
                confirmations=SOLIDIFIED_CONFIRMATIONS,
                reason=f"transaction failed on chain: {reason}",
            )

        logs = info.get("log") or []
        transfers = self._find_usdt_transfers(logs if isinstance(logs, list) else [])
        if not transfers:
            return TransactionConfirmation(
                reference=txid,
                status=ConfirmationStatus.FINALIZED,
                confirmations=SOLIDIFIED_CONFIRMATIONS,
                reason="transaction contains no USDT transfer",
            )

        return TransactionConfirmation(
            reference=txid,
            status=ConfirmationStatus.FINALIZED,
            amount_minor=transfers[0].amount_minor,
            recipient=transfers[0].recipient,
            asset=Asset.USDT_TRC20,
            confirmations=SOLIDIFIED_CONFIRMATIONS,
            transfers=transfers,
        )

    def _find_usdt_transfers(self, logs: list[dict[str, Any]]) -> tuple[Transfer, ...]:
        """Every Transfer event emitted by the USDT contract, in log order"""
        transfers = []
        for entry in logs:
            if not isinstance(entry, dict):
                continue
            topics = entry.get("topics") or []
            if str(entry.get("address", "")).lower()[-40:] != self._usdt_contract_hex:
                continue
            if len(topics) < 3 or str(topics[0]).lower() != TRANSFER_EVENT_TOPIC:
                continue
            try:
                recipient = tron_address_from_hex(topics[2])
                amount = int(entry.get("data") or "0", 16)
            except (TypeError, ValueError):
                logger.warning("Unparseable USDT transfer log: %s", entry)
                continue
            transfers.append(Transfer(recipient=recipient, amount_minor=amount))
        return tuple(transfers)

    async def get_balance(self, address: str, asset: Asset) -> int:
        if asset not in self.supported_assets:
            raise ValueError(f"{asset.value} is not held on {self.network.value}")

        owner = self.normalize_address(address)
        parameter = tron_address_to_hex(owner)[2:].rjust(64, "0")
        result = await self._post(
            "/wallet/triggerconstantcontract",
            {
                "owner_address": owner,
                "contract_address": self.usdt_contract,
                "function_selector": "balanceOf(address)",
                "parameter": parameter,
                "visible": True,
            },
        )
        constant = (result.get("constant_result") or [None])[0]
        if not constant:
            raise ChainError(f"balanceOf returned no result for {owner}")
        return int(constant, 16)

    async def estimate_fee(self) -> FeeEstimate:
        try:
            params = await self._post("/wallet/getchainparameters", {})
            energy_fee = next(
                int(p["value"])
                for p in params.get("chainParameter", [])
                if p.get("key") == "getEnergyFee"
            )
            return FeeEstimate(
                amount_minor=TRC20_TRANSFER_ENERGY * energy_fee,
                fee_symbol="TRX",
                decimals=6,
                estimated=True,
            )
        except (ChainError, StopIteration, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("TRON fee estimation failed, using default: %s", e)
            return FeeEstimate(
                amount_minor=DEFAULT_FEE_SUN,
                fee_symbol="TRX",
                decimals=6,
                estimated=False,
            )

    async def submit_transfer(self, signed_transaction: dict[str, Any]) -> str:
        result = await self._post("/wallet/broadcasttransaction", signed_transaction)
        if not result.get("result"):
            message = _decode_message(result.get("message")) or result.get("code") or "rejected"
            raise ChainError(f"Broadcast rejected: {message}")
        return result.get("txid") or signed_transaction.get("txID", "")

    def build_payment_uri(
        self,
        address: str,
        asset: Asset,
        amount_minor: int,
        memo: Optional[str] = None,
    ) -> str:
        query = {"token": self.usdt_contract, "amount": format_amount(amount_minor, asset)}
        if memo:
            query["memo"] = memo
        return f"tron:{address}?{urlencode(query)}"
