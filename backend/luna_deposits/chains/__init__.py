"""
Blockchain Integration

Per-network adapters behind a common ChainClient interface:
- TRON: TRC-20 USDT deposits via the TronGrid HTTP API
- BNB Smart Chain / Ethereum: native coin deposits via JSON-RPC
"""

from .assets import Asset, Network
from .base import (
    ChainClient,
    ChainError,
    ConfirmationStatus,
    FeeEstimate,
    RetryableChainError,
    TransactionConfirmation,
)

# Concrete clients need httpx/base58; import them directly when needed:
#   from luna_deposits.chains.tron import TronGridClient
#   from luna_deposits.chains.evm import EvmRpcClient
#   from luna_deposits.chains.registry import build_chain_clients

__all__ = [
    "Asset",
    "Network",
    "ChainClient",
    "ChainError",
    "ConfirmationStatus",
    "FeeEstimate",
    "RetryableChainError",
    "TransactionConfirmation",
]
