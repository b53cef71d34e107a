"""
Chain client construction from Settings
"""

from typing import Optional

import httpx

from luna_deposits.core.config import Settings

from .assets import Asset, Network
from .base import ChainClient
from .evm import EvmRpcClient
from .tron import TronGridClient


def build_chain_clients(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[Network, ChainClient]:
    """One client per supported network, configured from settings"""
    common = {
        "timeout": settings.CHAIN_REQUEST_TIMEOUT_SECONDS,
        "retry_attempts": settings.CHAIN_RETRY_ATTEMPTS,
        "retry_delay": settings.CHAIN_RETRY_DELAY_SECONDS,
        "transport": transport,
    }
    return {
        Network.TRON: TronGridClient(
            api_url=settings.TRON_API_URL,
            usdt_contract=settings.TRON_USDT_CONTRACT,
            api_key=settings.TRON_API_KEY,
            **common,
        ),
        Network.BSC: EvmRpcClient(
            rpc_url=settings.BSC_RPC_URL,
            native_asset=Asset.BNB_BSC,
            chain_id=settings.BSC_CHAIN_ID,
            confirmations_required=settings.BSC_CONFIRMATIONS,
            **common,
        ),
        Network.ETHEREUM: EvmRpcClient(
            rpc_url=settings.ETH_RPC_URL,
            native_asset=Asset.ETH,
            chain_id=settings.ETH_CHAIN_ID,
            confirmations_required=settings.ETH_CONFIRMATIONS,
            **common,
        ),
    }


async def close_chain_clients(clients: dict[Network, ChainClient]) -> None:
    for client in clients.values():
        await client.close()
