"""
API Dependencies

FastAPI dependencies for settings, database access and the settlement
collaborators created by the application lifespan.
"""

from typing import Mapping

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from luna_deposits.chains.assets import Network
from luna_deposits.chains.base import ChainClient
from luna_deposits.core.config import Settings, get_settings
from luna_deposits.db.session import get_db
from luna_deposits.services.rates import ExchangeRateProvider
from luna_deposits.services.settlement import SettlementEngine


def get_app_settings() -> Settings:
    """
    Settings dependency

    Tests override this to run against a Settings object with deposit
    addresses configured.
    """
    return get_settings()


def get_chain_clients(request: Request) -> Mapping[Network, ChainClient]:
    """Chain clients stored on app.state by the lifespan"""
    return request.app.state.chain_clients


def get_rate_provider(request: Request) -> ExchangeRateProvider:
    return request.app.state.rate_provider


def get_settlement_engine(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    chain_clients: Mapping[Network, ChainClient] = Depends(get_chain_clients),
    rate_provider: ExchangeRateProvider = Depends(get_rate_provider),
) -> SettlementEngine:
    """
    Settlement engine bound to the request's database session

    Usage in endpoints:
        @router.post("/deposits/verify")
        async def verify(body: VerifyRequest, engine: SettlementEngine = Depends(get_settlement_engine)):
            return await engine.verify_and_settle(body.intent_id, body.transaction_reference)
    """
    listeners = getattr(request.app.state, "settlement_listeners", ())
    return SettlementEngine(db, chain_clients, rate_provider, settings, listeners)
