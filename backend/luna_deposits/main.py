"""
Luna Deposits API - FastAPI Application

Crypto deposit settlement for the advertising platform
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.orm import Session

from luna_deposits import __version__
from luna_deposits.api.routes import deposits, wallet
from luna_deposits.chains.registry import build_chain_clients, close_chain_clients
from luna_deposits.core.config import get_settings
from luna_deposits.core.exceptions import (
    APIException,
    api_exception_handler,
    http_exception_handler,
)
from luna_deposits.core.logging_config import get_logger, setup_logging
from luna_deposits.core.rate_limit import limiter
from luna_deposits.db.session import SessionLocal, get_db, init_db
from luna_deposits.services.poller import SettlementPoller
from luna_deposits.services.rates import ExchangeRateProvider


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: logging, schema, chain clients, rate provider, optional poller.
    Shutdown: stop the poller and close HTTP clients.
    """
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.use_json_logs)

    logger = get_logger()
    logger.info("Starting Luna Deposits API", extra={
        "version": __version__,
        "environment": settings.ENVIRONMENT
    })

    init_db()
    logger.info("Database initialized successfully")

    app.state.chain_clients = build_chain_clients(settings)
    app.state.rate_provider = ExchangeRateProvider(
        settings.RATES_API_URL,
        fiat_currency=settings.FIAT_CURRENCY,
        timeout=settings.RATES_TIMEOUT_SECONDS,
    )
    app.state.settlement_listeners = []

    poller = None
    if settings.POLLER_ENABLED:
        poller = SettlementPoller(
            SessionLocal,
            app.state.chain_clients,
            app.state.rate_provider,
            settings,
            app.state.settlement_listeners,
        )
        await poller.start()

    yield

    if poller:
        await poller.stop()
    await close_chain_clients(app.state.chain_clients)
    await app.state.rate_provider.close()
    logger.info("Shutting down Luna Deposits API")


app = FastAPI(
    title="Luna Deposits API",
    description="Crypto deposit intents, on-chain verification and wallet crediting",
    version=__version__,
    lifespan=lifespan
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add structured exception handlers
app.add_exception_handler(APIException, api_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)

# SECURITY: Restrict origins in production (configured via ALLOWED_ORIGINS env var)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(deposits.router)
app.include_router(wallet.router)


@app.get("/")
@limiter.limit("100/minute")
def root(request: Request) -> Dict[str, str]:
    return {
        "message": "Luna Deposits API",
        "status": "working",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
@limiter.limit("60/minute")
def health(request: Request) -> Dict[str, str]:
    """
    Basic health check endpoint

    Returns 200 if application is running.
    Use for liveness probes.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/health/ready")
@limiter.limit("60/minute")
async def health_ready(request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Readiness check endpoint

    Verifies the database connection and that the chain clients are up.
    Chain nodes themselves are not probed: an unreachable node only leaves
    intents pending, it does not make the service unready.

    Returns:
        200: Application is ready
        503: Application is not ready (with details)
    """
    checks = {
        "status": "ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {}
    }

    try:
        db.execute(text("SELECT 1"))
        checks["checks"]["database"] = "ok"
    except Exception as e:
        checks["status"] = "not_ready"
        checks["checks"]["database"] = f"error: {str(e)}"
        raise HTTPException(503, detail=checks)

    clients = getattr(request.app.state, "chain_clients", None) or {}
    checks["checks"]["networks"] = sorted(network.value for network in clients)
    if not clients:
        checks["status"] = "not_ready"
        raise HTTPException(503, detail=checks)

    return checks


# Run:
# uvicorn luna_deposits.main:app --reload --app-dir backend
