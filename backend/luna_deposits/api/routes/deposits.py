"""
Deposit Routes

Endpoints for crypto deposit quotes and settlement checks
"""

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from luna_deposits.api.deps import get_rate_provider, get_settlement_engine
from luna_deposits.chains.assets import format_amount, parse_asset
from luna_deposits.core.exceptions import InvalidDepositException, api_exception_from
from luna_deposits.core.rate_limit import limiter
from luna_deposits.db.models import IntentStatus, PaymentIntent
from luna_deposits.db.session import get_db
from luna_deposits.services.errors import SettlementError
from luna_deposits.services.intents import PaymentIntentStore
from luna_deposits.services.rates import ExchangeRateProvider
from luna_deposits.services.settlement import SettlementEngine

router = APIRouter(prefix="/deposits", tags=["deposits"])


# --- Request/Response Models ---

class CreateDepositRequest(BaseModel):
    """Request to create a deposit intent"""
    user_id: int = Field(..., gt=0, description="Platform user id")
    # Decimal string in whole units; JSON numbers are refused so no float ever reaches the engine
    amount: str = Field(..., min_length=1, max_length=100, description="Amount in whole units, e.g. \"50.5\"")
    asset: str = Field(..., min_length=1, max_length=20, description="usdt_trc20, bnb_bsc or eth")
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=64)


class PaymentDescriptorResponse(BaseModel):
    address: str
    amount: str
    asset: str
    network: str
    memo: Optional[str]
    uri: str


class DepositResponse(BaseModel):
    """Deposit quote: where and how much to pay"""
    intent_id: str
    user_id: int
    destination_address: str
    amount: str
    asset: str
    network: str
    status: str
    fiat_equivalent: Optional[str]
    fiat_currency: Optional[str]
    exchange_rate: Optional[str]
    rate_source: str
    payment_descriptor: PaymentDescriptorResponse
    created_at: str


class VerifyDepositRequest(BaseModel):
    intent_id: str = Field(..., min_length=1, max_length=36)
    transaction_reference: str = Field(..., min_length=1, max_length=128)


class VerifyDepositResponse(BaseModel):
    intent_id: str
    status: str
    reason: Optional[str] = None
    credited_amount: Optional[str] = None
    transaction_reference: Optional[str] = None


class IntentResponse(BaseModel):
    """Stored deposit intent"""
    intent_id: str
    user_id: int
    asset: str
    network: str
    amount: str
    destination_address: str
    memo: Optional[str]
    status: str
    transaction_reference: Optional[str]
    received_amount: Optional[str]
    failure_reason: Optional[str]
    fiat_equivalent: Optional[str]
    fiat_currency: Optional[str]
    created_at: str
    settled_at: Optional[str]


class IntentListResponse(BaseModel):
    intents: List[IntentResponse]
    total: int


class RatesResponse(BaseModel):
    fiat_currency: str
    source: str
    fetched_at: str
    rates: Dict[str, str]


class FeeEstimateResponse(BaseModel):
    asset: str
    network: str
    fee: str
    fee_symbol: str
    estimated: bool


# --- Helper Functions ---

def _decimal_str(value) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def intent_to_response(intent: PaymentIntent) -> IntentResponse:
    asset = intent.asset_enum
    return IntentResponse(
        intent_id=intent.id,
        user_id=intent.user_id,
        asset=asset.value,
        network=asset.network.value,
        amount=intent.amount_display,
        destination_address=intent.destination_address,
        memo=intent.memo,
        status=intent.status,
        transaction_reference=intent.transaction_reference,
        received_amount=(
            format_amount(intent.received_amount_minor, asset)
            if intent.received_amount_minor is not None else None
        ),
        failure_reason=intent.failure_reason,
        fiat_equivalent=_decimal_str(intent.fiat_equivalent),
        fiat_currency=intent.fiat_currency,
        created_at=intent.created_at.isoformat(),
        settled_at=_iso(intent.settled_at),
    )


# --- Endpoints ---

@router.post("", response_model=DepositResponse, status_code=201)
@limiter.limit("30/minute")
async def create_deposit(
    request: Request,
    body: CreateDepositRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> DepositResponse:
    """
    Create a deposit intent

    Validates:
    - Supported and configured asset
    - Amount precision (no more decimals than the asset has)
    - Network minimum

    Returns:
        Destination address, exact amount and a wallet payment URI
    """
    try:
        quote = await engine.create_deposit(
            user_id=body.user_id,
            amount=body.amount,
            asset=body.asset,
            idempotency_key=body.idempotency_key,
        )
    except SettlementError as e:
        raise api_exception_from(e) from e

    intent = quote.intent
    payment = quote.payment
    return DepositResponse(
        intent_id=intent.id,
        user_id=intent.user_id,
        destination_address=payment.address,
        amount=payment.amount,
        asset=payment.asset.value,
        network=payment.network.value,
        status=intent.status,
        fiat_equivalent=_decimal_str(quote.fiat_equivalent),
        fiat_currency=quote.fiat_currency,
        exchange_rate=_decimal_str(quote.exchange_rate),
        rate_source=quote.rate_source,
        payment_descriptor=PaymentDescriptorResponse(
            address=payment.address,
            amount=payment.amount,
            asset=payment.asset.value,
            network=payment.network.value,
            memo=payment.memo,
            uri=payment.uri,
        ),
        created_at=intent.created_at.isoformat(),
    )


@router.post("/verify", response_model=VerifyDepositResponse)
@limiter.limit("30/minute")
async def verify_deposit(
    request: Request,
    body: VerifyDepositRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> VerifyDepositResponse:
    """
    Check the paying transaction of an intent and settle it

    Safe to repeat. "pending" means the transaction is not final yet or
    the network could not be reached; call again later.
    """
    try:
        result = await engine.verify_and_settle(body.intent_id, body.transaction_reference)
    except SettlementError as e:
        raise api_exception_from(e) from e

    credited = None
    if result.status is IntentStatus.SETTLED:
        asset = engine.intents.get(result.intent_id).asset_enum
        credited = format_amount(result.credited_minor, asset)

    return VerifyDepositResponse(
        intent_id=result.intent_id,
        status=result.status.value,
        reason=result.reason,
        credited_amount=credited,
        transaction_reference=result.transaction_reference,
    )


@router.get("/rates", response_model=RatesResponse)
@limiter.limit("60/minute")
async def get_rates(
    request: Request,
    rate_provider: ExchangeRateProvider = Depends(get_rate_provider),
) -> RatesResponse:
    """Current asset prices in the configured fiat currency"""
    snapshot = await rate_provider.get_rates()
    return RatesResponse(
        fiat_currency=snapshot.fiat_currency,
        source=snapshot.source,
        fetched_at=snapshot.fetched_at.isoformat(),
        rates={asset.value: str(rate) for asset, rate in snapshot.rates.items()},
    )


@router.get("/fees/{asset}", response_model=FeeEstimateResponse)
@limiter.limit("60/minute")
async def get_fee_estimate(
    request: Request,
    asset: str,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> FeeEstimateResponse:
    """Advisory network fee the sender pays for a deposit transfer"""
    try:
        deposit_asset = parse_asset(asset)
        estimate = await engine.estimate_fee(deposit_asset)
    except ValueError as e:
        raise InvalidDepositException(str(e)) from e
    except SettlementError as e:
        raise api_exception_from(e) from e

    return FeeEstimateResponse(
        asset=deposit_asset.value,
        network=deposit_asset.network.value,
        fee=estimate.amount_display,
        fee_symbol=estimate.fee_symbol,
        estimated=estimate.estimated,
    )


@router.get("/{intent_id}", response_model=IntentResponse)
@limiter.limit("60/minute")
def get_deposit(
    request: Request,
    intent_id: str,
    db: Session = Depends(get_db),
) -> IntentResponse:
    """Get a deposit intent by id"""
    try:
        intent = PaymentIntentStore(db).get(intent_id)
    except SettlementError as e:
        raise api_exception_from(e) from e
    return intent_to_response(intent)


@router.get("", response_model=IntentListResponse)
@limiter.limit("60/minute")
def list_deposits(
    request: Request,
    user_id: int = Query(..., gt=0),
    status: Optional[IntentStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> IntentListResponse:
    """List a user's deposit intents, newest first"""
    intents = PaymentIntentStore(db).list_for_user(user_id, status=status, limit=limit, offset=offset)
    return IntentListResponse(
        intents=[intent_to_response(intent) for intent in intents],
        total=len(intents),
    )
