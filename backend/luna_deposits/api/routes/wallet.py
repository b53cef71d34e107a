"""
Wallet Routes

Read-only endpoints for wallet balances and the credit journal
"""

from typing import List

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from luna_deposits.core.rate_limit import limiter
from luna_deposits.db.session import get_db
from luna_deposits.services.wallet import WalletLedger

router = APIRouter(prefix="/wallet", tags=["wallet"])


class BalanceResponse(BaseModel):
    asset: str
    balance: str
    total_deposited: str
    balance_minor: str  # exact integer as string; wei amounts exceed JSON-safe integers


class BalancesResponse(BaseModel):
    user_id: int
    balances: List[BalanceResponse]


class WalletTransactionResponse(BaseModel):
    id: int
    asset: str
    amount: str
    type: str
    intent_id: str
    created_at: str


class WalletTransactionsResponse(BaseModel):
    user_id: int
    transactions: List[WalletTransactionResponse]
    total: int


@router.get("/{user_id}/balances", response_model=BalancesResponse)
@limiter.limit("60/minute")
def get_balances(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
) -> BalancesResponse:
    """
    Wallet balances of a user, one entry per deposited asset

    Assets the user never deposited are omitted (their balance is 0).
    """
    rows = WalletLedger(db).get_balances(user_id)
    return BalancesResponse(
        user_id=user_id,
        balances=[
            BalanceResponse(
                asset=row.asset,
                balance=row.balance_display,
                total_deposited=row.total_deposited_display,
                balance_minor=str(row.balance_minor),
            )
            for row in rows
        ],
    )


@router.get("/{user_id}/transactions", response_model=WalletTransactionsResponse)
@limiter.limit("60/minute")
def get_transactions(
    request: Request,
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> WalletTransactionsResponse:
    """Credit journal of a user, newest first"""
    entries = WalletLedger(db).list_transactions(user_id, limit=limit, offset=offset)
    return WalletTransactionsResponse(
        user_id=user_id,
        transactions=[
            WalletTransactionResponse(
                id=entry.id,
                asset=entry.asset,
                amount=entry.amount_display,
                type=entry.type,
                intent_id=entry.intent_id,
                created_at=entry.created_at.isoformat(),
            )
            for entry in entries
        ],
        total=len(entries),
    )
