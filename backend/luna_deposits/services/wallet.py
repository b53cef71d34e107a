"""
Wallet Ledger

Per-user, per-asset balances in minor units plus the append-only journal
of credits. This is the only module that mutates wallet balances.

The ledger never commits: the settlement engine commits the credit in the
same unit of work as the intent transition.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from luna_deposits.chains.assets import Asset, format_amount
from luna_deposits.core.logging_config import get_logger
from luna_deposits.db.models import WalletBalance, WalletTransaction, utcnow

logger = get_logger()


class WalletLedger:

    def __init__(self, db: Session):
        self.db = db

    def credit(self, user_id: int, asset: Asset, amount_minor: int, intent_id: str) -> WalletBalance:
        """
        Add a settled deposit to the user's balance

        Args:
            user_id: Platform user id
            asset: Deposited asset
            amount_minor: Credited amount in the asset's minor units
            intent_id: Intent that is being settled; recorded in the journal

        Returns:
            WalletBalance: Updated (flushed, not committed) balance row

        Raises:
            ValueError: If amount_minor is not a positive int
            IntegrityError: On flush, if the intent was already credited
        """
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise ValueError(f"Credit amount must be a positive integer, got {amount_minor!r}")

        balance = self._get_row(user_id, asset, for_update=True)
        if balance is None:
            balance = WalletBalance(
                user_id=user_id,
                asset=asset.value,
                balance_minor=0,
                total_deposited_minor=0,
            )
            self.db.add(balance)

        balance.balance_minor = (balance.balance_minor or 0) + amount_minor
        balance.total_deposited_minor = (balance.total_deposited_minor or 0) + amount_minor
        balance.updated_at = utcnow()

        self.db.add(WalletTransaction(
            user_id=user_id,
            asset=asset.value,
            amount_minor=amount_minor,
            type="deposit",
            intent_id=intent_id,
        ))
        self.db.flush()

        logger.info("Wallet credited", extra={
            "user_id": user_id,
            "asset": asset.value,
            "amount": balance_display(amount_minor, asset),
            "intent_id": intent_id,
        })
        return balance

    def _get_row(self, user_id: int, asset: Asset, for_update: bool = False) -> Optional[WalletBalance]:
        query = self.db.query(WalletBalance).filter(
            WalletBalance.user_id == user_id,
            WalletBalance.asset == asset.value,
        )
        if for_update:
            # PostgreSQL: row lock until commit. SQLite ignores it (single writer).
            query = query.with_for_update()
        return query.first()

    def get_balance(self, user_id: int, asset: Asset) -> int:
        """Balance in minor units; 0 when the user never deposited this asset"""
        row = self._get_row(user_id, asset)
        return row.balance_minor if row else 0

    def get_balances(self, user_id: int) -> List[WalletBalance]:
        return self.db.query(WalletBalance).filter(
            WalletBalance.user_id == user_id
        ).order_by(WalletBalance.asset).all()

    def list_transactions(self, user_id: int, limit: int = 50, offset: int = 0) -> List[WalletTransaction]:
        return self.db.query(WalletTransaction).filter(
            WalletTransaction.user_id == user_id
        ).order_by(WalletTransaction.id.desc()).offset(offset).limit(limit).all()


def balance_display(amount_minor: int, asset: Asset) -> str:
    """Log-friendly amount with symbol, e.g. "50.000000 USDT" """
    return f"{format_amount(amount_minor, asset)} {asset.symbol}"
