"""
Payment Intent Store

Persistence for deposit intents. Every state change is a compare-and-swap
UPDATE guarded by the expected current state, so concurrent verifications
of the same intent cannot both win.

The store never commits: the caller owns the transaction boundary.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from luna_deposits.chains.assets import Asset
from luna_deposits.core.logging_config import get_logger
from luna_deposits.db.models import IntentStatus, PaymentIntent, utcnow
from luna_deposits.services.errors import ConflictError, IntentNotFoundError

logger = get_logger()


@dataclass
class TransitionResult:
    intent: PaymentIntent
    changed: bool  # False: intent was already terminal, nothing written


class PaymentIntentStore:

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: int,
        asset: Asset,
        amount_minor: int,
        destination_address: str,
        *,
        memo: Optional[str] = None,
        fiat_currency: Optional[str] = None,
        fiat_rate: Optional[Decimal] = None,
        fiat_equivalent: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Create a pending intent

        With an idempotency key, a repeated call for the same user returns
        the intent created by the first call instead of a new one.
        """
        if idempotency_key:
            existing = self._find_by_idempotency_key(user_id, idempotency_key)
            if existing:
                logger.info("Returning existing intent for idempotency key", extra={
                    "intent_id": existing.id,
                    "user_id": user_id,
                })
                return existing

        intent = PaymentIntent(
            user_id=user_id,
            asset=asset.value,
            amount_minor=amount_minor,
            destination_address=destination_address,
            memo=memo,
            status=IntentStatus.PENDING.value,
            fiat_currency=fiat_currency,
            fiat_rate=fiat_rate,
            fiat_equivalent=fiat_equivalent,
            idempotency_key=idempotency_key,
        )
        self.db.add(intent)
        try:
            self.db.flush()
        except IntegrityError:
            # Concurrent create with the same idempotency key won the insert
            self.db.rollback()
            existing = self._find_by_idempotency_key(user_id, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return existing

        # The memo lets a wallet tag the transfer with the intent it pays for
        if memo is None:
            intent.memo = intent.id
        return intent

    def _find_by_idempotency_key(self, user_id: int, key: str) -> Optional[PaymentIntent]:
        return self.db.query(PaymentIntent).filter(
            PaymentIntent.user_id == user_id,
            PaymentIntent.idempotency_key == key,
        ).first()

    def get(self, intent_id: str) -> PaymentIntent:
        """
        Raises:
            IntentNotFoundError: If no intent has this id
        """
        intent = self.db.get(PaymentIntent, intent_id)
        if intent is None:
            raise IntentNotFoundError(intent_id)
        return intent

    def find_by_reference(self, reference: str) -> Optional[PaymentIntent]:
        return self.db.query(PaymentIntent).filter(
            PaymentIntent.transaction_reference == reference
        ).first()

    def attach_reference(self, intent_id: str, reference: str) -> PaymentIntent:
        """
        Bind a transaction reference to a pending intent

        A reference is bound at most once and to at most one intent.
        Re-attaching the same reference is a no-op.

        Raises:
            IntentNotFoundError: If the intent does not exist
            ConflictError: If another intent holds the reference
                (conflicting_intent_id is set), or this intent is already
                bound to a different reference or is no longer pending
        """
        intent = self.get(intent_id)
        if intent.transaction_reference == reference:
            return intent
        if intent.transaction_reference is not None:
            raise ConflictError(f"Intent {intent_id} is already bound to a different transaction")

        owner = self.find_by_reference(reference)
        if owner is not None:
            raise ConflictError(
                f"Transaction is already bound to intent {owner.id}",
                conflicting_intent_id=owner.id,
            )

        now = utcnow()
        try:
            updated = self.db.query(PaymentIntent).filter(
                PaymentIntent.id == intent_id,
                PaymentIntent.status == IntentStatus.PENDING.value,
                PaymentIntent.transaction_reference.is_(None),
            ).update(
                {
                    "transaction_reference": reference,
                    "reference_attached_at": now,
                    "last_checked_at": now,
                    "updated_at": now,
                },
                synchronize_session=False,
            )
        except IntegrityError:
            # Unique index caught a concurrent attach of the same reference
            self.db.rollback()
            owner = self.find_by_reference(reference)
            raise ConflictError(
                "Transaction is already bound to another intent",
                conflicting_intent_id=owner.id if owner else None,
            ) from None

        self.db.refresh(intent)
        if updated:
            return intent
        if intent.transaction_reference == reference:
            return intent
        if intent.transaction_reference is not None:
            raise ConflictError(f"Intent {intent_id} is already bound to a different transaction")
        raise ConflictError(f"Intent {intent_id} is already {intent.status}")

    def mark_settled(self, intent_id: str, received_amount_minor: int) -> TransitionResult:
        now = utcnow()
        return self._transition(intent_id, {
            "status": IntentStatus.SETTLED.value,
            "received_amount_minor": received_amount_minor,
            "failure_reason": None,
            "settled_at": now,
            "updated_at": now,
        })

    def mark_failed(
        self,
        intent_id: str,
        reason: str,
        received_amount_minor: Optional[int] = None,
    ) -> TransitionResult:
        return self._transition(intent_id, {
            "status": IntentStatus.FAILED.value,
            "received_amount_minor": received_amount_minor,
            "failure_reason": reason,
            "updated_at": utcnow(),
        })

    def fail_unseen_reference(self, intent_id: str, attached_before: datetime, reason: str) -> TransitionResult:
        """
        Fail a pending intent whose reference was bound before the cutoff

        Used when the chain still does not know the transaction; changed is
        False while the reference is younger than the cutoff.
        """
        return self._transition(
            intent_id,
            {
                "status": IntentStatus.FAILED.value,
                "failure_reason": reason,
                "updated_at": utcnow(),
            },
            PaymentIntent.reference_attached_at < attached_before,
        )

    def _transition(self, intent_id: str, values: dict, *criteria) -> TransitionResult:
        """pending -> terminal, only if the intent is still pending"""
        intent = self.get(intent_id)
        updated = self.db.query(PaymentIntent).filter(
            PaymentIntent.id == intent_id,
            PaymentIntent.status == IntentStatus.PENDING.value,
            *criteria,
        ).update(values, synchronize_session=False)
        self.db.refresh(intent)
        return TransitionResult(intent=intent, changed=bool(updated))

    def list_awaiting_confirmation(self, limit: int = 50) -> List[PaymentIntent]:
        """Pending intents that already carry a transaction reference, least recently checked first"""
        return self.db.query(PaymentIntent).filter(
            PaymentIntent.status == IntentStatus.PENDING.value,
            PaymentIntent.transaction_reference.isnot(None),
        ).order_by(
            PaymentIntent.last_checked_at.asc(),
            PaymentIntent.created_at.asc(),
        ).limit(limit).all()

    def mark_checked(self, intent_ids: List[str]) -> None:
        """Move intents to the back of the polling queue"""
        if not intent_ids:
            return
        self.db.query(PaymentIntent).filter(
            PaymentIntent.id.in_(intent_ids)
        ).update({"last_checked_at": utcnow()}, synchronize_session=False)

    def expire_stale(self, older_than: datetime, reason: str = "expired") -> int:
        """
        Fail pending intents that never received a transaction reference

        Returns:
            int: Number of intents expired
        """
        expired = self.db.query(PaymentIntent).filter(
            PaymentIntent.status == IntentStatus.PENDING.value,
            PaymentIntent.transaction_reference.is_(None),
            PaymentIntent.created_at < older_than,
        ).update(
            {
                "status": IntentStatus.FAILED.value,
                "failure_reason": reason,
                "updated_at": utcnow(),
            },
            synchronize_session=False,
        )
        if expired:
            logger.info("Expired stale payment intents", extra={"count": expired})
        return expired

    def list_for_user(
        self,
        user_id: int,
        status: Optional[IntentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PaymentIntent]:
        query = self.db.query(PaymentIntent).filter(PaymentIntent.user_id == user_id)
        if status is not None:
            query = query.filter(PaymentIntent.status == status.value)
        return query.order_by(PaymentIntent.created_at.desc()).offset(offset).limit(limit).all()
