"""
Settlement Engine - Deposit Quotes and On-Chain Settlement

CRITICAL: This module moves money into user wallets.
An intent causes at most one credit, and only after the chain reports the
paying transaction as final.

Flow:
1. create_deposit: validate amount/asset, snapshot the fiat rate, store a
   pending intent and return where/how much to pay
2. verify_and_settle: bind the transaction reference (committed), ask the
   chain for finality with no lock held, then either
   - leave the intent pending (not found / below finality / node down)
   - fail it once a reference unknown to the chain outlives REFERENCE_TTL_MINUTES
   - fail it (reverted, wrong asset, wrong recipient, wrong amount)
   - settle it and credit the wallet in ONE unit of work

Example for a 50 USDT deposit on TRON:
- Quote: 50000000 minor units to the platform TRON address
- Transaction solidified with a 50000000 USDT Transfer log to that address
- Intent -> settled, wallet balance += 50000000, journal += 1 deposit row
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Callable, Iterable, Mapping, Optional, Union

from sqlalchemy.orm import Session

from luna_deposits.chains.assets import (
    Asset,
    Network,
    format_amount,
    from_minor_units,
    parse_asset,
    to_minor_units,
)
from luna_deposits.chains.base import (
    ChainClient,
    ConfirmationStatus,
    FeeEstimate,
    RetryableChainError,
    TransactionConfirmation,
)
from luna_deposits.core.config import Settings
from luna_deposits.core.logging_config import get_logger
from luna_deposits.db.models import IntentStatus, PaymentIntent, WalletTransaction, utcnow
from luna_deposits.services.errors import (
    ConflictError,
    DepositValidationError,
    DuplicateTransactionError,
    LedgerConsistencyError,
    TerminalChainFailure,
)
from luna_deposits.services.intents import PaymentIntentStore
from luna_deposits.services.rates import ExchangeRateProvider
from luna_deposits.services.wallet import WalletLedger, balance_display

logger = get_logger()

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class PaymentDescriptor:
    """Everything a wallet needs to pay an intent"""
    address: str
    amount: str  # whole units at full asset precision
    asset: Asset
    network: Network
    memo: Optional[str]
    uri: str


@dataclass
class DepositQuote:
    intent: PaymentIntent
    payment: PaymentDescriptor
    fiat_currency: str
    exchange_rate: Optional[Decimal]
    fiat_equivalent: Optional[Decimal]
    rate_source: str


@dataclass(frozen=True)
class SettlementResult:
    intent_id: str
    status: IntentStatus
    reason: Optional[str] = None
    credited_minor: int = 0
    transaction_reference: Optional[str] = None


SettlementListener = Callable[[SettlementResult], None]


class SettlementEngine:
    """
    Orchestrates intent creation and settlement

    One engine per database session. Chain clients and the rate provider
    are shared, long-lived objects owned by the application.
    """

    def __init__(
        self,
        db: Session,
        chain_clients: Mapping[Network, ChainClient],
        rate_provider: ExchangeRateProvider,
        settings: Settings,
        listeners: Iterable[SettlementListener] = (),
    ):
        self.db = db
        self.chain_clients = chain_clients
        self.rate_provider = rate_provider
        self.settings = settings
        self.listeners = list(listeners)
        self.intents = PaymentIntentStore(db)
        self.ledger = WalletLedger(db)

    def _client_for(self, asset: Asset) -> ChainClient:
        client = self.chain_clients.get(asset.network)
        if client is None or asset not in client.supported_assets:
            raise DepositValidationError(f"{asset.value} deposits are not available")
        return client

    async def create_deposit(
        self,
        user_id: int,
        amount: Union[Decimal, str, int],
        asset: Union[Asset, str],
        idempotency_key: Optional[str] = None,
    ) -> DepositQuote:
        """
        Create a pending deposit intent and quote it

        Args:
            user_id: Platform user id
            amount: Amount in whole asset units (Decimal or decimal string)
            asset: Asset or its value, e.g. "usdt_trc20"
            idempotency_key: Optional client key; repeats return the first intent

        Returns:
            DepositQuote with the intent and payment instructions

        Raises:
            DepositValidationError: Nothing is stored
        """
        if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
            raise DepositValidationError("user_id must be a positive integer")

        try:
            asset = parse_asset(asset)
        except ValueError as e:
            raise DepositValidationError(str(e)) from None

        client = self._client_for(asset)
        destination = self.settings.deposit_address_for(asset)
        if not destination:
            raise DepositValidationError(f"{asset.value} deposits are not configured")
        try:
            destination = client.normalize_address(destination)
        except ValueError:
            logger.error("Configured deposit address is invalid", extra={"asset": asset.value})
            raise DepositValidationError(f"{asset.value} deposits are not configured") from None

        try:
            amount_minor = to_minor_units(amount, asset)
        except ValueError as e:
            raise DepositValidationError(str(e)) from None

        if amount_minor <= 0:
            raise DepositValidationError("Deposit amount must be positive")

        minimum = self.settings.min_deposit_minor(asset)
        if amount_minor < minimum:
            raise DepositValidationError(
                f"Minimum {asset.symbol} deposit is {format_amount(minimum, asset)}"
            )

        snapshot = await self.rate_provider.get_rates()
        rate = snapshot.rate_for(asset)
        fiat_equivalent = self._fiat_equivalent(amount_minor, asset, rate)

        intent = self.intents.create(
            user_id=user_id,
            asset=asset,
            amount_minor=amount_minor,
            destination_address=destination,
            fiat_currency=snapshot.fiat_currency,
            fiat_rate=rate,
            fiat_equivalent=fiat_equivalent,
            idempotency_key=idempotency_key,
        )
        self.db.commit()

        # An idempotent repeat returns the stored intent, which may predate this quote
        intent_asset = intent.asset_enum
        payment = PaymentDescriptor(
            address=intent.destination_address,
            amount=format_amount(intent.amount_minor, intent_asset),
            asset=intent_asset,
            network=intent_asset.network,
            memo=intent.memo,
            uri=self._client_for(intent_asset).build_payment_uri(
                intent.destination_address,
                intent_asset,
                intent.amount_minor,
                memo=intent.memo,
            ),
        )

        logger.info("Deposit intent created", extra={
            "intent_id": intent.id,
            "user_id": user_id,
            "asset": intent_asset.value,
            "amount": payment.amount,
            "fiat_equivalent": str(intent.fiat_equivalent),
            "rate_source": snapshot.source,
        })

        return DepositQuote(
            intent=intent,
            payment=payment,
            fiat_currency=intent.fiat_currency or snapshot.fiat_currency,
            exchange_rate=intent.fiat_rate,
            fiat_equivalent=intent.fiat_equivalent,
            rate_source=snapshot.source,
        )

    @staticmethod
    def _fiat_equivalent(amount_minor: int, asset: Asset, rate: Decimal) -> Optional[Decimal]:
        """amount x rate rounded to cents; informational only"""
        try:
            with localcontext() as ctx:
                ctx.prec = 100
                return (from_minor_units(amount_minor, asset) * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            logger.warning("Could not compute fiat equivalent", extra={"asset": asset.value})
            return None

    async def verify_and_settle(self, intent_id: str, transaction_reference: str) -> SettlementResult:
        """
        Verify the paying transaction of an intent and settle it

        Safe to call any number of times: a terminal intent is returned
        unchanged and a settled intent is never credited twice.

        Returns:
            SettlementResult: pending (retry later), settled or failed

        Raises:
            IntentNotFoundError: Unknown intent
            DepositValidationError: Malformed transaction reference
            DuplicateTransactionError: Reference already paid another intent
            ConflictError: Intent is bound to a different reference
            LedgerConsistencyError: Settlement rolled back; intent still pending
        """
        intent = self.intents.get(intent_id)
        if intent.is_terminal:
            logger.debug("Intent already terminal, nothing to do", extra={
                "intent_id": intent_id,
                "status": intent.status,
            })
            return self._result_from(intent)

        asset = intent.asset_enum
        client = self._client_for(asset)

        try:
            reference = client.normalize_reference(transaction_reference)
        except ValueError as e:
            raise DepositValidationError(str(e)) from None

        # Read before commit expires the instance
        user_id = intent.user_id
        expected_minor = intent.amount_minor
        destination = intent.destination_address

        try:
            self.intents.attach_reference(intent_id, reference)
            self.db.commit()
        except ConflictError as e:
            self.db.rollback()
            if e.conflicting_intent_id and e.conflicting_intent_id != intent_id:
                logger.warning("Duplicate transaction reference rejected", extra={
                    "intent_id": intent_id,
                    "owner_intent_id": e.conflicting_intent_id,
                    "reference": reference,
                })
                raise DuplicateTransactionError(reference, intent_id, e.conflicting_intent_id) from e
            current = self.intents.get(intent_id)
            if current.is_terminal:
                # Settled or expired by a concurrent caller
                return self._result_from(current)
            raise

        # No transaction or row lock is held from here until settlement
        try:
            confirmation = await client.confirm_transaction(reference)
        except RetryableChainError as e:
            logger.warning("Chain unavailable, intent stays pending", extra={
                "intent_id": intent_id,
                "network": asset.network.value,
                "error": str(e),
            })
            return self._pending(intent_id, reference, f"chain unavailable: {e}")

        if confirmation.status is ConfirmationStatus.NOT_FOUND:
            expired = self._expire_unseen(intent_id, reference)
            if expired is not None:
                return expired

        if confirmation.status in (ConfirmationStatus.NOT_FOUND, ConfirmationStatus.UNCONFIRMED):
            return self._pending(intent_id, reference, confirmation.reason or confirmation.status.value)

        try:
            if confirmation.status is ConfirmationStatus.FAILED:
                raise TerminalChainFailure(confirmation.reason or "transaction failed on chain")
            received_minor, credit_minor = self._check_payment(
                client, asset, expected_minor, destination, confirmation
            )
        except TerminalChainFailure as failure:
            return self._fail(intent_id, reference, failure)

        return self._settle(intent_id, reference, user_id, asset, received_minor, credit_minor)

    def _check_payment(
        self,
        client: ChainClient,
        asset: Asset,
        expected_minor: int,
        destination: str,
        confirmation: TransactionConfirmation,
    ) -> tuple[int, int]:
        """
        Match a finalized transaction against the intent

        A transaction may carry several transfers (fee legs, batch payouts);
        every transfer to the intent's destination counts toward it.

        Returns:
            (received, credit): Amounts in minor units

        Raises:
            TerminalChainFailure: On any mismatch
        """
        if confirmation.asset is not asset:
            moved = confirmation.asset.value if confirmation.asset else "no supported asset"
            raise TerminalChainFailure(
                confirmation.reason or f"transaction moves {moved}, expected {asset.value}",
                received_amount_minor=confirmation.amount_minor if confirmation.asset else None,
            )

        received = 0
        matched = False
        other_recipients = []
        for transfer in confirmation.payments:
            try:
                recipient = client.normalize_address(transfer.recipient or "")
            except ValueError:
                recipient = transfer.recipient
            if recipient == destination:
                matched = True
                received += transfer.amount_minor
            else:
                other_recipients.append(str(recipient))

        if not matched:
            paid_to = ", ".join(other_recipients) or "nobody"
            raise TerminalChainFailure(
                f"transaction pays {paid_to}, expected {destination}",
                received_amount_minor=confirmation.amount_minor,
            )

        if received < expected_minor:
            raise TerminalChainFailure(
                f"underpaid: received {format_amount(received, asset)}, "
                f"expected {format_amount(expected_minor, asset)} {asset.symbol}",
                received_amount_minor=received,
            )

        if received > expected_minor:
            if not self.settings.ACCEPT_OVERPAYMENT:
                raise TerminalChainFailure(
                    f"overpaid: received {format_amount(received, asset)}, "
                    f"expected {format_amount(expected_minor, asset)} {asset.symbol}",
                    received_amount_minor=received,
                )
            logger.info("Accepting overpayment", extra={
                "expected": format_amount(expected_minor, asset),
                "received": format_amount(received, asset),
                "asset": asset.value,
            })
            return received, received

        return received, expected_minor

    def _pending(self, intent_id: str, reference: str, reason: str) -> SettlementResult:
        logger.info("Intent awaiting confirmation", extra={
            "intent_id": intent_id,
            "reason": reason,
        })
        return SettlementResult(
            intent_id=intent_id,
            status=IntentStatus.PENDING,
            reason=reason,
            transaction_reference=reference,
        )

    def _expire_unseen(self, intent_id: str, reference: str) -> Optional[SettlementResult]:
        """
        Fail the intent if its reference has been unknown to the chain for
        longer than REFERENCE_TTL_MINUTES

        Returns:
            None while the reference is still within its TTL
        """
        ttl = self.settings.REFERENCE_TTL_MINUTES
        reason = f"expired: transaction not found within {ttl} minutes"
        try:
            transition = self.intents.fail_unseen_reference(
                intent_id,
                utcnow() - timedelta(minutes=ttl),
                reason,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not transition.changed:
            if transition.intent.is_terminal:
                return self._result_from(transition.intent)
            return None

        logger.warning("Deposit expired, transaction never appeared on chain", extra={
            "intent_id": intent_id,
            "reference": reference,
            "ttl_minutes": ttl,
        })
        result = SettlementResult(
            intent_id=intent_id,
            status=IntentStatus.FAILED,
            reason=reason,
            transaction_reference=reference,
        )
        self._notify(result)
        return result

    def _fail(self, intent_id: str, reference: str, failure: TerminalChainFailure) -> SettlementResult:
        try:
            transition = self.intents.mark_failed(
                intent_id,
                failure.reason,
                received_amount_minor=failure.received_amount_minor,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not transition.changed:
            return self._result_from(transition.intent)

        logger.warning("Deposit failed", extra={
            "intent_id": intent_id,
            "reference": reference,
            "reason": failure.reason,
        })
        result = SettlementResult(
            intent_id=intent_id,
            status=IntentStatus.FAILED,
            reason=failure.reason,
            transaction_reference=reference,
        )
        self._notify(result)
        return result

    def _settle(
        self,
        intent_id: str,
        reference: str,
        user_id: int,
        asset: Asset,
        received_minor: int,
        credit_minor: int,
    ) -> SettlementResult:
        """
        Mark settled and credit the wallet in one unit of work

        Either both are committed or neither is.
        """
        try:
            transition = self.intents.mark_settled(intent_id, received_minor)
            if not transition.changed:
                # Lost the race to a concurrent verification
                self.db.rollback()
                return self._result_from(self.intents.get(intent_id))

            self.ledger.credit(user_id, asset, credit_minor, intent_id)

            # CRITICAL: runtime check before commit, exactly one credit of the right size
            credited = self._credited_for(intent_id)
            if credited != credit_minor:
                logger.critical("LEDGER INVARIANT VIOLATED in settlement!", extra={
                    "intent_id": intent_id,
                    "expected_credit": credit_minor,
                    "actual_credit": credited,
                })
                raise ValueError(
                    f"Ledger invariant violated! Expected credit {credit_minor}, got {credited}"
                )

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.critical("Settlement rolled back, intent stays pending", exc_info=True, extra={
                "intent_id": intent_id,
                "reference": reference,
                "error": str(e),
            })
            raise LedgerConsistencyError(intent_id) from e

        logger.info("Deposit settled", extra={
            "intent_id": intent_id,
            "user_id": user_id,
            "reference": reference,
            "credited": balance_display(credit_minor, asset),
        })
        result = SettlementResult(
            intent_id=intent_id,
            status=IntentStatus.SETTLED,
            credited_minor=credit_minor,
            transaction_reference=reference,
        )
        self._notify(result)
        return result

    def _credited_for(self, intent_id: str) -> int:
        entries = self.db.query(WalletTransaction.amount_minor).filter(
            WalletTransaction.intent_id == intent_id,
            WalletTransaction.type == "deposit",
        ).all()
        return sum(amount for (amount,) in entries)

    def _result_from(self, intent: PaymentIntent) -> SettlementResult:
        status = intent.status_enum
        return SettlementResult(
            intent_id=intent.id,
            status=status,
            reason=intent.failure_reason,
            credited_minor=self._credited_for(intent.id) if status is IntentStatus.SETTLED else 0,
            transaction_reference=intent.transaction_reference,
        )

    def _notify(self, result: SettlementResult) -> None:
        for listener in self.listeners:
            try:
                listener(result)
            except Exception:
                logger.exception("Settlement listener failed", extra={
                    "intent_id": result.intent_id,
                    "status": result.status.value,
                })

    async def estimate_fee(self, asset: Union[Asset, str]) -> FeeEstimate:
        """Advisory network fee for depositing an asset"""
        try:
            asset = parse_asset(asset)
        except ValueError as e:
            raise DepositValidationError(str(e)) from None
        return await self._client_for(asset).estimate_fee()
