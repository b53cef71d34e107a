"""
Settlement Domain Errors

Raised by the store, ledger and engine; translated to HTTP responses by
the API layer (see luna_deposits.core.exceptions).

RetryableChainError lives with the chain clients (luna_deposits.chains.base)
and never leaves the engine: it is reported as a pending settlement.
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for deposit settlement errors"""
    pass


class DepositValidationError(SettlementError):
    """Request rejected before any intent is created (amount, asset, reference format)"""
    pass


class IntentNotFoundError(SettlementError):
    def __init__(self, intent_id: str):
        self.intent_id = intent_id
        super().__init__(f"Payment intent {intent_id} does not exist")


class ConflictError(SettlementError):
    """
    Transaction reference cannot be bound to the intent

    conflicting_intent_id is set when another intent already holds the
    reference; None when this intent is bound to a different reference.
    """

    def __init__(self, message: str, conflicting_intent_id: Optional[str] = None):
        self.conflicting_intent_id = conflicting_intent_id
        super().__init__(message)


class DuplicateTransactionError(SettlementError):
    """One on-chain payment submitted for a second intent"""

    def __init__(self, reference: str, intent_id: str, owner_intent_id: str):
        self.reference = reference
        self.intent_id = intent_id
        self.owner_intent_id = owner_intent_id
        super().__init__(f"Transaction {reference} is already bound to another deposit")


class TerminalChainFailure(SettlementError):
    """Reverted transaction or amount/recipient/asset mismatch; the intent fails"""

    def __init__(self, reason: str, received_amount_minor: Optional[int] = None):
        self.reason = reason
        self.received_amount_minor = received_amount_minor
        super().__init__(reason)


class LedgerConsistencyError(SettlementError):
    """
    Settle + credit unit of work could not commit

    Everything was rolled back and the intent is still pending. Repeated
    occurrences must be escalated.
    """

    def __init__(self, intent_id: str):
        self.intent_id = intent_id
        super().__init__(f"Settlement of intent {intent_id} could not be committed; rolled back")
