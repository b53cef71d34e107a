"""
Standardized Exception Handling

Provides consistent error responses across the API with structured format:
{
    "detail": "Human-readable message",
    "error": {
        "code": "ERROR_CODE",
        "message": "Human-readable message",
        "details": {...}
    }
}

Routes translate settlement errors raised by the services with
api_exception_from().
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from luna_deposits.core.logging_config import get_logger
from luna_deposits.services.errors import (
    ConflictError,
    DepositValidationError,
    DuplicateTransactionError,
    IntentNotFoundError,
    LedgerConsistencyError,
    SettlementError,
    TerminalChainFailure,
)

logger = get_logger()


class APIException(HTTPException):
    """
    Base exception for API errors with structured response

    Usage:
        raise APIException(400, "INVALID_DEPOSIT", "Minimum USDT deposit is 1.000000",
                          {"asset": "usdt_trc20"})
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}

        error_detail = {
            "detail": message,
            "error": {
                "code": code,
                "message": message,
            }
        }

        if details:
            error_detail["error"]["details"] = details

        super().__init__(status_code=status_code, detail=error_detail)


class InvalidDepositException(APIException):
    """Deposit request rejected before an intent was created"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(400, "INVALID_DEPOSIT", message, details)


class IntentNotFoundException(APIException):
    def __init__(self, intent_id: str):
        super().__init__(
            404,
            "INTENT_NOT_FOUND",
            f"Payment intent {intent_id} does not exist",
            {"intent_id": intent_id}
        )


class DuplicateTransactionException(APIException):
    """Transaction already paid another intent"""
    def __init__(self, intent_id: str, reference: str):
        super().__init__(
            409,
            "DUPLICATE_TRANSACTION",
            "This transaction is already bound to another deposit",
            {"intent_id": intent_id, "transaction_reference": reference}
        )


class ReferenceConflictException(APIException):
    """Intent is bound to a different transaction"""
    def __init__(self, message: str, intent_id: Optional[str] = None):
        super().__init__(
            409,
            "REFERENCE_CONFLICT",
            message,
            {"intent_id": intent_id} if intent_id else None
        )


class SettlementUnavailableException(APIException):
    """Settlement rolled back; the intent is still pending and can be retried"""
    def __init__(self, intent_id: str):
        super().__init__(
            503,
            "SETTLEMENT_UNAVAILABLE",
            "Settlement could not be completed, please retry",
            {"intent_id": intent_id, "status": "pending"}
        )


def api_exception_from(error: SettlementError) -> APIException:
    """Map a settlement error to its HTTP representation"""
    if isinstance(error, DepositValidationError):
        return InvalidDepositException(str(error))
    if isinstance(error, IntentNotFoundError):
        return IntentNotFoundException(error.intent_id)
    if isinstance(error, DuplicateTransactionError):
        return DuplicateTransactionException(error.intent_id, error.reference)
    if isinstance(error, ConflictError):
        return ReferenceConflictException(str(error))
    if isinstance(error, LedgerConsistencyError):
        return SettlementUnavailableException(error.intent_id)
    if isinstance(error, TerminalChainFailure):
        return APIException(422, "CHAIN_FAILURE", error.reason)
    return APIException(500, "SETTLEMENT_ERROR", str(error))


# Exception handlers for logging

async def api_exception_handler(request: Request, exc: APIException):
    """
    Global exception handler for APIException

    Logs the error and returns structured JSON response
    """
    logger.warning(
        f"API Exception: {exc.code}",
        extra={
            "code": exc.code,
            "error_message": exc.message,
            "details": exc.details,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.detail
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handler for standard HTTPException to ensure consistent format
    """
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {
            "detail": str(exc.detail),
            "error": {
                "code": "HTTP_ERROR",
                "message": str(exc.detail)
            }
        }

    logger.warning(
        f"HTTP Exception: {exc.status_code}",
        extra={
            "status_code": exc.status_code,
            "detail": exc.detail,
            "path": request.url.path,
            "method": request.method
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=content
    )
