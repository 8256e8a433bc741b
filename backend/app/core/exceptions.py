"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.

Error families:
- Validation (ERR_VALIDATION_*): malformed input, rejected before any work.
- Business rule (ERR_CREDIT_*, ERR_WEEK_*, ERR_TXN_*): expected rejections.
- Coordination (ERR_COORD_*): retryable, the unit of work was rolled back.
- Fatal (ERR_LEDGER_INVARIANT): the ledger and its projections disagree.
"""

import logging
from decimal import Decimal
from typing import Any, Dict

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("credit_ledger.errors")


class AppException(Exception):
    """Base application exception."""

    retryable = False

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


# Validation

class InvalidRequestError(AppException):
    """Raised when request input fails domain validation."""

    def __init__(self, message: str, error_code: str = "ERR_VALIDATION_001", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class InvalidRateInputError(InvalidRequestError):
    """Unknown season, or a multiplier that is not a configured tier value."""

    def __init__(self, message: str, field: str = None, value: Any = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_RATE",
            details={"field": field, "value": None if value is None else str(value)}
        )


class InvalidAmountError(InvalidRequestError):
    def __init__(self, amount: Any, reason: str = "Amount must be a positive value with at most 2 decimals"):
        super().__init__(
            message=reason,
            error_code="ERR_VALIDATION_AMOUNT",
            details={"amount": str(amount)}
        )


class InvalidReferenceError(InvalidRequestError):
    def __init__(self, message: str, reference_type: Any = None, reference_id: Any = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_REFERENCE",
            details={
                "reference_type": None if reference_type is None else str(reference_type),
                "reference_id": reference_id,
            }
        )


# Business rules

class InsufficientCreditsError(AppException):
    """Raised when the available balance does not cover a debit."""

    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            message=f"Insufficient credits: {self.shortfall} short",
            error_code="ERR_CREDIT_INSUFFICIENT",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={
                "required": str(required),
                "available": str(available),
                "shortfall": str(self.shortfall),
            }
        )


class WeekNotFoundError(AppException):
    def __init__(self, week_id: int):
        super().__init__(
            message=f"Week with ID {week_id} not found",
            error_code="ERR_WEEK_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"week_id": week_id}
        )


class WeekNotOwnedError(AppException):
    def __init__(self, week_id: int, user_id: int):
        super().__init__(
            message=f"Week {week_id} is not owned by user {user_id}",
            error_code="ERR_WEEK_NOT_OWNED",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"week_id": week_id, "user_id": user_id}
        )


class WeekAlreadyConsumedError(AppException):
    def __init__(self, week_id: int):
        super().__init__(
            message=f"Week {week_id} has already been converted to credits",
            error_code="ERR_WEEK_CONSUMED",
            status_code=status.HTTP_409_CONFLICT,
            details={"week_id": week_id}
        )


class TransactionNotFoundError(AppException):
    def __init__(self, transaction_id: int):
        super().__init__(
            message=f"Transaction with ID {transaction_id} not found",
            error_code="ERR_TXN_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"transaction_id": transaction_id}
        )


class AlreadyRefundedError(AppException):
    def __init__(self, transaction_id: int):
        super().__init__(
            message=f"Transaction {transaction_id} has already been refunded",
            error_code="ERR_TXN_ALREADY_REFUNDED",
            status_code=status.HTTP_409_CONFLICT,
            details={"transaction_id": transaction_id}
        )


class NotRefundableError(AppException):
    def __init__(self, transaction_id: int, reason: str):
        super().__init__(
            message=f"Transaction {transaction_id} cannot be refunded: {reason}",
            error_code="ERR_TXN_NOT_REFUNDABLE",
            status_code=status.HTTP_409_CONFLICT,
            details={"transaction_id": transaction_id, "reason": reason}
        )


class InvalidStatusTransitionError(AppException):
    def __init__(self, transaction_id: int, current: str, requested: str):
        super().__init__(
            message=f"Transaction {transaction_id} cannot move from {current} to {requested}",
            error_code="ERR_TXN_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"transaction_id": transaction_id, "current": current, "requested": requested}
        )


class IdempotencyConflictError(AppException):
    """The idempotency key was already used for a different operation."""

    def __init__(self, idempotency_key: str, existing_transaction_id: int):
        super().__init__(
            message="Idempotency key was already used for a different request",
            error_code="ERR_TXN_IDEMPOTENCY",
            status_code=status.HTTP_409_CONFLICT,
            details={"idempotency_key": idempotency_key, "transaction_id": existing_transaction_id}
        )


# Coordination

class CoordinationTimeoutError(AppException):
    """A collaborator call inside an atomic unit did not finish in time."""

    retryable = True

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            message=f"Timed out waiting for {operation}; no changes were applied",
            error_code="ERR_COORD_TIMEOUT",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"operation": operation, "timeout_seconds": timeout, "retryable": True}
        )


class CollaboratorUnavailableError(AppException):
    retryable = True

    def __init__(self, operation: str):
        super().__init__(
            message=f"{operation} is temporarily unavailable; no changes were applied",
            error_code="ERR_COORD_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"operation": operation, "retryable": True}
        )


# Fatal

class LedgerInvariantError(AppException):
    """The ledger and its derived wallet disagree. Never expected."""

    def __init__(self, user_id: int, message: str, details: Dict[str, Any] = None):
        payload = {"user_id": user_id}
        payload.update(details or {})
        super().__init__(
            message=message,
            error_code="ERR_LEDGER_INVARIANT",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=payload
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    if isinstance(exc, LedgerInvariantError):
        logger.critical(exc.message, extra={"error_code": exc.error_code, "details": exc.details})
    elif exc.status_code >= 500:
        logger.warning(exc.message, extra={"error_code": exc.error_code, "details": exc.details})
    else:
        logger.info(exc.message, extra={"error_code": exc.error_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
