"""
Custom Exception Hierarchy

Structured exceptions shared by the ledgers, the settlement orchestrator and
the HTTP layer. Every exception states whether retrying the same call can
succeed, so callers can tell user-facing rejections from transient faults.
"""
from decimal import Decimal
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    STORE_UNAVAILABLE = "ERR_1007"

    # Budget ledger errors (2xxx)
    ACCOUNT_NOT_FOUND = "ERR_2001"
    ACCOUNT_INACTIVE = "ERR_2002"
    INSUFFICIENT_FUNDS = "ERR_2003"

    # Points wallet errors (3xxx)
    INSUFFICIENT_AVAILABLE_BALANCE = "ERR_3001"
    POINTS_TRANSACTION_NOT_FOUND = "ERR_3002"

    # Settlement errors (4xxx)
    DUPLICATE_SETTLEMENT = "ERR_4001"
    NO_ACTIVE_CAMPAIGN = "ERR_4002"

    # Dispatcher errors (5xxx)
    DUE_ITEM_NOT_FOUND = "ERR_5001"
    NOTIFICATION_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"


class AppException(Exception):
    """Base exception for all application errors"""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}


class ValidationException(AppException):
    """Raised when input validation fails, before any mutation"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class ConflictException(AppException):
    """Raised when the request is well formed but rejected by ledger state"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 409,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )


# ==================== Budget ledger ====================

class AccountNotFoundError(NotFoundException):
    """Raised when a merchant has no budget account"""

    def __init__(self, merchant_ref: str):
        super().__init__(
            resource="Budget account",
            identifier=merchant_ref,
            error_code=ErrorCode.ACCOUNT_NOT_FOUND
        )


class AccountInactiveError(ConflictException):
    """Raised when debiting a suspended budget account"""

    def __init__(self, merchant_ref: str, status: str):
        super().__init__(
            message=f"Budget account {merchant_ref} is not active",
            error_code=ErrorCode.ACCOUNT_INACTIVE,
            details={"merchant_ref": merchant_ref, "status": status}
        )


class InsufficientFundsError(ConflictException):
    """Raised when a debit would take a budget balance below zero"""

    def __init__(self, merchant_ref: str, current_balance: Decimal, requested_amount: Decimal):
        super().__init__(
            message=f"Insufficient funds for merchant {merchant_ref}",
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            details={
                "merchant_ref": merchant_ref,
                "current_balance": str(current_balance),
                "requested_amount": str(requested_amount),
            }
        )


# ==================== Points wallet ====================

class InsufficientAvailableBalanceError(ConflictException):
    """Raised when a redemption exceeds the available bucket"""

    def __init__(self, user_ref: str, available_balance: Decimal, requested_amount: Decimal):
        super().__init__(
            message=f"Insufficient available balance for user {user_ref}",
            error_code=ErrorCode.INSUFFICIENT_AVAILABLE_BALANCE,
            details={
                "user_ref": user_ref,
                "available_balance": str(available_balance),
                "requested_amount": str(requested_amount),
            }
        )


class PointsTransactionNotFoundError(NotFoundException):
    """Raised when a points transaction is missing or not in a deletable state"""

    def __init__(self, transaction_id: int):
        super().__init__(
            resource="Pending points transaction",
            identifier=transaction_id,
            error_code=ErrorCode.POINTS_TRANSACTION_NOT_FOUND
        )


# ==================== Settlement ====================

class DuplicateSettlementError(ConflictException):
    """Raised when an external event was already settled"""

    def __init__(self, external_ref: str, state: str = "settled"):
        super().__init__(
            message=f"Settlement already exists for external reference {external_ref}",
            error_code=ErrorCode.DUPLICATE_SETTLEMENT,
            details={"external_ref": external_ref, "state": state}
        )


class NoActiveCampaignError(ConflictException):
    """Raised when the merchant has no campaign running right now"""

    def __init__(self, merchant_ref: str, campaign_ref: str | None = None):
        details: dict[str, Any] = {"merchant_ref": merchant_ref}
        if campaign_ref:
            details["campaign_ref"] = campaign_ref
        super().__init__(
            message=f"No active campaign for merchant {merchant_ref}",
            error_code=ErrorCode.NO_ACTIVE_CAMPAIGN,
            status_code=422,
            details=details
        )


# ==================== Transient ====================

class LedgerUnavailableError(AppException):
    """Raised on lock-wait timeouts or an unreachable store; safe to retry"""

    retryable = True

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"Ledger store unavailable during {operation}",
            error_code=ErrorCode.STORE_UNAVAILABLE,
            status_code=503,
            details={"operation": operation, "reason": reason}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    retryable = True

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class NotificationError(ExternalServiceException):
    """Raised when the notification gateway rejects or fails a delivery"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="notification",
            message=f"Notification gateway error: {message}",
            error_code=ErrorCode.NOTIFICATION_ERROR,
            details=details
        )
        self.gateway_status = status_code
        # 4xx means the request itself is bad; repeating it cannot help
        self.retryable = status_code is None or status_code >= 500 or status_code == 429

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "NotificationError":
        """Build a NotificationError from an HTTP response"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            status_code=status_code,
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


# ==================== Dispatcher ====================

class DueItemNotFoundError(NotFoundException):
    """Raised when an operator action targets a missing due item"""

    def __init__(self, item_id: int):
        super().__init__(
            resource="Due item",
            identifier=item_id,
            error_code=ErrorCode.DUE_ITEM_NOT_FOUND
        )


class HandlerError(Exception):
    """Outcome raised by a due item handler"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RetryableError(HandlerError):
    """The attempt failed but a later poll may succeed"""


class FatalError(HandlerError):
    """The item can never succeed; fail it without spending the retry budget"""
