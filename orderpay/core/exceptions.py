"""
Custom Exception Hierarchy

Every error a caller can see carries a stable ``ErrorCode`` that is
independent of the HTTP status it is rendered with.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    CONFLICT = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    ORDER_VERSION_CONFLICT = "ERR_2002"
    ORDER_ALREADY_PAID = "ERR_2003"
    DUPLICATE_CLIENT_TOKEN = "ERR_2004"

    # Payment errors (3xxx)
    PAYMENT_NOT_FOUND = "ERR_3001"
    PAYMENT_NOT_CANCELLABLE = "ERR_3002"
    DUPLICATE_PENDING_PAYMENT = "ERR_3003"

    # Webhook errors (4xxx)
    WEBHOOK_SIGNATURE_INVALID = "ERR_4001"

    # Storage errors (5xxx)
    TRANSIENT_STORAGE = "ERR_5001"


class AppException(Exception):
    """Base exception for all application errors"""

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

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails, before storage is touched"""

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
    """Raised when a resource is absent or scoped away from the caller"""

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


class OrderNotFoundError(NotFoundException):
    def __init__(self, order_id: str):
        super().__init__("Order", order_id, error_code=ErrorCode.ORDER_NOT_FOUND)


class PaymentNotFoundError(NotFoundException):
    def __init__(self, payment_id: str):
        super().__init__("Payment", payment_id, error_code=ErrorCode.PAYMENT_NOT_FOUND)


class ConflictException(AppException):
    """Raised when the request is valid but loses against current state.

    Clients are expected to re-fetch and resubmit.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFLICT,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class OrderVersionConflictError(ConflictException):
    """Raised when an order was modified since the caller read it"""

    def __init__(
        self,
        order_id: str,
        expected_version: int | None,
        current_version: int | None = None
    ):
        super().__init__(
            message="Order was modified by another process. Please refresh and try again.",
            error_code=ErrorCode.ORDER_VERSION_CONFLICT,
            details={
                "order_id": order_id,
                "expected_version": expected_version,
                "current_version": current_version,
            }
        )


class OrderAlreadyPaidError(ConflictException):
    def __init__(self, order_id: str):
        super().__init__(
            message=f"Order {order_id} is already paid",
            error_code=ErrorCode.ORDER_ALREADY_PAID,
            details={"order_id": order_id}
        )


class PaymentNotCancellableError(ConflictException):
    """Raised when cancelling a payment that already left PENDING"""

    def __init__(self, payment_id: str, current_status: str | None = None):
        super().__init__(
            message=f"Payment {payment_id} cannot be cancelled",
            error_code=ErrorCode.PAYMENT_NOT_CANCELLABLE,
            details={"payment_id": payment_id, "current_status": current_status}
        )


class DuplicateClientTokenError(AppException):
    """
    Insert lost the race on the unique client_token.

    Internal only: OrderService resolves it by re-reading the winning row,
    it never reaches a caller.
    """

    def __init__(self, client_token: str):
        super().__init__(
            message="Order with this client token already exists",
            error_code=ErrorCode.DUPLICATE_CLIENT_TOKEN,
            status_code=409,
            details={"client_token": client_token}
        )
        self.client_token = client_token


class DuplicatePendingPaymentError(AppException):
    """
    Insert lost the race on the one-PENDING-payment-per-order index.

    Internal only: PaymentService hands back the payment that won.
    """

    def __init__(self, order_id: str):
        super().__init__(
            message="Order already has a pending payment",
            error_code=ErrorCode.DUPLICATE_PENDING_PAYMENT,
            status_code=409,
            details={"order_id": order_id}
        )
        self.order_id = order_id


class UnauthorizedException(AppException):
    def __init__(
        self,
        message: str = "Authentication required",
        error_code: ErrorCode = ErrorCode.UNAUTHORIZED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=401,
            details=details
        )


class ForbiddenException(AppException):
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403
        )


class WebhookSignatureError(UnauthorizedException):
    """Raised when an inbound webhook fails one of the verification gates"""

    def __init__(self, reason: str):
        super().__init__(
            message="Webhook signature verification failed",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
            details={"reason": reason}
        )
        self.reason = reason


class TransientStorageError(AppException):
    """Raised when the store is temporarily unavailable; safe to retry"""

    def __init__(self, operation: str, message: str):
        super().__init__(
            message=f"Storage unavailable during {operation}",
            error_code=ErrorCode.TRANSIENT_STORAGE,
            status_code=503,
            details={"operation": operation}
        )
        # Driver text stays on the exception for logs, never in to_dict()
        self.driver_message = message
