"""
Domain exception hierarchy.

Every service raises subclasses of CommerceError. The API layer maps them to
HTTP status codes in a single exception handler.
"""
from typing import Any, Dict, List, Optional


class CommerceError(Exception):
    """Base exception for all domain errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(CommerceError):
    """Raised when a requested entity does not exist."""

    status_code = 404


class DomainValidationError(CommerceError):
    """Raised when a request violates a business rule on its input."""

    status_code = 422


class ConflictError(CommerceError):
    """Raised when a request conflicts with the current state."""

    status_code = 409


class InsufficientStockError(ConflictError):
    """Raised when a reservation cannot be satisfied."""

    def __init__(self, shortages: List[Dict[str, Any]]):
        super().__init__(
            "Insufficient stock for one or more products",
            details={"shortages": shortages},
        )
        self.shortages = shortages


class InvalidTransitionError(ConflictError):
    """Raised when an order status transition is not allowed."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Cannot move order from {from_status} to {to_status}",
            details={"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class IdempotencyConflictError(ConflictError):
    """Raised when an idempotency key is reused with a different request."""

    status_code = 422


class RequestInProgressError(ConflictError):
    """Raised when an identical request (or a lock holder) is still running."""


class PaymentError(CommerceError):
    """Base exception for payment processing errors."""

    status_code = 502


class PaymentDeclinedError(PaymentError):
    """Raised when the gateway permanently declines a charge."""

    status_code = 402


class AuthenticationError(CommerceError):
    """Raised for missing or invalid credentials."""

    status_code = 401


class PermissionDeniedError(CommerceError):
    """Raised when the caller may not perform the operation."""

    status_code = 403


class TransientError(CommerceError):
    """Raised for failures that are safe to retry."""

    status_code = 503


class StepTimeoutError(TransientError):
    """Raised when a saga step exceeds its timeout."""


class CheckoutFailedError(CommerceError):
    """Raised when the checkout saga fails and has been compensated."""

    def __init__(
        self,
        message: str,
        order_id: Optional[str],
        failed_step: Optional[str],
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            details={"order_id": order_id, "failed_step": failed_step},
        )
        self.order_id = order_id
        self.failed_step = failed_step
        self.cause = cause
        if isinstance(cause, CommerceError):
            self.status_code = cause.status_code
            self.details.update(cause.details)
        else:
            self.status_code = 500
