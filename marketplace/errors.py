"""
Error taxonomy for the marketplace services.

Services raise these; the API layer renders them into the standard error
envelope (see marketplace.schemas.ErrorResponse). Nothing here is retried.
"""

from typing import Any, Dict, List, Optional

from marketplace.schemas import ResponseStatus


class MarketplaceError(Exception):
    """Base class. Carries the HTTP status and envelope status for the API layer."""

    http_status = 500
    status = ResponseStatus.ERROR
    code = "ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AuthenticationRequired(MarketplaceError):
    """No signed-in user for an operation that needs one."""
    http_status = 401
    status = ResponseStatus.UNAUTHORIZED
    code = "AUTHENTICATION_REQUIRED"


class AuthorizationError(MarketplaceError):
    """Caller does not own (or may not touch) the row."""
    http_status = 403
    status = ResponseStatus.FORBIDDEN
    code = "FORBIDDEN"


class NotFoundError(MarketplaceError):
    http_status = 404
    status = ResponseStatus.NOT_FOUND
    code = "NOT_FOUND"


class ValidationError(MarketplaceError):
    """Malformed or missing input caught before it reaches the store."""
    http_status = 400
    status = ResponseStatus.INVALID
    code = "VALIDATION_FAILED"


class ConstraintViolation(ValidationError):
    """The database rejected the write (CHECK / UNIQUE / NOT NULL)."""
    code = "CONSTRAINT_VIOLATION"


class OutOfStockError(MarketplaceError):
    http_status = 409
    status = ResponseStatus.OUT_OF_STOCK
    code = "OUT_OF_STOCK"

    def __init__(self, product_ids: List[str]):
        super().__init__(
            "Some items are out of stock",
            details={"sold_out": product_ids},
        )
        self.product_ids = product_ids


class InvalidTransition(MarketplaceError):
    """Order status may only move forward."""
    http_status = 409
    status = ResponseStatus.INVALID
    code = "INVALID_STATUS_TRANSITION"


class PaymentError(MarketplaceError):
    """The payment processor could not be reached or refused the request."""
    http_status = 502
    status = ResponseStatus.ERROR
    code = "PAYMENT_FAILED"


class SignatureVerificationError(MarketplaceError):
    http_status = 400
    status = ResponseStatus.INVALID
    code = "INVALID_SIGNATURE"
