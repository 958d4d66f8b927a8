"""
ACP error taxonomy.

Every failure a handler can surface is one of the `ACPSellerError`
subclasses below. The router serializes them into the ACP error envelope;
anything else is normalized to `ServerError` before it reaches the caller.
"""

from __future__ import annotations

from typing import Any, Optional

from acp_merchant.models import ACPError, ACPErrorResponse


class ACPSellerError(Exception):
    """Base class for errors that map onto a structured ACP error response."""

    status_code: int = 500
    error_type: str = "api_error"
    code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        param: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        self.param = param
        super().__init__(message)

    @property
    def body(self) -> ACPErrorResponse:
        return ACPErrorResponse(
            error=ACPError(
                type=self.error_type,
                code=self.code,
                message=self.message,
                param=self.param,
            )
        )


class ValidationError(ACPSellerError):
    status_code = 400
    error_type = "invalid_request"
    code = "validation_error"


class AuthenticationError(ACPSellerError):
    status_code = 401
    error_type = "invalid_request"
    code = "authentication_error"


class NotFoundError(ACPSellerError):
    status_code = 404
    error_type = "not_found"
    code = "session_not_found"


class InvalidStateError(ACPSellerError):
    status_code = 400
    error_type = "invalid_request"
    code = "invalid_state"


class PaymentFailedError(ACPSellerError):
    status_code = 400
    error_type = "invalid_request"
    code = "payment_failed"


class DuplicateRequestError(ACPSellerError):
    """Raised when an idempotency key is already reserved or completed."""

    status_code = 409
    error_type = "invalid_request"
    code = "duplicate_request"

    def __init__(self, message: str, *, cached_response: Optional[dict[str, Any]] = None):
        super().__init__(message, param="$.headers.Idempotency-Key")
        self.cached_response = cached_response


class ConflictError(ACPSellerError):
    status_code = 409
    error_type = "conflict"
    code = "concurrent_modification"


class ServerError(ACPSellerError):
    status_code = 500
    error_type = "api_error"
    code = "server_error"


# ---------------------------------------------------------------------------
# Collaborator failures (never surfaced directly to API callers)
# ---------------------------------------------------------------------------

class PaymentDeclinedError(Exception):
    """Raised by a PaymentProcessor when a charge is refused."""


class OrderCreationError(Exception):
    """Raised by an OrderFulfillment when an order cannot be persisted."""
