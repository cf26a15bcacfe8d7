"""Error taxonomy for the checkout pipeline.

Domain code raises ``CheckoutError`` subclasses carrying a short
upper-snake ``code``; the HTTP layer renders them as the
``{code, message, requestId}`` envelope. The subclass only fixes the
default status code for its category.
"""

from typing import Any, Optional


class CheckoutError(Exception):
    """Base class for errors surfaced to API callers.

    Attributes:
        code: Stable machine-readable code (e.g. ``OUT_OF_STOCK``).
        message: Human-readable description.
        status_code: HTTP status the error maps to.
        details: Optional structured payload (item lists, warnings).
    """

    status_code = 400

    def __init__(self, code: str, message: str = "", *, status_code: Optional[int] = None,
                 details: Any = None):
        super().__init__(code)
        self.code = code
        self.message = message or code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(CheckoutError):
    """Malformed or unusable input; rejected before touching the store."""
    status_code = 400


class NotFoundError(CheckoutError):
    status_code = 404


class ForbiddenError(CheckoutError):
    status_code = 403


class ConflictError(CheckoutError):
    """Capacity exhausted or state already moved on; the caller must re-quote."""
    status_code = 409


class ExternalServiceError(CheckoutError):
    """Payment provider unreachable or rejected the call; retryable via idempotency key."""
    status_code = 502


class InvariantViolation(CheckoutError):
    """Should never happen in correct code. Logged at ERROR by the API layer."""
    status_code = 500
