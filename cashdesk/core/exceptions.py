"""
CASH DESK ERROR TAXONOMY

Every failure a service can report maps to exactly one of these classes.
The HTTP layer translates them to status codes; services never raise
HTTPException directly.

- ValidationError     -> 400  malformed / out-of-bound input
- AuthorizationError  -> 403  role matrix or scope check failed
- NotFoundError       -> 404  id has no row (full-access callers only)
- ConflictError       -> 409  duplicate order-linked payment purpose
- InternalError       -> 500  store / infrastructure failure, opaque to caller
"""

from typing import Optional


class CashDeskError(Exception):
    """Base class for all cash desk domain errors"""
    status_code = 500
    message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class ValidationError(CashDeskError):
    """Raised when input fails bounds or shape checks"""
    status_code = 400
    message = "Validation failed"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class AuthorizationError(CashDeskError):
    """
    Raised when the access policy denies an operation.

    The message is intentionally generic: it never says whether the
    requested record exists.
    """
    status_code = 403
    message = "Access denied"


class NotFoundError(CashDeskError):
    """Raised when a record id has no corresponding row"""
    status_code = 404
    message = "Cash transaction not found"


class ConflictError(CashDeskError):
    """Raised when an order-linked payment purpose is already posted"""
    status_code = 409

    def __init__(self, payment_purpose: str, existing_id: Optional[int]):
        self.payment_purpose = payment_purpose
        self.existing_id = existing_id
        super().__init__(
            f"Payment purpose '{payment_purpose}' is already posted "
            f"(transaction {existing_id})"
        )


class InternalError(CashDeskError):
    """Opaque failure surfaced to the caller; details go to the server log only"""
    status_code = 500
    message = "Internal error"
