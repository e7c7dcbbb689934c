"""
Cash desk core: validation, scoping, transactions and persistence
"""
from .exceptions import (
    CashDeskError,
    ValidationError,
    AuthorizationError,
    NotFoundError,
    ConflictError,
    InternalError
)

from .financial_precision import (
    to_decimal,
    validate_amount,
    validate_city,
    validate_payment_purpose,
    validate_receipt_url,
    MIN_AMOUNT,
    MAX_AMOUNT
)

from .duplicate_protection import (
    DuplicatePaymentPurposeProtection,
    is_order_reference,
    order_reference_key
)

__all__ = [
    # Errors
    'CashDeskError',
    'ValidationError',
    'AuthorizationError',
    'NotFoundError',
    'ConflictError',
    'InternalError',
    # Precision & bounds
    'to_decimal',
    'validate_amount',
    'validate_city',
    'validate_payment_purpose',
    'validate_receipt_url',
    'MIN_AMOUNT',
    'MAX_AMOUNT',
    # Duplicate protection
    'DuplicatePaymentPurposeProtection',
    'is_order_reference',
    'order_reference_key',
]
