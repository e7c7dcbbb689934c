"""
DECIMAL PRECISION & INPUT BOUNDS FOR CASH TRANSACTIONS

This module provides:
1. Decimal conversion without float drift
2. Amount bounds lock: 0.01 <= amount <= 9,999,999.99, at most 2 decimals
3. Length / shape checks for the free-text fields of a transaction

All checks raise ValidationError and run before any store interaction.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import urlparse
import logging

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
MIN_AMOUNT = Decimal('0.01')
MAX_AMOUNT = Decimal('9999999.99')

# Text limits
MAX_CITY_LENGTH = 100
MAX_PAYMENT_PURPOSE_LENGTH = 200
MAX_RECEIPT_URL_LENGTH = 500
RECEIPT_EXTENSIONS = ('.pdf', '.jpg', '.jpeg', '.png')


def to_decimal(value: Any, field_name: str = 'amount') -> Decimal:
    """
    Convert a numeric value to Decimal.
    Floats go through str() so 0.1 stays 0.1 instead of its binary expansion.
    """
    if isinstance(value, bool):
        raise ValidationError(f"'{field_name}' must be a number", field=field_name)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"'{field_name}' must be a number", field=field_name)
    else:
        raise ValidationError(f"'{field_name}' must be a number", field=field_name)

    if not result.is_finite():
        raise ValidationError(f"'{field_name}' must be a finite number", field=field_name)
    return result


def decimal_places(value: Decimal) -> int:
    """Number of significant fractional digits (trailing zeros ignored)"""
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent)


def validate_amount(value: Any, field_name: str = 'amount') -> Decimal:
    """
    Validate a transaction amount and return it quantized to 2 places.

    Rejects (never rounds) values with more than 2 fractional digits.
    """
    if value is None:
        raise ValidationError(f"'{field_name}' is required", field=field_name)

    amount = to_decimal(value, field_name)

    if decimal_places(amount) > DECIMAL_PLACES:
        raise ValidationError(
            f"'{field_name}' must have at most {DECIMAL_PLACES} decimal places",
            field=field_name
        )
    if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
        raise ValidationError(
            f"'{field_name}' must be between {MIN_AMOUNT} and {MAX_AMOUNT}",
            field=field_name
        )
    return amount.quantize(QUANTIZE_PATTERN)


def validate_city(value: Optional[str], field_name: str = 'city') -> str:
    if value is None or not value.strip():
        raise ValidationError(f"'{field_name}' is required", field=field_name)
    if len(value) > MAX_CITY_LENGTH:
        raise ValidationError(
            f"'{field_name}' cannot be longer than {MAX_CITY_LENGTH} characters",
            field=field_name
        )
    return value


def validate_payment_purpose(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if len(value) > MAX_PAYMENT_PURPOSE_LENGTH:
        raise ValidationError(
            f"'payment_purpose' cannot be longer than {MAX_PAYMENT_PURPOSE_LENGTH} characters",
            field='payment_purpose'
        )
    return value


def validate_receipt_url(value: Optional[str]) -> Optional[str]:
    """
    Receipt links must be HTTPS and end in a PDF or image extension.
    """
    if value is None:
        return None
    if len(value) > MAX_RECEIPT_URL_LENGTH:
        raise ValidationError(
            f"'receipt_document_url' cannot be longer than {MAX_RECEIPT_URL_LENGTH} characters",
            field='receipt_document_url'
        )

    parsed = urlparse(value)
    if parsed.scheme != 'https' or not parsed.netloc:
        raise ValidationError(
            "'receipt_document_url' must be an HTTPS URL",
            field='receipt_document_url'
        )
    if not value.lower().endswith(RECEIPT_EXTENSIONS):
        raise ValidationError(
            "'receipt_document_url' must point to a .pdf, .jpg, .jpeg or .png file",
            field='receipt_document_url'
        )
    return value
