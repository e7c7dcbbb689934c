"""
DUPLICATE ORDER-PAYMENT PROTECTION

Prevents posting the same order-linked payment twice:
- Only purposes shaped like an order reference ("Order #<digits>") are guarded
- Generic / category purposes are never checked
- The lookup runs inside the caller's transaction session
- A unique partial index on `order_reference` backs the check up when two
  writers race past the lookup at the same time
"""

from typing import Optional
import re
import logging

from .exceptions import ConflictError

logger = logging.getLogger(__name__)

ORDER_REFERENCE_PATTERN = re.compile(r"Order #\d+")

# Derived field stored only on order-linked rows; carries the unique index
ORDER_REFERENCE_FIELD = "order_reference"
ORDER_REFERENCE_INDEX = "unique_order_reference"


def is_order_reference(payment_purpose: Optional[str]) -> bool:
    """True when the purpose links the posting to exactly one order"""
    if not payment_purpose:
        return False
    return ORDER_REFERENCE_PATTERN.fullmatch(payment_purpose) is not None


def order_reference_key(payment_purpose: Optional[str]) -> Optional[str]:
    """Value for the indexed `order_reference` field, or None for unguarded purposes"""
    return payment_purpose if is_order_reference(payment_purpose) else None


class DuplicatePaymentPurposeProtection:
    """
    Service for preventing duplicate order-linked postings.
    """

    def __init__(self, repository):
        self.repository = repository

    async def check_duplicate_purpose(
        self,
        payment_purpose: Optional[str],
        exclude_id: Optional[int] = None,
        session=None
    ) -> bool:
        """
        Check whether an order-linked purpose is already posted.

        Args:
            payment_purpose: Purpose of the posting being written
            exclude_id: Transaction id to ignore (the row being updated)
            session: Transaction handle; the lookup must see the same snapshot
                as the insert that follows

        Returns:
            True if NO duplicate found (safe to proceed)

        Raises:
            ConflictError carrying the existing transaction id
        """
        if not is_order_reference(payment_purpose):
            return True

        existing = await self.repository.find_by_order_reference(
            payment_purpose,
            exclude_id=exclude_id,
            session=session
        )

        if existing is not None:
            logger.warning(
                f"[DUPLICATE] Payment purpose '{payment_purpose}' already posted as transaction {existing.id}"
            )
            raise ConflictError(payment_purpose, existing.id)

        logger.debug(f"No duplicate posting found for purpose: {payment_purpose}")
        return True
