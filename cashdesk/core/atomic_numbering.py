"""
ATOMIC ID SEQUENCES

Store-assigned integer ids for cash transactions.

Uses findOneAndUpdate with $inc on a counter document, so two writers can
never receive the same number. Inside a transaction the counter update also
makes concurrent creates conflict on the same document; the loser is retried
by the unit of work and then observes the winner's committed row.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


class AtomicSequence:
    """
    Monotonic counter stored in the `counters` collection.
    An increment made inside an aborted transaction is rolled back with it.
    """

    COLLECTION = "counters"

    def __init__(self, db: AsyncIOMotorDatabase, name: str):
        self.db = db
        self.name = name

    async def get_next_sequence(self, session=None) -> int:
        """
        Get next atomic sequence number.
        Returns the NEW sequence number after increment.
        """
        now = datetime.now(timezone.utc)
        result = await self.db[self.COLLECTION].find_one_and_update(
            {"_id": self.name},
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": now},
                "$setOnInsert": {"created_at": now}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )

        sequence = result["current_sequence"]
        logger.debug(f"[SEQUENCE] {self.name} -> {sequence}")
        return sequence
