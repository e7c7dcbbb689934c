"""
MONGODB PERSISTENCE FOR CASH TRANSACTIONS AND THE HANDOVER VIEW

Services only see the methods below; every method takes an optional
`session` so it can join a unit-of-work transaction.

Collections:
- cash       transactions, `_id` is the integer transaction id
- counters   id sequences
- orders     field-service orders (read-only here)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure
from bson import Decimal128
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from .atomic_numbering import AtomicSequence
from .duplicate_protection import (
    ORDER_REFERENCE_FIELD,
    ORDER_REFERENCE_INDEX,
    order_reference_key
)
from .exceptions import ConflictError
from .query_builder import ScopedQuery
from cashdesk.models import CashTransaction, HandoverOrder

logger = logging.getLogger(__name__)

MONEY_FIELDS = ("amount", "total", "master_change")


def to_document(transaction: CashTransaction) -> Dict[str, Any]:
    """Serialize a transaction for storage (Decimal -> Decimal128, id -> _id)"""
    doc = transaction.model_dump(mode="python")
    doc["_id"] = doc.pop("id")
    doc["kind"] = transaction.kind.value
    doc["amount"] = Decimal128(transaction.amount)
    reference = order_reference_key(transaction.payment_purpose)
    if reference is not None:
        doc[ORDER_REFERENCE_FIELD] = reference
    return doc


def _decode_money(doc: Dict[str, Any]) -> Dict[str, Any]:
    for key in MONEY_FIELDS:
        value = doc.get(key)
        if isinstance(value, Decimal128):
            doc[key] = value.to_decimal()
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            doc[key] = Decimal(str(value))
    return doc


def from_document(doc: Optional[Dict[str, Any]]) -> Optional[CashTransaction]:
    if doc is None:
        return None
    doc = _decode_money(dict(doc))
    doc["id"] = doc.pop("_id")
    doc.pop(ORDER_REFERENCE_FIELD, None)
    return CashTransaction(**doc)


def encode_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Translate validated field changes into $set / $unset operators"""
    to_set: Dict[str, Any] = {}
    to_unset: Dict[str, Any] = {}

    for key, value in changes.items():
        if isinstance(value, Decimal):
            value = Decimal128(value)
        to_set[key] = value

    if "payment_purpose" in changes:
        reference = order_reference_key(changes["payment_purpose"])
        if reference is None:
            to_unset[ORDER_REFERENCE_FIELD] = ""
        else:
            to_set[ORDER_REFERENCE_FIELD] = reference

    update: Dict[str, Any] = {"$set": to_set}
    if to_unset:
        update["$unset"] = to_unset
    return update


class MongoCashRepository:
    """Repository for the `cash` collection"""

    COLLECTION = "cash"
    SEQUENCE_NAME = "cash_id"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]
        self.sequence = AtomicSequence(db, self.SEQUENCE_NAME)

    async def ensure_indexes(self):
        """
        Create indexes used by listing and by the duplicate guard.

        The partial unique index only covers rows that carry an order
        reference, so generic purposes may repeat freely.
        """
        try:
            await self.collection.create_index(
                [("created_at", DESCENDING), ("_id", DESCENDING)],
                name="cash_newest_first"
            )
            await self.collection.create_index(
                [("city", ASCENDING), ("kind", ASCENDING), ("created_at", DESCENDING)],
                name="cash_city_kind"
            )
            await self.collection.create_index(
                [("created_by_id", ASCENDING), ("created_at", DESCENDING)],
                name="cash_creator"
            )
            await self.collection.create_index(
                [(ORDER_REFERENCE_FIELD, ASCENDING)],
                unique=True,
                partialFilterExpression={ORDER_REFERENCE_FIELD: {"$type": "string"}},
                name=ORDER_REFERENCE_INDEX
            )
            logger.info("Created cash collection indexes")
        except OperationFailure as e:
            # Index may already exist with different options
            logger.warning(f"Index creation result: {str(e)}")

    async def next_id(self, session=None) -> int:
        return await self.sequence.get_next_sequence(session=session)

    async def find_by_id(self, transaction_id: int, session=None) -> Optional[CashTransaction]:
        doc = await self.collection.find_one({"_id": transaction_id}, session=session)
        return from_document(doc)

    async def find_by_order_reference(
        self,
        payment_purpose: str,
        exclude_id: Optional[int] = None,
        session=None
    ) -> Optional[CashTransaction]:
        query: Dict[str, Any] = {ORDER_REFERENCE_FIELD: payment_purpose}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        doc = await self.collection.find_one(query, session=session)
        return from_document(doc)

    async def insert(self, transaction: CashTransaction, session=None) -> CashTransaction:
        try:
            await self.collection.insert_one(to_document(transaction), session=session)
        except DuplicateKeyError as e:
            if ORDER_REFERENCE_INDEX in str(e):
                # Lost the race on the unique index; the winner's id is
                # resolved by the caller once this transaction is gone
                raise ConflictError(transaction.payment_purpose, None)
            raise
        return transaction

    async def update(
        self,
        transaction_id: int,
        changes: Dict[str, Any],
        session=None
    ) -> Optional[CashTransaction]:
        try:
            doc = await self.collection.find_one_and_update(
                {"_id": transaction_id},
                encode_changes(changes),
                return_document=ReturnDocument.AFTER,
                session=session
            )
        except DuplicateKeyError as e:
            if ORDER_REFERENCE_INDEX in str(e):
                raise ConflictError(changes.get("payment_purpose"), None)
            raise
        return from_document(doc)

    async def delete(self, transaction_id: int, session=None) -> bool:
        result = await self.collection.delete_one({"_id": transaction_id}, session=session)
        return result.deleted_count == 1

    async def find_page(self, query: ScopedQuery, session=None) -> List[CashTransaction]:
        cursor = (
            self.collection.find(query.predicate, session=session)
            .sort(query.sort)
            .skip(query.skip)
            .limit(query.limit)
        )
        docs = await cursor.to_list(length=query.limit)
        return [from_document(doc) for doc in docs]

    async def count(self, predicate: Dict[str, Any], session=None) -> int:
        return await self.collection.count_documents(predicate, session=session)


class MongoOrderRepository:
    """Read-only access to the `orders` collection for the handover view"""

    COLLECTION = "orders"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]

    async def ensure_indexes(self):
        try:
            await self.collection.create_index(
                [("master_id", ASCENDING), ("status_order", ASCENDING), ("closing_date", DESCENDING)],
                name="orders_master_handover"
            )
        except OperationFailure as e:
            logger.warning(f"Index creation result: {str(e)}")

    async def find_page(
        self,
        predicate: Dict[str, Any],
        skip: int,
        limit: int
    ) -> List[HandoverOrder]:
        cursor = (
            self.collection.find(predicate)
            .sort([("closing_date", DESCENDING), ("_id", DESCENDING)])
            .skip(skip)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        orders = []
        for doc in docs:
            doc = _decode_money(dict(doc))
            doc["id"] = doc.pop("_id")
            orders.append(HandoverOrder(**doc))
        return orders

    async def count(self, predicate: Dict[str, Any]) -> int:
        return await self.collection.count_documents(predicate)
