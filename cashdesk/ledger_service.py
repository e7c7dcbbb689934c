"""
LEDGER SERVICE: CASH TRANSACTIONS

Orchestrates every cash transaction operation:
1. Input validation (bounds, shapes) before any store interaction
2. Access policy pre-check (role matrix, city / ownership scope)
3. Transactional, duplicate-guarded writes through the unit of work
4. One audit event per successful mutation, emitted after commit

Store failures are logged with full detail and surfaced as InternalError.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from pymongo.errors import PyMongoError

from cashdesk.audit_service import AuditService
from cashdesk.core.duplicate_protection import DuplicatePaymentPurposeProtection, is_order_reference
from cashdesk.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError
)
from cashdesk.core.financial_precision import (
    validate_amount,
    validate_city,
    validate_payment_purpose,
    validate_receipt_url
)
from cashdesk.core.query_builder import ScopedQueryBuilder
from cashdesk.core.unit_of_work import AbstractUnitOfWork, TransactionHandle
from cashdesk.models import (
    CallerIdentity,
    CashListQuery,
    CashTransaction,
    CashTransactionCreate,
    CashTransactionUpdate,
    Page,
    RequestOrigin
)
from cashdesk.permissions import AccessPolicy, Action, REASON_SCOPE, has_full_access

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("kind", "amount", "city")


class LedgerService:
    """Create / read / update / delete / list for cash transactions"""

    def __init__(
        self,
        repository,
        unit_of_work: AbstractUnitOfWork,
        audit_service: AuditService,
        policy: Optional[AccessPolicy] = None,
        query_builder: Optional[ScopedQueryBuilder] = None
    ):
        self.repository = repository
        self.unit_of_work = unit_of_work
        self.audit_service = audit_service
        self.policy = policy or AccessPolicy()
        self.query_builder = query_builder or ScopedQueryBuilder()
        self.duplicate_protection = DuplicatePaymentPurposeProtection(repository)

    # =========================================================================
    # READ
    # =========================================================================

    async def list_transactions(
        self,
        filters: CashListQuery,
        caller: CallerIdentity
    ) -> Page[CashTransaction]:
        self.policy.enforce(caller, Action.LIST)
        query = self.query_builder.build(filters, caller)

        try:
            items = await self.repository.find_page(query)
            total = await self.repository.count(query.predicate)
        except PyMongoError as e:
            raise self._internal("list", e)

        return Page[CashTransaction](items=items, total=total, page=query.page, limit=query.limit)

    async def get_transaction(self, transaction_id: int, caller: CallerIdentity) -> CashTransaction:
        self.policy.enforce(caller, Action.GET)
        transaction = await self._load(transaction_id, caller)
        self.policy.enforce(caller, Action.GET, resource=transaction)
        return transaction

    # =========================================================================
    # CREATE (DUPLICATE-GUARDED)
    # =========================================================================

    async def create_transaction(
        self,
        data: CashTransactionCreate,
        caller: CallerIdentity,
        origin: Optional[RequestOrigin] = None
    ) -> CashTransaction:
        """
        Create a cash transaction.

        TRANSACTION: the order-reference lookup and the insert share one
        transaction; a concurrent writer that loses on the unique index is
        reported as ConflictError carrying the winner's id.
        """
        # Cheap checks first, no transaction slot consumed on failure
        amount = validate_amount(data.amount)
        city = validate_city(data.city)
        receipt_url = validate_receipt_url(data.receipt_document_url)
        payment_purpose = validate_payment_purpose(data.payment_purpose)
        self.policy.enforce(caller, Action.CREATE, target_city=city)

        async def work(tx: TransactionHandle) -> CashTransaction:
            await self.duplicate_protection.check_duplicate_purpose(
                payment_purpose,
                session=tx.session
            )
            transaction = CashTransaction(
                id=await self.repository.next_id(session=tx.session),
                kind=data.kind,
                amount=amount,
                city=city,
                note=data.note,
                receipt_document_url=receipt_url,
                payment_purpose=payment_purpose,
                created_by_display_name=caller.display_name or "Unknown",
                created_by_id=caller.user_id,
                created_at=datetime.now(timezone.utc)
            )
            await self.repository.insert(transaction, session=tx.session)
            tx.on_commit(lambda: self.audit_service.log_cash_create(transaction, caller, origin))
            return transaction

        created = await self._run_guarded("create", work, payment_purpose)
        logger.info(
            f"[LEDGER] Created {created.kind.value} {created.id}: {created.amount} in {created.city} "
            f"by user:{caller.user_id}"
        )
        return created

    # =========================================================================
    # UPDATE (PARTIAL)
    # =========================================================================

    async def update_transaction(
        self,
        transaction_id: int,
        data: CashTransactionUpdate,
        caller: CallerIdentity,
        origin: Optional[RequestOrigin] = None
    ) -> CashTransaction:
        """
        Apply only the fields present in `data`.

        Scope is checked against the current city and, when the city changes,
        against the target city as well, first on the loaded row and again on
        the row read inside the transaction.
        """
        changes = self._validate_changes(data.provided_fields())
        self.policy.enforce(caller, Action.UPDATE)

        current = await self._load(transaction_id, caller)
        self.policy.enforce(
            caller,
            Action.UPDATE,
            resource=current,
            target_city=changes.get("city")
        )

        async def work(tx: TransactionHandle) -> CashTransaction:
            # Scope is re-checked against the row as this transaction sees it
            fresh = await self._reload(transaction_id, caller, tx)
            self.policy.enforce(caller, Action.UPDATE, resource=fresh, target_city=changes.get("city"))
            if "payment_purpose" in changes:
                await self.duplicate_protection.check_duplicate_purpose(
                    changes["payment_purpose"],
                    exclude_id=transaction_id,
                    session=tx.session
                )
            stored = dict(changes)
            if any(getattr(fresh, key) != value for key, value in changes.items()):
                stored["updated_at"] = datetime.now(timezone.utc)
            if "kind" in stored:
                stored["kind"] = stored["kind"].value
            updated = await self.repository.update(transaction_id, stored, session=tx.session)
            if updated is None:
                # Deleted between the scope check and the write
                raise self._missing(transaction_id, caller)
            tx.on_commit(lambda: self.audit_service.log_cash_update(transaction_id, caller, changes, origin))
            return updated

        updated = await self._run_guarded("update", work, changes.get("payment_purpose"))
        logger.info(f"[LEDGER] Updated {transaction_id} fields={sorted(changes)} by user:{caller.user_id}")
        return updated

    # =========================================================================
    # DELETE (HARD)
    # =========================================================================

    async def delete_transaction(
        self,
        transaction_id: int,
        caller: CallerIdentity,
        origin: Optional[RequestOrigin] = None
    ) -> None:
        self.policy.enforce(caller, Action.DELETE)
        current = await self._load(transaction_id, caller)
        self.policy.enforce(caller, Action.DELETE, resource=current)

        async def work(tx: TransactionHandle) -> None:
            fresh = await self._reload(transaction_id, caller, tx)
            self.policy.enforce(caller, Action.DELETE, resource=fresh)
            deleted = await self.repository.delete(transaction_id, session=tx.session)
            if not deleted:
                raise self._missing(transaction_id, caller)
            tx.on_commit(lambda: self.audit_service.log_cash_delete(transaction_id, caller, origin))

        await self._run_guarded("delete", work, None)
        logger.info(f"[LEDGER] Deleted {transaction_id} by user:{caller.user_id}")

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _validate_changes(self, provided: Dict[str, Any]) -> Dict[str, Any]:
        if not provided:
            raise ValidationError("No fields to update")
        for field in REQUIRED_FIELDS:
            if field in provided and provided[field] is None:
                raise ValidationError(f"'{field}' cannot be cleared", field=field)

        changes = dict(provided)
        if "amount" in changes:
            changes["amount"] = validate_amount(changes["amount"])
        if "city" in changes:
            changes["city"] = validate_city(changes["city"])
        if "receipt_document_url" in changes:
            changes["receipt_document_url"] = validate_receipt_url(changes["receipt_document_url"])
        if "payment_purpose" in changes:
            changes["payment_purpose"] = validate_payment_purpose(changes["payment_purpose"])
        return changes

    async def _load(self, transaction_id: int, caller: CallerIdentity) -> CashTransaction:
        try:
            transaction = await self.repository.find_by_id(transaction_id)
        except PyMongoError as e:
            raise self._internal("load", e)
        if transaction is None:
            raise self._missing(transaction_id, caller)
        return transaction

    async def _reload(self, transaction_id: int, caller: CallerIdentity, tx: TransactionHandle) -> CashTransaction:
        transaction = await self.repository.find_by_id(transaction_id, session=tx.session)
        if transaction is None:
            # Deleted between the scope check and the transaction
            raise self._missing(transaction_id, caller)
        return transaction

    def _missing(self, transaction_id: int, caller: CallerIdentity) -> Exception:
        """
        Full-access callers learn that the id does not exist; everyone else
        gets the same denial as for an out-of-scope record.
        """
        if has_full_access(caller):
            return NotFoundError()
        logger.info(f"[LEDGER] Transaction {transaction_id} not visible to user:{caller.user_id}")
        return AuthorizationError(REASON_SCOPE)

    async def _run_guarded(self, operation: str, work, payment_purpose: Optional[str]):
        try:
            return await self.unit_of_work.run(work)
        except ConflictError as e:
            if e.existing_id is None and is_order_reference(payment_purpose):
                # Lost on the unique index: the winner has committed by now
                winner = await self.repository.find_by_order_reference(payment_purpose)
                raise ConflictError(payment_purpose, winner.id if winner else None)
            raise
        except PyMongoError as e:
            raise self._internal(operation, e)

    def _internal(self, operation: str, error: Exception) -> InternalError:
        logger.exception(f"[LEDGER] Store failure during {operation}: {error}")
        return InternalError()
