"""
Ledger service tests
Testing: create / read / update / delete / list, duplicate guard under
concurrency, city scoping, audit emission after commit
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pymongo.errors import PyMongoError

from cashdesk.audit_service import AuditService
from cashdesk.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError
)
from cashdesk.ledger_service import LedgerService
from cashdesk.models import (
    CashListQuery,
    CashTransaction,
    CashTransactionCreate,
    CashTransactionUpdate,
    RequestOrigin,
    Role,
    TransactionKind
)
from cashdesk.permissions import REASON_ROLE, REASON_SCOPE
from cashdesk.tests.fakes import (
    FailingAuditSink,
    InMemoryCashRepository,
    InMemoryUnitOfWork,
    make_caller
)

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def seed(store, row_id, city="Moscow", kind=TransactionKind.EXPENSE, amount="100.00",
         created_by_id="300", created_by_display_name="Master One", payment_purpose=None,
         created_at=None):
    row = CashTransaction(
        id=row_id,
        kind=kind,
        amount=Decimal(amount),
        city=city,
        payment_purpose=payment_purpose,
        created_by_display_name=created_by_display_name,
        created_by_id=created_by_id,
        created_at=created_at or BASE_TIME + timedelta(minutes=row_id)
    )
    store.rows[row_id] = row
    store.sequence = max(store.sequence, row_id)
    return row


def expense(amount="150", city="Moscow", payment_purpose=None, **extra):
    return CashTransactionCreate(
        kind=TransactionKind.EXPENSE,
        amount=Decimal(amount),
        city=city,
        payment_purpose=payment_purpose,
        **extra
    )


class MovedInsideTransaction(InMemoryCashRepository):
    """Row is seen in `moved_to` once read through a transaction session"""

    def __init__(self, store, moved_to):
        super().__init__(store)
        self.moved_to = moved_to

    async def find_by_id(self, transaction_id, session=None):
        row = await super().find_by_id(transaction_id, session=session)
        if session is not None and row is not None:
            return row.model_copy(update={"city": self.moved_to})
        return row


class DeletedInsideTransaction(InMemoryCashRepository):
    """Row is gone once read through a transaction session"""

    async def find_by_id(self, transaction_id, session=None):
        if session is not None:
            return None
        return await super().find_by_id(transaction_id, session=session)


@pytest.fixture
def moscow_operator():
    return make_caller(Role.OPERATOR, cities={"Moscow"}, user_id="400", name="Operator")


class TestCreate:
    """Create path: validation, scope, duplicate guard, audit"""

    async def test_create_expense_records_creator_and_emits_event(
        self, ledger, store, audit_service, audit_sink, moscow_director
    ):
        """Director posts an expense in own city; one create event follows"""
        origin = RequestOrigin(source_ip="10.0.0.5", user_agent="pytest")
        created = await ledger.create_transaction(
            expense("150", payment_purpose="Order #1"), moscow_director, origin
        )

        assert created.id == 1
        assert created.amount == Decimal("150.00")
        assert created.created_by_display_name == "Director"
        assert created.created_by_id == "200"
        assert created.updated_at is None
        assert store.rows[1] == created

        await audit_service.flush()
        assert len(audit_sink.events) == 1
        event = audit_sink.events[0]
        assert event.event_type == "cash.expense.create"
        assert event.actor_id == "200"
        assert event.actor_role == "director"
        assert event.source_ip == "10.0.0.5"
        assert event.metadata == {"cashId": 1, "amount": "150.00", "city": "Moscow"}

    async def test_income_event_type(self, ledger, audit_service, audit_sink, admin):
        """Income postings emit cash.income.create"""
        data = CashTransactionCreate(kind=TransactionKind.INCOME, amount=Decimal("10"), city="Kazan")
        await ledger.create_transaction(data, admin)
        await audit_service.flush()
        assert audit_sink.events[0].event_type == "cash.income.create"

    async def test_missing_display_name_falls_back(self, ledger):
        """Callers without a display name are recorded as Unknown"""
        caller = make_caller(Role.OPERATOR, name="")
        created = await ledger.create_transaction(expense(), caller)
        assert created.created_by_display_name == "Unknown"

    async def test_duplicate_order_reference_conflicts_with_existing_id(self, ledger, store, admin, master):
        """Second posting for the same order is rejected with the first id"""
        first = await ledger.create_transaction(expense(payment_purpose="Order #42"), admin)

        with pytest.raises(ConflictError) as exc:
            await ledger.create_transaction(expense("99", payment_purpose="Order #42"), master)

        assert exc.value.existing_id == first.id
        assert exc.value.status_code == 409
        assert list(store.rows) == [first.id]

    async def test_free_text_purpose_is_not_guarded(self, ledger, store, admin):
        """Purposes that are not order references may repeat"""
        await ledger.create_transaction(expense(payment_purpose="office supplies"), admin)
        await ledger.create_transaction(expense(payment_purpose="office supplies"), admin)
        # near misses of the order reference shape are free text too
        await ledger.create_transaction(expense(payment_purpose="order #42"), admin)
        await ledger.create_transaction(expense(payment_purpose="order #42"), admin)
        assert len(store.rows) == 4

    @pytest.mark.parametrize("serialize", [True, False])
    async def test_concurrent_duplicates_yield_exactly_one_row(self, store, audit_service, audit_sink, admin, serialize):
        """Racing creates for one order leave one row and one conflict"""
        ledger = LedgerService(
            InMemoryCashRepository(store),
            InMemoryUnitOfWork(store, serialize=serialize),
            audit_service
        )

        results = await asyncio.gather(
            ledger.create_transaction(expense("10", payment_purpose="Order #7"), admin),
            ledger.create_transaction(expense("20", payment_purpose="Order #7"), admin),
            return_exceptions=True
        )

        created = [r for r in results if isinstance(r, CashTransaction)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(created) == 1
        assert len(conflicts) == 1
        assert conflicts[0].existing_id == created[0].id
        assert list(store.rows) == [created[0].id]

        await audit_service.flush()
        assert len(audit_sink.events) == 1

    async def test_restricted_caller_cannot_create_outside_cities(
        self, ledger, store, audit_service, audit_sink, moscow_director
    ):
        """Moscow director cannot post in Kazan; nothing is stored or audited"""
        with pytest.raises(AuthorizationError):
            await ledger.create_transaction(expense(city="Kazan"), moscow_director)

        await audit_service.flush()
        assert store.rows == {}
        assert audit_sink.events == []

    async def test_invalid_amount_rejected_before_store(self, ledger, store, admin):
        """Bad amounts never reach the store"""
        with pytest.raises(ValidationError):
            await ledger.create_transaction(expense("0.001"), admin)
        assert store.commits == 0
        assert store.sequence == 0

    async def test_caller_without_role_denied(self, ledger, store):
        """Unrecognised role is denied on the role check"""
        caller = make_caller(None)
        with pytest.raises(AuthorizationError) as exc:
            await ledger.create_transaction(expense(), caller)
        assert exc.value.message == REASON_ROLE
        assert store.rows == {}

    async def test_store_failure_surfaces_as_internal_error(self, ledger, store, audit_service, audit_sink, admin):
        """Store errors become an opaque InternalError with no event"""
        store.fail_with = PyMongoError("connection reset")
        with pytest.raises(InternalError) as exc:
            await ledger.create_transaction(expense(), admin)

        assert "connection reset" not in exc.value.message
        await audit_service.flush()
        assert audit_sink.events == []

    async def test_failing_audit_sink_does_not_fail_create(self, store, admin):
        """Audit sink errors are swallowed after the row is committed"""
        sink = FailingAuditSink()
        audit = AuditService(sink)
        ledger = LedgerService(InMemoryCashRepository(store), InMemoryUnitOfWork(store), audit)

        created = await ledger.create_transaction(expense(), admin)
        await audit.flush()

        assert store.rows[created.id] == created
        assert sink.attempts == 1


class TestRead:
    """Single-record access"""

    async def test_get_own_transaction(self, ledger, store, master):
        """Master reads a record they created"""
        row = seed(store, 1, created_by_id="300")
        assert await ledger.get_transaction(1, master) == row

    async def test_get_other_masters_transaction_denied(self, ledger, store, other_master):
        """Master cannot read another master's record"""
        seed(store, 1, created_by_id="300")
        with pytest.raises(AuthorizationError):
            await ledger.get_transaction(1, other_master)

    async def test_get_outside_cities_denied(self, ledger, store):
        """City-restricted caller cannot read another city's record"""
        seed(store, 1, city="Moscow")
        caller = make_caller(Role.DIRECTOR, cities={"Kazan", "Samara"})
        with pytest.raises(AuthorizationError) as exc:
            await ledger.get_transaction(1, caller)
        assert exc.value.message == REASON_SCOPE

    async def test_missing_id_looks_like_denial_for_restricted_callers(self, ledger, moscow_director):
        """Unknown id is reported as the scope denial"""
        with pytest.raises(AuthorizationError) as exc:
            await ledger.get_transaction(999, moscow_director)
        assert exc.value.message == REASON_SCOPE

    async def test_missing_id_is_not_found_for_full_access(self, ledger, admin):
        """Admin learns that the id does not exist"""
        with pytest.raises(NotFoundError):
            await ledger.get_transaction(999, admin)


class TestList:
    """Scoped, paged listing"""

    async def test_pagination_newest_first(self, ledger, store, admin):
        """Second page of ten out of 25 rows, newest first"""
        for row_id in range(1, 26):
            seed(store, row_id)

        page = await ledger.list_transactions(CashListQuery(page=2, limit=10), admin)

        assert [row.id for row in page.items] == list(range(15, 5, -1))
        assert page.total == 25
        assert page.pagination() == {"page": 2, "limit": 10, "total": 25, "total_pages": 3}

    async def test_ties_on_created_at_broken_by_id(self, ledger, store, admin):
        """Rows created in the same instant come back by descending id"""
        for row_id in range(1, 4):
            seed(store, row_id, created_at=BASE_TIME)

        page = await ledger.list_transactions(CashListQuery(), admin)
        assert [row.id for row in page.items] == [3, 2, 1]

    async def test_forbidden_city_yields_empty_page(self, ledger, store):
        """Asking for a city outside the allowed set returns nothing"""
        seed(store, 1, city="A")
        seed(store, 2, city="C")
        caller = make_caller(Role.DIRECTOR, cities={"A", "B"})

        page = await ledger.list_transactions(CashListQuery(city="C"), caller)

        assert page.items == []
        assert page.total == 0

    async def test_restricted_caller_sees_only_allowed_cities(self, ledger, store):
        """No city filter means the allowed set"""
        seed(store, 1, city="A")
        seed(store, 2, city="B")
        seed(store, 3, city="C")
        caller = make_caller(Role.DIRECTOR, cities={"A", "B"})

        page = await ledger.list_transactions(CashListQuery(), caller)
        assert sorted(row.city for row in page.items) == ["A", "B"]

    async def test_unrestricted_master_lists_only_own_records(self, ledger, store, master):
        """Listing agrees with single-record access for callers without cities"""
        seed(store, 1, city="Kazan", created_by_id="999", created_by_display_name="Someone")
        seed(store, 2, city="Moscow", created_by_id="300")
        seed(store, 3, city="Samara", created_by_id=None, created_by_display_name="Master One")

        page = await ledger.list_transactions(CashListQuery(), master)

        assert [row.id for row in page.items] == [3, 2]
        assert page.total == 2
        for row in page.items:
            assert await ledger.get_transaction(row.id, master) == row

    async def test_kind_filter(self, ledger, store, admin):
        """type=income keeps only income rows"""
        seed(store, 1, kind=TransactionKind.INCOME)
        seed(store, 2, kind=TransactionKind.EXPENSE)

        page = await ledger.list_transactions(CashListQuery(type=TransactionKind.INCOME), admin)
        assert [row.id for row in page.items] == [1]

    async def test_invalid_page_rejected(self, ledger, admin):
        """Limit above 100 is rejected"""
        with pytest.raises(ValidationError):
            await ledger.list_transactions(CashListQuery(limit=500), admin)

    async def test_store_failure_on_list(self, ledger, store, admin):
        """Store errors on list become InternalError"""
        store.fail_with = PyMongoError("timeout")
        with pytest.raises(InternalError):
            await ledger.list_transactions(CashListQuery(), admin)


class TestUpdate:
    """Partial updates"""

    async def test_partial_update_leaves_other_fields(self, ledger, store, audit_service, audit_sink, master):
        """Only the note changes; one update event carries the change"""
        original = seed(store, 1, amount="100.00", payment_purpose="Order #5")

        updated = await ledger.update_transaction(1, CashTransactionUpdate(note="cash from client"), master)

        assert updated.note == "cash from client"
        assert updated.amount == original.amount
        assert updated.payment_purpose == "Order #5"
        assert updated.updated_at is not None

        await audit_service.flush()
        assert [e.event_type for e in audit_sink.events] == ["cash.update"]
        assert audit_sink.events[0].metadata == {"cashId": 1, "changes": {"note": "cash from client"}}

    async def test_explicit_null_clears_optional_field(self, ledger, store, admin):
        """note=None clears the note"""
        seed(store, 1)
        await ledger.update_transaction(1, CashTransactionUpdate(note="temp"), admin)

        updated = await ledger.update_transaction(1, CashTransactionUpdate(note=None), admin)
        assert updated.note is None

    async def test_required_field_cannot_be_cleared(self, ledger, store, admin):
        """amount=None is rejected"""
        seed(store, 1)
        with pytest.raises(ValidationError) as exc:
            await ledger.update_transaction(1, CashTransactionUpdate(amount=None), admin)
        assert exc.value.field == "amount"

    async def test_empty_update_rejected(self, ledger, store, admin):
        """Payload with no fields is rejected"""
        seed(store, 1)
        with pytest.raises(ValidationError):
            await ledger.update_transaction(1, CashTransactionUpdate(), admin)

    async def test_repeated_update_is_idempotent(self, ledger, store, audit_service, audit_sink, admin):
        """Same payload twice leaves the same row; each call is audited"""
        seed(store, 1)
        data = CashTransactionUpdate(amount=Decimal("200"))

        first = await ledger.update_transaction(1, data, admin)
        second = await ledger.update_transaction(1, data, admin)

        assert second == first
        assert store.rows[1].amount == Decimal("200.00")
        await audit_service.flush()
        assert [e.event_type for e in audit_sink.events] == ["cash.update", "cash.update"]

    async def test_update_to_taken_order_reference_conflicts(self, ledger, store, admin):
        """Moving a row onto another row's order reference conflicts"""
        seed(store, 1, payment_purpose="Order #1")
        seed(store, 2, payment_purpose="Order #2")

        with pytest.raises(ConflictError) as exc:
            await ledger.update_transaction(2, CashTransactionUpdate(payment_purpose="Order #1"), admin)

        assert exc.value.existing_id == 1
        assert store.rows[2].payment_purpose == "Order #2"

    async def test_keeping_own_order_reference_is_not_a_conflict(self, ledger, store, admin):
        """A row never conflicts with itself"""
        seed(store, 1, payment_purpose="Order #1")
        updated = await ledger.update_transaction(1, CashTransactionUpdate(payment_purpose="Order #1"), admin)
        assert updated.payment_purpose == "Order #1"

    async def test_kind_change(self, ledger, store, admin):
        """Expense can be turned into income"""
        seed(store, 1, kind=TransactionKind.EXPENSE)
        updated = await ledger.update_transaction(1, CashTransactionUpdate(kind=TransactionKind.INCOME), admin)
        assert updated.kind is TransactionKind.INCOME

    async def test_moving_to_forbidden_city_denied(self, ledger, store, moscow_director):
        """Target city must be in the caller's set"""
        seed(store, 1, city="Moscow")
        with pytest.raises(AuthorizationError):
            await ledger.update_transaction(1, CashTransactionUpdate(city="Kazan"), moscow_director)
        assert store.rows[1].city == "Moscow"

    async def test_other_masters_record_denied(self, ledger, store, audit_service, audit_sink, other_master):
        """Master cannot update another master's record"""
        seed(store, 1, created_by_id="300")
        with pytest.raises(AuthorizationError):
            await ledger.update_transaction(1, CashTransactionUpdate(note="x"), other_master)

        await audit_service.flush()
        assert audit_sink.events == []

    async def test_missing_id_looks_like_denial(self, ledger, moscow_operator):
        """Restricted caller updating an unknown id gets the scope denial"""
        with pytest.raises(AuthorizationError) as exc:
            await ledger.update_transaction(999, CashTransactionUpdate(note="x"), moscow_operator)
        assert exc.value.message == REASON_SCOPE

    async def test_city_moved_inside_transaction_denied(self, store, audit_service, audit_sink, moscow_director):
        """Scope is checked again on the row the transaction reads"""
        seed(store, 1, city="Moscow")
        ledger = LedgerService(
            MovedInsideTransaction(store, moved_to="Kazan"),
            InMemoryUnitOfWork(store),
            audit_service
        )

        with pytest.raises(AuthorizationError) as exc:
            await ledger.update_transaction(1, CashTransactionUpdate(note="x"), moscow_director)

        assert exc.value.message == REASON_SCOPE
        assert store.rows[1].note is None
        await audit_service.flush()
        assert audit_sink.events == []

    async def test_invalid_receipt_url_rejected(self, ledger, store, admin):
        """Plain http receipt links are rejected"""
        seed(store, 1)
        with pytest.raises(ValidationError):
            await ledger.update_transaction(
                1, CashTransactionUpdate(receipt_document_url="http://x.example.com/r.pdf"), admin
            )


class TestDelete:
    """Hard delete"""

    async def test_delete_removes_row_and_emits_event(self, ledger, store, audit_service, audit_sink, admin):
        """Admin delete removes the row and emits cash.delete"""
        seed(store, 1)
        await ledger.delete_transaction(1, admin)

        assert 1 not in store.rows
        await audit_service.flush()
        assert [e.event_type for e in audit_sink.events] == ["cash.delete"]
        assert audit_sink.events[0].metadata == {"cashId": 1}

    @pytest.mark.parametrize("role", [Role.MASTER, Role.DIRECTOR])
    async def test_delete_requires_privileged_role(self, ledger, store, role):
        """Masters and directors cannot delete"""
        seed(store, 1)
        with pytest.raises(AuthorizationError) as exc:
            await ledger.delete_transaction(1, make_caller(role, user_id="300", cities={"Moscow"}))
        assert exc.value.message == REASON_ROLE
        assert 1 in store.rows

    async def test_operator_deletes_in_allowed_city(self, ledger, store):
        """Operator deletes someone else's row inside their cities"""
        seed(store, 1, city="Kazan", created_by_id="999")
        await ledger.delete_transaction(1, make_caller(Role.OPERATOR, cities={"Kazan"}))
        assert store.rows == {}

    async def test_operator_cannot_delete_outside_cities(self, ledger, store, audit_service, audit_sink, moscow_operator):
        """Operator restricted to Moscow cannot delete a Kazan row"""
        seed(store, 1, city="Kazan")
        with pytest.raises(AuthorizationError) as exc:
            await ledger.delete_transaction(1, moscow_operator)

        assert exc.value.message == REASON_SCOPE
        assert 1 in store.rows
        await audit_service.flush()
        assert audit_sink.events == []

    async def test_missing_id_looks_like_denial(self, ledger, moscow_operator):
        """Restricted caller deleting an unknown id gets the scope denial"""
        with pytest.raises(AuthorizationError) as exc:
            await ledger.delete_transaction(999, moscow_operator)
        assert exc.value.message == REASON_SCOPE

    async def test_city_moved_inside_transaction_denied(self, store, audit_service, moscow_operator):
        """Delete re-checks scope on the row the transaction reads"""
        seed(store, 1, city="Moscow")
        ledger = LedgerService(
            MovedInsideTransaction(store, moved_to="Kazan"),
            InMemoryUnitOfWork(store),
            audit_service
        )

        with pytest.raises(AuthorizationError):
            await ledger.delete_transaction(1, moscow_operator)
        assert 1 in store.rows

    @pytest.mark.parametrize("role,cities,expected", [
        (Role.OPERATOR, {"Moscow"}, AuthorizationError),
        (Role.ADMIN, set(), NotFoundError),
    ])
    async def test_row_deleted_concurrently(self, store, audit_service, role, cities, expected):
        """Row vanishing before the write is reported like any missing id"""
        seed(store, 1, city="Moscow")
        ledger = LedgerService(DeletedInsideTransaction(store), InMemoryUnitOfWork(store), audit_service)
        caller = make_caller(role, cities=cities)

        with pytest.raises(expected):
            await ledger.delete_transaction(1, caller)
        with pytest.raises(expected):
            await ledger.update_transaction(1, CashTransactionUpdate(note="x"), caller)

    async def test_delete_missing_for_full_access(self, ledger, admin):
        """Admin deleting an unknown id gets NotFoundError"""
        with pytest.raises(NotFoundError):
            await ledger.delete_transaction(404, admin)
