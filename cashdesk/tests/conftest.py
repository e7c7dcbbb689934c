"""
Shared fixtures wiring the services to in-memory store doubles
"""
import pytest

from cashdesk.audit_service import AuditService
from cashdesk.handover_service import HandoverService
from cashdesk.ledger_service import LedgerService
from cashdesk.models import Role
from cashdesk.tests.fakes import (
    InMemoryCashRepository,
    InMemoryCashStore,
    InMemoryOrderRepository,
    InMemoryUnitOfWork,
    RecordingAuditSink,
    make_caller
)


@pytest.fixture
def store():
    return InMemoryCashStore()


@pytest.fixture
def cash_repository(store):
    return InMemoryCashRepository(store)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def audit_service(audit_sink):
    return AuditService(audit_sink)


@pytest.fixture
def ledger(store, cash_repository, audit_service):
    return LedgerService(cash_repository, InMemoryUnitOfWork(store), audit_service)


@pytest.fixture
def admin():
    return make_caller(Role.ADMIN, user_id="100", name="Admin", login="admin")


@pytest.fixture
def moscow_director():
    return make_caller(Role.DIRECTOR, cities={"Moscow"}, user_id="200", name="Director", login="director")


@pytest.fixture
def master():
    return make_caller(Role.MASTER, user_id="300", name="Master One", login="master1")


@pytest.fixture
def other_master():
    return make_caller(Role.MASTER, user_id="301", name="Master Two", login="master2")


@pytest.fixture
def order_repository():
    return InMemoryOrderRepository()


@pytest.fixture
def handover(order_repository):
    return HandoverService(order_repository)
