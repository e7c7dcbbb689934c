from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, FrozenSet, Generic, TypeVar
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import math

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ROLES & CALLER IDENTITY
# ============================================
class Role(str, Enum):
    ADMIN = "admin"
    DIRECTOR = "director"
    MASTER = "master"
    CALLCENTRE_ADMIN = "callcentre_admin"
    CALLCENTRE_OPERATOR = "callcentre_operator"
    OPERATOR = "operator"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """Map a raw role tag to the enum; unknown tags become None"""
        try:
            return cls(value)
        except ValueError:
            return None


class CallerIdentity(BaseModel):
    """Verified caller, threaded explicitly through every service call"""
    user_id: str
    login: str = ""
    role: Optional[Role] = None
    display_name: str = ""
    allowed_cities: FrozenSet[str] = frozenset()

    class Config:
        frozen = True

    @property
    def is_city_restricted(self) -> bool:
        return bool(self.allowed_cities)


class RequestOrigin(BaseModel):
    """Network origin of a request, recorded on audit events"""
    source_ip: str = "unknown"
    user_agent: str = "Unknown"

    class Config:
        frozen = True


# ============================================
# CASH TRANSACTION MODEL
# ============================================
class TransactionKind(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class CashTransaction(BaseModel):
    id: int
    kind: TransactionKind
    amount: Decimal
    city: str
    note: Optional[str] = None
    receipt_document_url: Optional[str] = None
    payment_purpose: Optional[str] = None
    created_by_display_name: str
    created_by_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class CashTransactionCreate(BaseModel):
    kind: TransactionKind
    amount: Decimal
    city: str
    note: Optional[str] = None
    receipt_document_url: Optional[str] = None
    payment_purpose: Optional[str] = None


class CashTransactionUpdate(BaseModel):
    """
    Partial update. Only fields present in the payload are applied;
    an explicit null clears an optional text field.
    """
    kind: Optional[TransactionKind] = None
    amount: Optional[Decimal] = None
    city: Optional[str] = None
    note: Optional[str] = None
    receipt_document_url: Optional[str] = None
    payment_purpose: Optional[str] = None

    def provided_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CashListQuery(BaseModel):
    """List filters. `type` and `name` alias the transaction kind."""
    type: Optional[TransactionKind] = None
    name: Optional[TransactionKind] = None
    city: Optional[str] = None
    page: int = 1
    limit: int = 50


# ============================================
# MASTER CASH HANDOVER VIEW
# ============================================
class HandoverStatus(str, Enum):
    ALL = "all"
    NOT_SUBMITTED = "not_submitted"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class HandoverQuery(BaseModel):
    status: HandoverStatus = HandoverStatus.ALL
    page: int = 1
    limit: int = 50


class HandoverOrder(BaseModel):
    """Closed order whose cash the master still has to hand over (or did)"""
    id: int
    master_id: str
    master_name: Optional[str] = None
    city: Optional[str] = None
    client_name: Optional[str] = None
    total: Optional[Decimal] = None
    master_change: Optional[Decimal] = None
    status_order: str
    cash_submission_status: Optional[str] = None
    cash_receipt_doc: Optional[str] = None
    closing_date: Optional[datetime] = None


# ============================================
# PAGINATION
# ============================================
class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> Dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
        }


# ============================================
# AUDIT EVENT (IMMUTABLE, WRITE-ONCE)
# ============================================
class AuditEvent(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    event_type: str = Field(alias="eventType")
    actor_id: Optional[str] = Field(default=None, alias="actorId")
    actor_role: Optional[str] = Field(default=None, alias="actorRole")
    actor_login: Optional[str] = Field(default=None, alias="actorLogin")
    source_ip: str = Field(default="unknown", alias="sourceIp")
    user_agent: str = Field(default="Unknown", alias="userAgent")
    success: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True
        populate_by_name = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
