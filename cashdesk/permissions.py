from dataclasses import dataclass
from enum import Enum
from typing import Optional, FrozenSet, Mapping
import logging

from cashdesk.core.exceptions import AuthorizationError
from cashdesk.models import CallerIdentity, CashTransaction, Role

logger = logging.getLogger(__name__)

# Stable, user-safe denial reasons. Single-resource denials share one reason
# so a caller cannot tell "out of scope" from "does not exist".
REASON_ROLE = "Your role is not allowed to perform this operation"
REASON_SCOPE = "You do not have access to this transaction"
REASON_CITY = "You do not have access to this city"


class Action(str, Enum):
    LIST = "list"
    GET = "get"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    HANDOVER_LIST = "handover.list"


class Scope(str, Enum):
    LIST = "list"                    # city filter forced by the query builder
    CITY_OR_OWNER = "city_or_owner"  # city membership, else creator match
    CITY_ONLY = "city_only"          # city membership, no ownership fallback
    TARGET_CITY = "target_city"      # city of the record being created
    SELF = "self"                    # caller's own records only


@dataclass(frozen=True)
class OperationRule:
    roles: FrozenSet[Role]
    scope: Scope


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)

ALL_ROLES = frozenset(Role)

# Roles that bypass city and ownership checks entirely
FULL_ACCESS_ROLES = frozenset({Role.ADMIN, Role.CALLCENTRE_ADMIN})

# Roles that may read but never post; none of the current roles is read-only
READ_ONLY_ROLES: FrozenSet[Role] = frozenset()

OPERATION_RULES: Mapping[Action, OperationRule] = {
    Action.LIST: OperationRule(ALL_ROLES, Scope.LIST),
    Action.GET: OperationRule(ALL_ROLES, Scope.CITY_OR_OWNER),
    Action.CREATE: OperationRule(ALL_ROLES - READ_ONLY_ROLES, Scope.TARGET_CITY),
    Action.UPDATE: OperationRule(
        frozenset({
            Role.ADMIN,
            Role.DIRECTOR,
            Role.CALLCENTRE_ADMIN,
            Role.CALLCENTRE_OPERATOR,
            Role.OPERATOR,
            # masters pass the role check but only own records survive scope
            Role.MASTER,
        }),
        Scope.CITY_OR_OWNER,
    ),
    Action.DELETE: OperationRule(
        frozenset({
            Role.ADMIN,
            Role.CALLCENTRE_ADMIN,
            Role.CALLCENTRE_OPERATOR,
            Role.OPERATOR,
        }),
        Scope.CITY_ONLY,
    ),
    Action.HANDOVER_LIST: OperationRule(frozenset({Role.MASTER}), Scope.SELF),
}


def has_full_access(caller: CallerIdentity) -> bool:
    return caller.role in FULL_ACCESS_ROLES


def city_in_scope(caller: CallerIdentity, city: Optional[str]) -> bool:
    """True when the caller may touch records of `city`"""
    if has_full_access(caller) or not caller.is_city_restricted:
        return True
    return city in caller.allowed_cities


def is_owner(caller: CallerIdentity, resource: CashTransaction) -> bool:
    """
    Ownership is keyed by the creator's user id. Rows written before the id
    was recorded only carry the display name, so those fall back to it.
    """
    if resource.created_by_id is not None:
        return resource.created_by_id == caller.user_id
    return bool(caller.display_name) and resource.created_by_display_name == caller.display_name


class AccessPolicy:
    """
    Single evaluation point for the static OPERATION_RULES table.

    RULES:
    1. Caller must carry a recognised role
    2. Role must be listed for the action
    3. Per-resource scope rule of the action must hold
    """

    def __init__(self, rules: Mapping[Action, OperationRule] = OPERATION_RULES):
        self.rules = rules

    def decide(
        self,
        caller: CallerIdentity,
        action: Action,
        resource: Optional[CashTransaction] = None,
        target_city: Optional[str] = None
    ) -> Decision:
        """
        Decide whether `caller` may perform `action`.

        Args:
            caller: Verified caller identity
            action: Requested operation
            resource: Existing record for get/update/delete
            target_city: City being written (create, or update changing city)
        """
        rule = self.rules.get(action)
        if rule is None or caller.role is None or caller.role not in rule.roles:
            return Decision(False, REASON_ROLE)

        if has_full_access(caller):
            return ALLOW

        if rule.scope in (Scope.CITY_OR_OWNER, Scope.CITY_ONLY) and resource is not None:
            if caller.is_city_restricted:
                if resource.city not in caller.allowed_cities:
                    return Decision(False, REASON_SCOPE)
            elif rule.scope is Scope.CITY_OR_OWNER and not is_owner(caller, resource):
                return Decision(False, REASON_SCOPE)

        if target_city is not None and not city_in_scope(caller, target_city):
            return Decision(False, REASON_CITY)

        return ALLOW

    def enforce(
        self,
        caller: CallerIdentity,
        action: Action,
        resource: Optional[CashTransaction] = None,
        target_city: Optional[str] = None
    ) -> None:
        """Raise AuthorizationError when decide() denies"""
        decision = self.decide(caller, action, resource=resource, target_city=target_city)
        if not decision.allowed:
            logger.info(
                f"[POLICY] Denied {action.value} for user:{caller.user_id} "
                f"role:{caller.role.value if caller.role else None} reason:{decision.reason}"
            )
            raise AuthorizationError(decision.reason)
