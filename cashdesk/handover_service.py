from typing import Any, Dict
import logging

from pymongo.errors import PyMongoError

from cashdesk.core.exceptions import InternalError
from cashdesk.core.query_builder import validate_page_window
from cashdesk.models import CallerIdentity, HandoverOrder, HandoverQuery, HandoverStatus, Page
from cashdesk.permissions import AccessPolicy, Action

logger = logging.getLogger(__name__)

# Orders become handover candidates once the field job is closed
READY_ORDER_STATUS = "done"


class HandoverService:
    """
    Read-only view of a master's closed orders and the state of the cash
    handover for each of them. A master only ever sees their own orders.
    """

    def __init__(self, repository, policy: AccessPolicy = None):
        self.repository = repository
        self.policy = policy or AccessPolicy()

    def build_predicate(self, query: HandoverQuery, caller: CallerIdentity) -> Dict[str, Any]:
        predicate: Dict[str, Any] = {
            "master_id": caller.user_id,
            "status_order": READY_ORDER_STATUS,
        }

        if query.status is HandoverStatus.NOT_SUBMITTED:
            # Orders closed before the handover flow existed carry no status
            predicate["cash_submission_status"] = {"$in": [None, HandoverStatus.NOT_SUBMITTED.value]}
        elif query.status is not HandoverStatus.ALL:
            predicate["cash_submission_status"] = query.status.value

        return predicate

    async def list_candidates(self, query: HandoverQuery, caller: CallerIdentity) -> Page[HandoverOrder]:
        self.policy.enforce(caller, Action.HANDOVER_LIST)
        page, limit = validate_page_window(query.page, query.limit)
        predicate = self.build_predicate(query, caller)

        try:
            items = await self.repository.find_page(predicate, skip=(page - 1) * limit, limit=limit)
            total = await self.repository.count(predicate)
        except PyMongoError as e:
            logger.exception(f"[HANDOVER] Store failure listing orders for master:{caller.user_id}: {e}")
            raise InternalError()

        logger.debug(f"[HANDOVER] master:{caller.user_id} status={query.status.value} total={total}")
        return Page[HandoverOrder](items=items, total=total, page=page, limit=limit)
