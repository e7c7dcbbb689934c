# Cash desk API endpoints
#
# Thin adapter: parses the request, resolves the caller, delegates to the
# services and shapes the response. Domain errors are mapped to status codes
# by the exception handlers registered in server.py.

from fastapi import APIRouter, Depends, Request, status
from datetime import datetime, timezone
import logging

from cashdesk.auth import get_current_caller, get_request_origin
from cashdesk.handover_service import HandoverService
from cashdesk.ledger_service import LedgerService
from cashdesk.models import (
    CallerIdentity,
    CashListQuery,
    CashTransactionCreate,
    CashTransactionUpdate,
    HandoverQuery
)

logger = logging.getLogger(__name__)


def create_cash_routes(ledger_service: LedgerService) -> APIRouter:
    """Create cash transaction router"""

    router = APIRouter(prefix="/api/cash", tags=["cash"])

    @router.get("/health")
    async def health():
        """Health check endpoint"""
        return {
            "success": True,
            "message": "Cash module is healthy",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @router.get("")
    async def list_transactions(
        filters: CashListQuery = Depends(),
        caller: CallerIdentity = Depends(get_current_caller)
    ):
        """List cash transactions visible to the caller, newest first"""
        page = await ledger_service.list_transactions(filters, caller)
        return {
            "success": True,
            "data": page.items,
            "pagination": page.pagination()
        }

    @router.get("/{transaction_id}")
    async def get_transaction(
        transaction_id: int,
        caller: CallerIdentity = Depends(get_current_caller)
    ):
        transaction = await ledger_service.get_transaction(transaction_id, caller)
        return {"success": True, "data": transaction}

    @router.post("", status_code=status.HTTP_201_CREATED)
    async def create_transaction(
        payload: CashTransactionCreate,
        request: Request,
        caller: CallerIdentity = Depends(get_current_caller)
    ):
        """
        Create income / expense posting.
        409 when an order-linked payment purpose is already posted.
        """
        transaction = await ledger_service.create_transaction(
            payload, caller, origin=get_request_origin(request)
        )
        return {
            "success": True,
            "message": "Cash transaction created successfully",
            "data": transaction
        }

    @router.put("/{transaction_id}")
    async def update_transaction(
        transaction_id: int,
        payload: CashTransactionUpdate,
        request: Request,
        caller: CallerIdentity = Depends(get_current_caller)
    ):
        """Partial update; only fields present in the body are applied"""
        transaction = await ledger_service.update_transaction(
            transaction_id, payload, caller, origin=get_request_origin(request)
        )
        return {
            "success": True,
            "message": "Cash transaction updated successfully",
            "data": transaction
        }

    @router.delete("/{transaction_id}")
    async def delete_transaction(
        transaction_id: int,
        request: Request,
        caller: CallerIdentity = Depends(get_current_caller)
    ):
        await ledger_service.delete_transaction(
            transaction_id, caller, origin=get_request_origin(request)
        )
        return {"success": True, "message": "Cash transaction deleted successfully"}

    return router


def create_handover_routes(handover_service: HandoverService) -> APIRouter:
    """Create master cash handover router"""

    router = APIRouter(prefix="/api/handover", tags=["handover"])

    @router.get("")
    async def list_handover_candidates(
        query: HandoverQuery = Depends(),
        caller: CallerIdentity = Depends(get_current_caller)
    ):
        """Closed orders of the calling master with their cash handover state"""
        page = await handover_service.list_candidates(query, caller)
        return {
            "success": True,
            "data": page.items,
            "pagination": page.pagination()
        }

    return router
