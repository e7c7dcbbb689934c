from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
import asyncio
import json
import logging

from cashdesk.models import AuditEvent, CallerIdentity, CashTransaction, RequestOrigin

logger = logging.getLogger(__name__)

EVENT_CASH_CREATE = "cash.{kind}.create"
EVENT_CASH_UPDATE = "cash.update"
EVENT_CASH_DELETE = "cash.delete"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return value


class MongoAuditSink:
    """Append-only audit sink backed by the `audit_logs` collection (INSERT ONLY)"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    async def write(self, event: AuditEvent) -> None:
        await self.collection.insert_one(event.to_wire())
        logger.info(json.dumps(event.model_dump(mode="json", by_alias=True), ensure_ascii=False))


class AuditService:
    """
    Best-effort audit channel.

    Events are put on an in-process queue and written to the sink by a
    background worker, so a slow or failing sink never blocks or fails the
    business operation that produced the event. Sink failures are logged and
    dropped.
    """

    def __init__(self, sink, max_queue_size: int = 1000):
        self.sink = sink
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._worker: Optional[asyncio.Task] = None

    # =========================================================================
    # CHANNEL LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start the delivery worker on the running event loop"""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())
            logger.info("[AUDIT] Delivery worker started")

    async def stop(self) -> None:
        """Deliver everything still queued, then stop the worker"""
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info("[AUDIT] Delivery worker stopped")

    async def flush(self) -> None:
        """Wait until every queued event has been handed to the sink"""
        if self._worker is not None and not self._worker.done():
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: AuditEvent) -> None:
        try:
            await self.sink.write(event)
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"[AUDIT] Failed to write audit event {event.event_type}: {str(e)}")

    # =========================================================================
    # EMISSION
    # =========================================================================

    def emit(self, event: AuditEvent) -> None:
        """Queue an event without waiting for delivery"""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(f"[AUDIT] Queue full, dropping audit event {event.event_type}")

    def build_event(
        self,
        event_type: str,
        caller: CallerIdentity,
        origin: Optional[RequestOrigin],
        metadata: Dict[str, Any]
    ) -> AuditEvent:
        origin = origin or RequestOrigin()
        return AuditEvent(
            event_type=event_type,
            actor_id=caller.user_id,
            actor_role=caller.role.value if caller.role else None,
            actor_login=caller.login,
            source_ip=origin.source_ip,
            user_agent=origin.user_agent,
            success=True,
            metadata=_json_safe(metadata)
        )

    def log_cash_create(
        self,
        transaction: CashTransaction,
        caller: CallerIdentity,
        origin: Optional[RequestOrigin] = None
    ) -> None:
        """Income or expense posting (`cash.income.create` / `cash.expense.create`)"""
        self.emit(self.build_event(
            EVENT_CASH_CREATE.format(kind=transaction.kind.value),
            caller,
            origin,
            {
                "cashId": transaction.id,
                "amount": transaction.amount,
                "city": transaction.city,
            }
        ))

    def log_cash_update(
        self,
        transaction_id: int,
        caller: CallerIdentity,
        changes: Dict[str, Any],
        origin: Optional[RequestOrigin] = None
    ) -> None:
        self.emit(self.build_event(
            EVENT_CASH_UPDATE,
            caller,
            origin,
            {"cashId": transaction_id, "changes": changes}
        ))

    def log_cash_delete(
        self,
        transaction_id: int,
        caller: CallerIdentity,
        origin: Optional[RequestOrigin] = None
    ) -> None:
        self.emit(self.build_event(
            EVENT_CASH_DELETE,
            caller,
            origin,
            {"cashId": transaction_id}
        ))
