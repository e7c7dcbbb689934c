from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Optional
import logging

from cashdesk.audit_service import AuditService, MongoAuditSink
from cashdesk.config import Settings, get_settings
from cashdesk.core.exceptions import CashDeskError, ConflictError, InternalError
from cashdesk.core.repository import MongoCashRepository, MongoOrderRepository
from cashdesk.core.unit_of_work import MongoUnitOfWork
from cashdesk.handover_service import HandoverService
from cashdesk.ledger_service import LedgerService
from cashdesk.permissions import AccessPolicy
from cashdesk.routes import create_cash_routes, create_handover_routes

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def register_exception_handlers(app: FastAPI):
    """Map the domain error taxonomy onto HTTP responses"""

    @app.exception_handler(CashDeskError)
    async def cash_desk_error_handler(request: Request, exc: CashDeskError):
        body = {"success": False, "message": exc.message}
        if isinstance(exc, ConflictError):
            body["existing_id"] = exc.existing_id
        if isinstance(exc, InternalError):
            # Details were logged where the failure happened
            body["message"] = InternalError.message
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": "Validation failed", "errors": jsonable_encoder(exc.errors())}
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": InternalError.message}
        )


def create_app(
    settings: Optional[Settings] = None,
    client: Optional[AsyncIOMotorClient] = None,
    cash_repository=None,
    order_repository=None,
    unit_of_work=None,
    audit_sink=None
) -> FastAPI:
    """
    Build the application.

    Store collaborators default to MongoDB bindings; any of them can be
    passed in (tests use in-memory doubles).
    """
    settings = (settings or get_settings()).validate()
    configure_logging(settings)

    if client is None and None in (cash_repository, order_repository, unit_of_work, audit_sink):
        client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
    db = client[settings.db_name] if client is not None else None

    cash_repository = cash_repository or MongoCashRepository(db)
    order_repository = order_repository or MongoOrderRepository(db)
    unit_of_work = unit_of_work or MongoUnitOfWork(client)
    audit_service = AuditService(audit_sink or MongoAuditSink(db), max_queue_size=settings.audit_queue_size)

    policy = AccessPolicy()
    ledger_service = LedgerService(cash_repository, unit_of_work, audit_service, policy=policy)
    handover_service = HandoverService(order_repository, policy=policy)

    app = FastAPI(
        title="Cash Desk",
        version="1.0.0",
        description="Cash transactions and master cash handover for field-service cities"
    )
    app.state.settings = settings
    app.state.audit_service = audit_service
    app.state.ledger_service = ledger_service
    app.state.handover_service = handover_service

    app.include_router(create_cash_routes(ledger_service))
    app.include_router(create_handover_routes(handover_service))
    register_exception_handlers(app)

    @app.on_event("startup")
    async def startup():
        await cash_repository.ensure_indexes()
        await order_repository.ensure_indexes()
        audit_service.start()
        logger.info("Cash desk started")

    @app.on_event("shutdown")
    async def shutdown():
        await audit_service.stop()
        if client is not None:
            client.close()

    return app
