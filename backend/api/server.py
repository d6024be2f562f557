# api/server.py
# ============================================================================
# BILLING RECONCILIATION SERVICE — FASTAPI SERVER
# ============================================================================
# Payment webhooks, quote actions, Stripe and Midtrans checkout, totals and reminder sweeps
# ============================================================================

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import structlog
import uvicorn

from config import configure_logging, settings
from pipeline.errors import DocumentNotFoundError, ReconciliationError
from pipeline.reconciliation import ReconciliationCoordinator
from schemas.documents import DocumentKind
from services.checkout import CheckoutResult, CheckoutService
from services.midtrans import MidtransTransactionResult, MidtransTransactionService
from services.totals import document_totals
from storage.document_store import DocumentStore, IAuditLog, InMemoryAuditLog, InMemoryDocumentStore
from tasks.reminders import notify_expiring_quotes, notify_overdue_invoices

# Configure structured logging
configure_logging()
logger = structlog.get_logger().bind(component="server")


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class QuoteStatusRequest(BaseModel):
    """Quote accept/reject action. Both fields are checked by the coordinator."""
    quoteId: Optional[str] = None
    status: Optional[str] = None


class CheckoutRequest(BaseModel):
    origin: Optional[str] = Field(default=None, description="Frontend origin for redirects")


class TotalsResponse(BaseModel):
    document_id: str
    kind: DocumentKind
    items: list[float]
    subtotal: float
    discount: float
    tax: float
    total: float


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    store_backend: str


START_TIME = datetime.now(timezone.utc)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_coordinator(request: Request) -> ReconciliationCoordinator:
    return request.app.state.coordinator


def get_checkout_service(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_midtrans_service(request: Request) -> MidtransTransactionService:
    return request.app.state.midtrans


def _build_backend(store: Optional[DocumentStore], audit_log: Optional[IAuditLog]):
    if store is not None:
        return store, audit_log or InMemoryAuditLog()
    if settings.STORE_BACKEND == "postgres":
        from storage.postgres_store import PostgresAuditLog, PostgresDocumentStore
        return PostgresDocumentStore(), audit_log or PostgresAuditLog()
    return InMemoryDocumentStore(), audit_log or InMemoryAuditLog()


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    store: Optional[DocumentStore] = None,
    audit_log: Optional[IAuditLog] = None,
    authenticators: Optional[dict] = None,
    checkout: Optional[CheckoutService] = None,
    midtrans: Optional[MidtransTransactionService] = None,
) -> FastAPI:
    """Build the API with injectable store, audit log and authenticators"""

    store, audit_log = _build_backend(store, audit_log)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("service_starting", version=settings.VERSION, store_backend=store.backend)
        for warning in settings.validate():
            logger.warning("config_warning", detail=warning)

        if store.backend == "postgres":
            from database import close_database, init_database
            await init_database()
            yield
            await close_database()
        else:
            yield

        logger.info("service_stopped")

    app = FastAPI(
        title="Billing Reconciliation Service",
        description="Payment webhook and quote status reconciliation",
        version=settings.VERSION,
        lifespan=lifespan,
    )

    app.state.store = store
    app.state.audit = audit_log
    app.state.coordinator = ReconciliationCoordinator(
        store=store,
        audit_log=audit_log,
        authenticators=authenticators,
    )
    app.state.checkout = checkout or CheckoutService(store=store, audit_log=audit_log)
    app.state.midtrans = midtrans or MidtransTransactionService(store=store, audit_log=audit_log)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_middleware(app)
    _register_error_handlers(app)
    _register_routes(app)
    return app


# ============================================================================
# MIDDLEWARE
# ============================================================================

def _register_middleware(app: FastAPI) -> None:

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response


# ============================================================================
# ERROR HANDLERS
# ============================================================================

def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("request_failed",
            path=request.url.path,
            error=exc.message,
            error_type=type(exc).__name__,
            status_code=exc.status_code)
        return JSONResponse(content=exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning("request_invalid", path=request.url.path)
        return JSONResponse(
            content=jsonable_encoder({"error": "Malformed request body", "details": {"errors": exc.errors()}}),
            status_code=400,
        )


# ============================================================================
# ENDPOINTS
# ============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health_check(store: DocumentStore = Depends(get_store)):
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - START_TIME).total_seconds()
        return HealthResponse(
            status="healthy",
            version=settings.VERSION,
            uptime_seconds=uptime,
            store_backend=store.backend,
        )

    @app.post("/api/webhooks/stripe")
    async def stripe_webhook(
        request: Request,
        coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    ):
        """Stripe webhook handler for payment events."""
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        result = await coordinator.process_webhook("stripe", payload, signature)
        return result.acknowledgement()

    @app.post("/api/webhooks/midtrans")
    async def midtrans_webhook(
        request: Request,
        coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    ):
        """Midtrans HTTP notification handler. The signature is in the body."""
        payload = await request.body()
        result = await coordinator.process_webhook("midtrans", payload)
        return result.acknowledgement()

    @app.post("/api/quotes/status")
    async def update_quote_status(
        body: QuoteStatusRequest,
        coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    ) -> Dict[str, Any]:
        """Accept or reject a quote; returns the updated quote."""
        quote = await coordinator.update_quote_status(body.quoteId, body.status)
        return quote.model_dump(mode="json")

    @app.post("/api/invoices/{invoice_id}/checkout", response_model=CheckoutResult)
    async def create_checkout(
        invoice_id: str,
        request: Request,
        body: Optional[CheckoutRequest] = None,
        checkout: CheckoutService = Depends(get_checkout_service),
    ):
        """Create a Stripe Checkout Session for an invoice."""
        origin = (body.origin if body else None) or request.headers.get("origin")
        return await checkout.create_checkout(invoice_id, origin=origin)

    @app.post("/api/invoices/{invoice_id}/midtrans-transaction", response_model=MidtransTransactionResult)
    async def create_midtrans_transaction(
        invoice_id: str,
        midtrans: MidtransTransactionService = Depends(get_midtrans_service),
    ):
        """Create a Midtrans Snap transaction; the page opens Snap with the token."""
        return await midtrans.create_transaction(invoice_id)

    async def _totals(kind: DocumentKind, document_id: str, store: DocumentStore) -> TotalsResponse:
        document = await store.get_document(kind, document_id)
        if document is None:
            raise DocumentNotFoundError(f"{kind.value.title()} {document_id} not found")
        return TotalsResponse(document_id=document.id, kind=kind, **document_totals(document))

    @app.get("/api/invoices/{invoice_id}/totals", response_model=TotalsResponse)
    async def invoice_totals(invoice_id: str, store: DocumentStore = Depends(get_store)):
        return await _totals(DocumentKind.INVOICE, invoice_id, store)

    @app.get("/api/quotes/{quote_id}/totals", response_model=TotalsResponse)
    async def quote_totals(quote_id: str, store: DocumentStore = Depends(get_store)):
        return await _totals(DocumentKind.QUOTE, quote_id, store)

    @app.post("/api/tasks/invoice-overdue-check")
    async def invoice_overdue_check(request: Request, store: DocumentStore = Depends(get_store)):
        """Triggered by an external scheduler."""
        return await notify_overdue_invoices(store, audit_log=request.app.state.audit)

    @app.post("/api/tasks/quote-expiry-check")
    async def quote_expiry_check(request: Request, store: DocumentStore = Depends(get_store)):
        """Triggered by an external scheduler."""
        return await notify_expiring_quotes(store, audit_log=request.app.state.audit)


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.debug,
        log_level=settings.LOG_LEVEL.lower(),
    )
