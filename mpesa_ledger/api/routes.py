"""
API routes for STK push payments, callbacks and the invoice ledger.
"""
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_ledger.core import invoices
from mpesa_ledger.core.callback_processor import (
    ACKNOWLEDGEMENT,
    CallbackEventNotFoundError,
    CallbackProcessor,
)
from mpesa_ledger.core.expiry import ExpirySweeper
from mpesa_ledger.core.ledger import (
    DuplicateReceiptError,
    InvoiceNotFoundError,
    LedgerError,
    LedgerReconciler,
)
from mpesa_ledger.core.stk_push import PaymentRequestNotFoundError, StkPushService
from mpesa_ledger.database.connection import get_db
from mpesa_ledger.database.models import PaymentMethod
from mpesa_ledger.integrations.errors import MpesaError, PaymentValidationError
from mpesa_ledger.monitoring.health import HealthCheck

from .schemas import (
    CallbackAcknowledgement,
    CallbackReplayResponse,
    CreateInvoiceRequest,
    ExpirySweepResponse,
    FinancialSummaryResponse,
    HealthCheckResponse,
    InvoiceResponse,
    ManualPaymentRequest,
    PaymentListResponse,
    PaymentRequestStatusResponse,
    PaymentResponse,
    StkPushInitiatedResponse,
    StkPushRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
invoice_router = APIRouter(prefix="/invoices", tags=["invoices"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@lru_cache()
def get_stk_push_service() -> StkPushService:
    return StkPushService()


@lru_cache()
def get_callback_processor() -> CallbackProcessor:
    return CallbackProcessor()


@lru_cache()
def get_ledger_reconciler() -> LedgerReconciler:
    return LedgerReconciler()


@lru_cache()
def get_expiry_sweeper() -> ExpirySweeper:
    return ExpirySweeper()


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()


@payment_router.post(
    "/stk-push",
    response_model=StkPushInitiatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Initiate an STK push",
    description="Send a payment prompt to the payer's phone for an invoice",
)
async def initiate_stk_push(
    request: StkPushRequest,
    db: AsyncSession = Depends(get_db),
    service: StkPushService = Depends(get_stk_push_service),
) -> Dict[str, Any]:
    """
    Initiate an STK push.

    Returns as soon as the provider accepts the request; the outcome
    arrives later through the callback and can be polled.
    """
    logger.info(
        "api_stk_push_request",
        invoice_id=str(request.invoice_id),
        amount=str(request.amount),
    )

    try:
        payment_request = await service.initiate_payment(
            db,
            invoice_id=request.invoice_id,
            phone=request.phone_number,
            amount=request.amount,
            description=request.description,
        )

    except PaymentValidationError as e:
        logger.warning("api_stk_push_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    except MpesaError as e:
        logger.error("api_stk_push_gateway_error", error=str(e), error_code=e.error_code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"M-Pesa request failed: {str(e)}",
        )

    return {
        "checkout_request_id": payment_request.checkout_request_id,
        "merchant_request_id": payment_request.merchant_request_id,
        "invoice_id": payment_request.invoice_id,
        "phone_number": payment_request.phone_number,
        "amount": payment_request.amount,
        "status": payment_request.status,
        "message": "Payment prompt sent to your phone",
    }


@payment_router.get(
    "/stk-push/{checkout_request_id}",
    response_model=PaymentRequestStatusResponse,
    summary="Get STK push status",
    description="Poll the status of an STK push by CheckoutRequestID",
)
async def get_stk_push_status(
    checkout_request_id: str,
    db: AsyncSession = Depends(get_db),
    service: StkPushService = Depends(get_stk_push_service),
) -> Dict[str, Any]:
    """Get STK push status by CheckoutRequestID."""
    try:
        view = await service.get_status(db, checkout_request_id)
    except PaymentRequestNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    request = view.request
    return {
        "checkout_request_id": request.checkout_request_id,
        "merchant_request_id": request.merchant_request_id,
        "invoice_id": request.invoice_id,
        "amount": request.amount,
        "status": request.status,
        "message": view.message,
        "result_code": request.result_code,
        "result_description": request.result_description,
        "created_at": request.created_at,
        "resolved_at": request.resolved_at,
    }


@payment_router.get(
    "",
    response_model=PaymentListResponse,
    summary="List payments",
    description="Payments across invoices, newest first, filtered and paginated",
)
async def list_payments(
    invoice_id: Optional[UUID] = None,
    method: Optional[PaymentMethod] = None,
    start_date: Optional[datetime] = Query(default=None, description="Paid at or after"),
    end_date: Optional[datetime] = Query(default=None, description="Paid at or before"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """List ledger payments."""
    result = await invoices.list_payments(
        db,
        invoice_id=invoice_id,
        method=method.value if method else None,
        start=start_date,
        end=end_date,
        page=page,
        limit=limit,
    )
    return {
        "payments": result.payments,
        "total": result.total,
        "page": result.page,
        "limit": result.limit,
        "total_pages": result.total_pages,
        "has_next": result.has_next,
        "has_prev": result.has_prev,
    }


@payment_router.post(
    "/manual",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a manual payment",
    description="Record cash, bank or quoted-receipt payments against an invoice",
)
async def record_manual_payment(
    request: ManualPaymentRequest,
    reconciler: LedgerReconciler = Depends(get_ledger_reconciler),
) -> Any:
    """Record a payment taken outside the STK push flow."""
    try:
        payment = await reconciler.record_manual_payment(
            invoice_id=request.invoice_id,
            amount=request.amount,
            method=request.method,
            reference=request.reference,
        )

    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    except DuplicateReceiptError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    except LedgerError as e:
        logger.warning("api_manual_payment_rejected", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return payment


@webhook_router.post(
    "/mpesa/stk-callback",
    response_model=CallbackAcknowledgement,
    summary="M-Pesa STK push callback",
    description="Receives STK push results; always acknowledged",
)
async def mpesa_stk_callback(
    request: Request,
    processor: CallbackProcessor = Depends(get_callback_processor),
) -> Dict[str, Any]:
    """
    Handle an STK push result notification.

    Every delivery is acknowledged so the provider does not retry;
    problems are recorded in the callback audit trail instead.
    """
    body = await request.body()
    try:
        payload: Any = await request.json()
    except ValueError:
        payload = {"raw": body.decode("utf-8", errors="replace")}

    outcome = await processor.handle(payload)
    logger.info(
        "api_stk_callback_handled",
        checkout_request_id=outcome.checkout_request_id,
        outcome=outcome.outcome,
        event_id=outcome.event_id,
    )
    return ACKNOWLEDGEMENT


@invoice_router.post(
    "",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an invoice",
)
async def create_invoice(
    request: CreateInvoiceRequest,
    db: AsyncSession = Depends(get_db),
) -> Any:
    """Raise a new invoice."""
    invoice = await invoices.create_invoice(db, request.total_amount, request.description)
    return await invoices.get_invoice(db, invoice.id)


@invoice_router.get(
    "/summary",
    response_model=FinancialSummaryResponse,
    summary="Financial summary",
    description="Totals billed, collected and outstanding",
)
async def get_financial_summary(db: AsyncSession = Depends(get_db)) -> Any:
    """Ledger-wide totals."""
    return await invoices.financial_summary(db)


@invoice_router.get(
    "/export",
    response_class=Response,
    summary="Export invoices as CSV",
)
async def export_invoices(db: AsyncSession = Depends(get_db)) -> Response:
    """Download every invoice with its paid amount, balance and status."""
    content = await invoices.export_invoices_csv(db)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="invoices.csv"'},
    )


@invoice_router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get an invoice",
)
async def get_invoice(invoice_id: UUID, db: AsyncSession = Depends(get_db)) -> Any:
    """Get an invoice with its payments."""
    try:
        return await invoices.get_invoice(db, invoice_id)
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@admin_router.post(
    "/expire-stale",
    response_model=ExpirySweepResponse,
    summary="Expire stale STK pushes",
    description="Run one expiry sweep now",
)
async def expire_stale(sweeper: ExpirySweeper = Depends(get_expiry_sweeper)) -> Dict[str, Any]:
    """Run the expiry sweep once."""
    expired = await sweeper.sweep()
    logger.info("api_expiry_sweep_completed", expired=expired)
    return {"expired": expired}


@admin_router.post(
    "/callbacks/{event_id}/replay",
    response_model=CallbackReplayResponse,
    summary="Replay a stored callback",
    description="Reprocess the raw payload of a callback audit event",
)
async def replay_callback(
    event_id: int,
    processor: CallbackProcessor = Depends(get_callback_processor),
) -> Dict[str, Any]:
    """Replay a callback whose processing failed."""
    try:
        outcome = await processor.replay(event_id)
    except CallbackEventNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return {
        "outcome": outcome.outcome,
        "checkout_request_id": outcome.checkout_request_id,
        "event_id": outcome.event_id,
        "message": outcome.message,
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
