"""
STK push orchestration.

Ties an invoice to a prompt on the payer's phone: validates the request,
asks the gateway to send the prompt and records the accepted request in SENT.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_ledger.core.ledger import InvoiceNotFoundError
from mpesa_ledger.core.payment_requests import PaymentRequestStore
from mpesa_ledger.database.models import Invoice, PaymentRequest, PaymentRequestStatus
from mpesa_ledger.integrations.errors import MpesaError
from mpesa_ledger.integrations.mpesa_client import MpesaClient, validate_amount, validate_phone
from mpesa_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STATUS_MESSAGES = {
    PaymentRequestStatus.INITIATED: "Payment request initiated",
    PaymentRequestStatus.SENT: "Payment prompt sent to your phone",
    PaymentRequestStatus.CONFIRMED: "Payment received",
    PaymentRequestStatus.EXPIRED: "Payment not completed - please try again",
}


class PaymentRequestNotFoundError(Exception):
    """Raised when polling a CheckoutRequestID that was never recorded."""

    pass


@dataclass(frozen=True)
class PaymentRequestStatusView:
    """A payment request together with the message shown to the payer."""

    request: PaymentRequest
    message: str


def status_message(request: PaymentRequest) -> str:
    """User-facing message for the request's current status."""
    status = PaymentRequestStatus(request.status)
    if status == PaymentRequestStatus.FAILED:
        return f"Payment failed: {request.result_description or 'unknown reason'}"
    return STATUS_MESSAGES[status]


class StkPushService:
    """Initiates STK pushes against invoices and reports their status."""

    def __init__(
        self,
        client: Optional[MpesaClient] = None,
        store: Optional[PaymentRequestStore] = None,
    ):
        self.client = client or MpesaClient()
        self.store = store or PaymentRequestStore()

    async def initiate_payment(
        self,
        db: AsyncSession,
        invoice_id: uuid.UUID,
        phone: Any,
        amount: Any,
        description: Optional[str] = None,
    ) -> PaymentRequest:
        """
        Prompt the payer to pay towards an invoice.

        Args:
            db: Database session (committed on success)
            invoice_id: Invoice being paid
            phone: Payer phone number
            amount: Amount to request
            description: Optional transaction description

        Returns:
            PaymentRequest: The recorded request, in SENT

        Raises:
            PaymentValidationError: If amount or phone is unusable
            InvoiceNotFoundError: If the invoice does not exist
            AuthenticationError: If the provider rejects the credentials
            GatewayError: If the provider call fails
        """
        try:
            value = validate_amount(amount)
            normalized_phone = validate_phone(phone)
        except MpesaError:
            metrics.record_stk_push("invalid")
            raise

        invoice = await db.get(Invoice, invoice_id)
        if invoice is None:
            metrics.record_stk_push("invoice_not_found")
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")

        try:
            response = await self.client.initiate_payment(
                normalized_phone, value, invoice.invoice_no, description
            )
        except MpesaError as e:
            metrics.record_stk_push("gateway_error")
            logger.error(
                "stk_push_failed",
                invoice_id=str(invoice_id),
                error_type=type(e).__name__,
                error=str(e),
                error_code=e.error_code,
            )
            raise

        try:
            request = await self.store.create_sent(
                db,
                checkout_request_id=response.checkout_request_id,
                merchant_request_id=response.merchant_request_id,
                invoice_id=invoice.id,
                phone_number=response.phone_number,
                amount=value,
                account_reference=response.account_reference,
                description=response.description,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            # the prompt is already on the phone; its callback will be audited as unknown
            logger.critical(
                "stk_push_not_recorded",
                checkout_request_id=response.checkout_request_id,
                merchant_request_id=response.merchant_request_id,
                invoice_id=str(invoice_id),
            )
            raise

        metrics.record_stk_push("sent", float(value))
        logger.info(
            "stk_push_sent",
            checkout_request_id=request.checkout_request_id,
            invoice_id=str(invoice.id),
            amount=str(value),
        )
        return request

    async def get_status(
        self, db: AsyncSession, checkout_request_id: str
    ) -> PaymentRequestStatusView:
        """
        Look up a request for status polling.

        Raises:
            PaymentRequestNotFoundError: If the CheckoutRequestID is unknown
        """
        request = await self.store.get(db, checkout_request_id)
        if request is None:
            raise PaymentRequestNotFoundError(
                f"No payment request for CheckoutRequestID {checkout_request_id}"
            )
        return PaymentRequestStatusView(request=request, message=status_message(request))
