"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mpesa_ledger.database.models import PaymentMethod


class StkPushRequest(BaseModel):
    """Request schema for prompting a payer to pay an invoice."""

    invoice_id: UUID = Field(..., description="Invoice being paid")
    phone_number: str = Field(..., description="Payer phone (07XX..., +2547XX... or 2547XX...)")
    amount: Decimal = Field(..., description="Amount to request; sent rounded up to whole shillings")
    description: Optional[str] = Field(
        default=None, description="Transaction description (first 13 characters are sent)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "invoice_id": "123e4567-e89b-12d3-a456-426614174000",
                    "phone_number": "0712345678",
                    "amount": "5000",
                    "description": "Term 1 fees",
                }
            ]
        }
    }


class StkPushInitiatedResponse(BaseModel):
    """Response schema for an accepted STK push."""

    checkout_request_id: str = Field(..., description="Provider CheckoutRequestID, used for polling")
    merchant_request_id: str = Field(..., description="Provider MerchantRequestID")
    invoice_id: UUID = Field(..., description="Invoice being paid")
    phone_number: str = Field(..., description="Normalized payer phone")
    amount: Decimal = Field(..., description="Requested amount")
    status: str = Field(..., description="Request status (SENT)")
    message: str = Field(..., description="Message for the payer")


class PaymentRequestStatusResponse(BaseModel):
    """Response schema for STK push status polling."""

    checkout_request_id: str = Field(..., description="Provider CheckoutRequestID")
    merchant_request_id: str = Field(..., description="Provider MerchantRequestID")
    invoice_id: UUID = Field(..., description="Invoice being paid")
    amount: Decimal = Field(..., description="Requested amount")
    status: str = Field(..., description="SENT, CONFIRMED, FAILED or EXPIRED")
    message: str = Field(..., description="Message for the payer")
    result_code: Optional[int] = Field(default=None, description="Provider result code")
    result_description: Optional[str] = Field(default=None, description="Provider result text")
    created_at: datetime = Field(..., description="When the prompt was sent")
    resolved_at: Optional[datetime] = Field(default=None, description="When it reached a final state")


class ManualPaymentRequest(BaseModel):
    """Request schema for a payment received outside the STK push flow."""

    invoice_id: UUID = Field(..., description="Invoice being paid")
    amount: Decimal = Field(..., gt=0, description="Amount received")
    method: PaymentMethod = Field(..., description="How the money was received")
    reference: Optional[str] = Field(
        default=None, max_length=64, description="Receipt or transaction reference"
    )

    @field_validator("reference")
    @classmethod
    def blank_reference_is_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat an empty reference as no reference."""
        if v is None:
            return None
        return v.strip() or None


class PaymentResponse(BaseModel):
    """Response schema for a ledger payment."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Payment ID")
    invoice_id: UUID = Field(..., description="Invoice the payment was applied to")
    payment_request_id: Optional[UUID] = Field(default=None, description="Originating STK push")
    amount: Decimal = Field(..., description="Amount paid")
    method: str = Field(..., description="Payment method")
    external_receipt_ref: Optional[str] = Field(default=None, description="Receipt reference")
    payer_phone: Optional[str] = Field(default=None, description="Payer phone, if known")
    status: str = Field(..., description="Payment status")
    paid_at: datetime = Field(..., description="When the payment was made")


class PaymentListResponse(BaseModel):
    """Response schema for a page of payments."""

    payments: List[PaymentResponse] = Field(..., description="Payments, newest first")
    total: int = Field(..., description="Payments matching the filters")
    page: int = Field(..., description="Current page")
    limit: int = Field(..., description="Page size")
    total_pages: int = Field(..., description="Number of pages")
    has_next: bool = Field(..., description="Whether a later page exists")
    has_prev: bool = Field(..., description="Whether an earlier page exists")


class CreateInvoiceRequest(BaseModel):
    """Request schema for raising an invoice."""

    total_amount: Decimal = Field(..., ge=0, description="Amount billed")
    description: Optional[str] = Field(default=None, max_length=255, description="What is billed")


class InvoiceResponse(BaseModel):
    """Response schema for an invoice and its payments."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Invoice ID")
    invoice_no: str = Field(..., description="Human invoice number, used as account reference")
    description: Optional[str] = Field(default=None, description="What is billed")
    total_amount: Decimal = Field(..., description="Amount billed")
    paid_amount: Decimal = Field(..., description="Amount paid so far")
    balance: Decimal = Field(..., description="Outstanding amount, never negative")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last change timestamp")
    payments: List[PaymentResponse] = Field(default_factory=list, description="Payments, oldest first")


class MethodTotalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    method: str
    count: int
    amount: Decimal


class FinancialSummaryResponse(BaseModel):
    """Response schema for ledger totals."""

    model_config = ConfigDict(from_attributes=True)

    invoice_count: int = Field(..., description="Number of invoices")
    total_billed: Decimal = Field(..., description="Sum of invoice totals")
    total_collected: Decimal = Field(..., description="Sum of paid amounts")
    total_outstanding: Decimal = Field(..., description="Sum of balances")
    payment_count: int = Field(..., description="Number of payments")
    total_payments: Decimal = Field(..., description="Sum of payment amounts")
    by_method: List[MethodTotalResponse] = Field(..., description="Payments per method")


class CallbackAcknowledgement(BaseModel):
    """Acknowledgement returned to the provider for every callback."""

    ResultCode: int = Field(default=0, description="Always 0")
    ResultDesc: str = Field(default="Accepted", description="Always 'Accepted'")


class CallbackReplayResponse(BaseModel):
    """Response schema for replaying a stored callback."""

    outcome: str = Field(..., description="Processing outcome of the replay")
    checkout_request_id: Optional[str] = Field(default=None, description="Provider CheckoutRequestID")
    event_id: Optional[int] = Field(default=None, description="Audit event written for the replay")
    message: Optional[str] = Field(default=None, description="Error or provider message")


class ExpirySweepResponse(BaseModel):
    """Response schema for a manual expiry sweep."""

    expired: int = Field(..., description="Number of requests expired")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
