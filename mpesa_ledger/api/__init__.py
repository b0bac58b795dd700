"""FastAPI application and routes."""
from .main import app
from .schemas import (
    InvoiceResponse,
    ManualPaymentRequest,
    PaymentRequestStatusResponse,
    StkPushInitiatedResponse,
    StkPushRequest,
)

__all__ = [
    "app",
    "InvoiceResponse",
    "ManualPaymentRequest",
    "PaymentRequestStatusResponse",
    "StkPushInitiatedResponse",
    "StkPushRequest",
]
