"""Database package for the M-Pesa ledger service."""
from .connection import close_db, get_db, get_engine, get_session_factory, init_db
from .models import (
    Base,
    CallbackEvent,
    Invoice,
    Payment,
    PaymentMethod,
    PaymentRequest,
    PaymentRequestStatus,
)

__all__ = [
    "Base",
    "CallbackEvent",
    "Invoice",
    "Payment",
    "PaymentMethod",
    "PaymentRequest",
    "PaymentRequestStatus",
    "close_db",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
