"""Core payment request and ledger logic."""
from .callback_processor import CallbackOutcome, CallbackProcessor
from .expiry import ExpirySweeper
from .ledger import (
    DuplicateReceiptError,
    InvoiceNotFoundError,
    LedgerError,
    LedgerReconciler,
)
from .locks import KeyedLock
from .payment_requests import InvalidTransitionError, PaymentRequestStore
from .stk_push import StkPushService

__all__ = [
    "CallbackOutcome",
    "CallbackProcessor",
    "DuplicateReceiptError",
    "ExpirySweeper",
    "InvalidTransitionError",
    "InvoiceNotFoundError",
    "KeyedLock",
    "LedgerError",
    "LedgerReconciler",
    "PaymentRequestStore",
    "StkPushService",
]
