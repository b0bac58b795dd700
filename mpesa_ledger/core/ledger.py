"""
Ledger reconciler.

Applies confirmed payments to invoices. Each application is one unit of work:
lock the invoice row, raise paid_amount, recompute the balance (floored at
zero, overpayment is accepted) and insert the immutable Payment row. Callers
hold :meth:`LedgerReconciler.invoice_lock` around the whole transaction so
that confirmations for the same invoice never race to the row.
"""
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_ledger.core.locks import KeyedLock
from mpesa_ledger.database.connection import get_session_factory
from mpesa_ledger.database.models import Invoice, Payment, PaymentMethod, PaymentRequest
from mpesa_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# shared by every reconciler in the process
_invoice_locks = KeyedLock()


class LedgerError(Exception):
    """Raised when a payment cannot be applied to its invoice."""

    pass


class InvoiceNotFoundError(LedgerError):
    """Raised when the target invoice does not exist."""

    pass


class DuplicateReceiptError(LedgerError):
    """Raised when a provider receipt has already been recorded against an invoice."""

    pass


class LedgerReconciler:
    """Applies payments to invoices under per-invoice mutual exclusion."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        locks: Optional[KeyedLock] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            session_factory: Optional session factory for standalone operations
            locks: Optional lock registry (defaults to the process-wide one)
        """
        self._session_factory = session_factory
        self.locks = locks or _invoice_locks

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @asynccontextmanager
    async def invoice_lock(self, invoice_id: uuid.UUID) -> AsyncIterator[None]:
        """Serialize ledger work on one invoice within this process."""
        async with self.locks.hold(invoice_id):
            yield

    async def _lock_invoice_row(self, db: AsyncSession, invoice_id: uuid.UUID) -> Invoice:
        stmt = (
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    async def _ensure_receipt_unused(self, db: AsyncSession, receipt_ref: str) -> None:
        stmt = select(Payment.id).where(Payment.external_receipt_ref == receipt_ref)
        existing = (await db.execute(stmt)).scalar_one_or_none()
        if existing is not None:
            raise DuplicateReceiptError(
                f"Receipt {receipt_ref} is already recorded as payment {existing}"
            )

    async def _apply(
        self,
        db: AsyncSession,
        invoice_id: uuid.UUID,
        amount: Decimal,
        method: PaymentMethod,
        *,
        payment_request_id: Optional[uuid.UUID] = None,
        receipt_ref: Optional[str] = None,
        payer_phone: Optional[str] = None,
        provider_transaction_date: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Payment:
        if amount <= 0:
            raise LedgerError(f"Cannot apply non-positive amount {amount}")

        invoice = await self._lock_invoice_row(db, invoice_id)
        if receipt_ref:
            await self._ensure_receipt_unused(db, receipt_ref)

        now = datetime.now(timezone.utc)
        paid_before = invoice.paid_amount
        invoice.apply_payment(amount)
        invoice.updated_at = now

        payment = Payment(
            id=uuid.uuid4(),
            invoice_id=invoice.id,
            payment_request_id=payment_request_id,
            amount=amount,
            method=method.value,
            external_receipt_ref=receipt_ref,
            payer_phone=payer_phone,
            provider_transaction_date=provider_transaction_date,
            status="COMPLETED",
            paid_at=paid_at or now,
            created_at=now,
        )
        db.add(payment)

        try:
            await db.flush()
        except IntegrityError as e:
            raise LedgerError(f"Ledger write rejected for invoice {invoice_id}: {e.orig}") from e

        overpaid = invoice.paid_amount > invoice.total_amount
        metrics.record_ledger_payment(method.value, float(amount), overpaid)
        logger.info(
            "ledger_payment_applied",
            invoice_id=str(invoice.id),
            payment_id=str(payment.id),
            method=method.value,
            amount=str(amount),
            paid_before=str(paid_before),
            paid_after=str(invoice.paid_amount),
            balance=str(invoice.balance),
            overpaid=overpaid,
        )
        return payment

    async def apply_confirmed_payment(
        self,
        db: AsyncSession,
        payment_request: PaymentRequest,
        amount: Decimal,
        receipt_ref: str,
        payer_phone: Optional[str] = None,
        provider_timestamp: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Payment:
        """
        Apply a provider-confirmed payment inside the caller's transaction.

        Args:
            db: Session whose transaction also carries the status transition
            payment_request: The confirmed request (supplies the invoice)
            amount: Amount the provider reports as paid
            receipt_ref: Provider receipt number
            payer_phone: Phone the provider reports as the payer
            provider_timestamp: Provider transaction date, as sent
            paid_at: When the payment happened (defaults to now)

        Returns:
            Payment: The new, flushed payment row

        Raises:
            InvoiceNotFoundError: If the request's invoice is gone
            DuplicateReceiptError: If the receipt is already recorded
            LedgerError: If the write is rejected
        """
        if amount != payment_request.amount:
            logger.warning(
                "confirmed_amount_differs_from_request",
                checkout_request_id=payment_request.checkout_request_id,
                requested=str(payment_request.amount),
                confirmed=str(amount),
            )
        return await self._apply(
            db,
            payment_request.invoice_id,
            amount,
            PaymentMethod.MPESA,
            payment_request_id=payment_request.id,
            receipt_ref=receipt_ref,
            payer_phone=payer_phone,
            provider_transaction_date=provider_timestamp,
            paid_at=paid_at,
        )

    async def record_manual_payment(
        self,
        invoice_id: uuid.UUID,
        amount: Decimal,
        method: PaymentMethod,
        reference: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Payment:
        """
        Record a payment taken outside the gateway (cash, bank, a quoted receipt).

        Runs in its own transaction under the invoice lock.
        """
        async with self.invoice_lock(invoice_id):
            async with self.session_factory() as db:
                try:
                    payment = await self._apply(
                        db,
                        invoice_id,
                        amount,
                        method,
                        receipt_ref=reference,
                        paid_at=paid_at,
                    )
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        return payment
