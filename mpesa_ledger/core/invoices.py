"""
Invoice surface used by the payment pipeline.

Billing owns invoices; this module covers only what collection needs:
raising an invoice, reading it back with its payments, listing payments,
the billed/collected/outstanding summary and a CSV export of invoices.
"""
import csv
import io
import math
import secrets
import string
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mpesa_ledger.core.ledger import InvoiceNotFoundError
from mpesa_ledger.database.models import Invoice, Payment

logger = structlog.get_logger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_uppercase
CENTS = Decimal("0.01")


def _base36(number: int) -> str:
    digits = []
    while True:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
        if number == 0:
            return "".join(reversed(digits))


def generate_invoice_number() -> str:
    """``INV-`` + millisecond clock in base 36 + four random characters."""
    timestamp = _base36(time.time_ns() // 1_000_000)
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(4))
    return f"INV-{timestamp}{suffix}"


def _money(value: Optional[Decimal]) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS)


@dataclass(frozen=True)
class MethodTotal:
    method: str
    count: int
    amount: Decimal


@dataclass(frozen=True)
class FinancialSummary:
    """Ledger-wide totals."""

    invoice_count: int
    total_billed: Decimal
    total_collected: Decimal
    total_outstanding: Decimal
    payment_count: int
    total_payments: Decimal
    by_method: List[MethodTotal] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentPage:
    """One page of payments, newest first."""

    payments: List[Payment]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


INVOICE_CSV_HEADERS = [
    "Invoice No",
    "Description",
    "Total Amount",
    "Paid Amount",
    "Balance",
    "Status",
    "Created Date",
]


def invoice_status(invoice: Invoice) -> str:
    """PAID, PARTIAL or UNPAID from the balance."""
    if invoice.balance == 0:
        return "PAID"
    if invoice.balance < invoice.total_amount:
        return "PARTIAL"
    return "UNPAID"


async def create_invoice(
    db: AsyncSession,
    total_amount: Decimal,
    description: Optional[str] = None,
) -> Invoice:
    """
    Raise a new, fully outstanding invoice.

    Raises:
        ValueError: If the total is negative
    """
    if total_amount < 0:
        raise ValueError("Invoice total cannot be negative")

    now = datetime.now(timezone.utc)
    invoice = Invoice(
        id=uuid.uuid4(),
        invoice_no=generate_invoice_number(),
        description=description,
        total_amount=total_amount,
        paid_amount=Decimal("0"),
        balance=Invoice.derive_balance(total_amount, Decimal("0")),
        created_at=now,
        updated_at=now,
    )
    db.add(invoice)
    await db.commit()

    logger.info(
        "invoice_created",
        invoice_id=str(invoice.id),
        invoice_no=invoice.invoice_no,
        total_amount=str(total_amount),
    )
    return invoice


async def get_invoice(db: AsyncSession, invoice_id: uuid.UUID) -> Invoice:
    """
    Load an invoice with its payments, oldest first.

    Raises:
        InvoiceNotFoundError: If the invoice does not exist
    """
    stmt = (
        select(Invoice)
        .where(Invoice.id == invoice_id)
        .options(selectinload(Invoice.payments))
        .execution_options(populate_existing=True)
    )
    invoice = (await db.execute(stmt)).scalar_one_or_none()
    if invoice is None:
        raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
    return invoice


async def financial_summary(db: AsyncSession) -> FinancialSummary:
    """Totals billed, collected and outstanding, plus payments per method."""
    invoice_totals = (
        await db.execute(
            select(
                func.count(Invoice.id),
                func.sum(Invoice.total_amount),
                func.sum(Invoice.paid_amount),
                func.sum(Invoice.balance),
            )
        )
    ).one()
    payment_totals = (
        await db.execute(select(func.count(Payment.id), func.sum(Payment.amount)))
    ).one()
    method_rows = (
        await db.execute(
            select(Payment.method, func.count(Payment.id), func.sum(Payment.amount))
            .group_by(Payment.method)
            .order_by(Payment.method)
        )
    ).all()

    return FinancialSummary(
        invoice_count=invoice_totals[0] or 0,
        total_billed=_money(invoice_totals[1]),
        total_collected=_money(invoice_totals[2]),
        total_outstanding=_money(invoice_totals[3]),
        payment_count=payment_totals[0] or 0,
        total_payments=_money(payment_totals[1]),
        by_method=[
            MethodTotal(method=method, count=count, amount=_money(amount))
            for method, count, amount in method_rows
        ],
    )


async def list_payments(
    db: AsyncSession,
    invoice_id: Optional[uuid.UUID] = None,
    method: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
) -> PaymentPage:
    """
    List payments across invoices, newest first.

    Args:
        invoice_id: Only payments applied to this invoice
        method: Only payments made this way (MPESA, CASH, ...)
        start: Only payments made at or after this time
        end: Only payments made at or before this time
        page: 1-based page number
        limit: Page size

    Raises:
        ValueError: If page or limit is below 1
    """
    if page < 1 or limit < 1:
        raise ValueError("page and limit must be at least 1")

    conditions = []
    if invoice_id is not None:
        conditions.append(Payment.invoice_id == invoice_id)
    if method is not None:
        conditions.append(Payment.method == method)
    if start is not None:
        conditions.append(Payment.paid_at >= start)
    if end is not None:
        conditions.append(Payment.paid_at <= end)

    total = (
        await db.execute(select(func.count(Payment.id)).where(*conditions))
    ).scalar_one()
    rows = (
        await db.execute(
            select(Payment)
            .where(*conditions)
            .order_by(Payment.paid_at.desc(), Payment.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()

    return PaymentPage(payments=list(rows), total=total, page=page, limit=limit)


async def export_invoices_csv(db: AsyncSession) -> str:
    """All invoices as CSV, newest first, every cell quoted."""
    result = await db.execute(select(Invoice).order_by(Invoice.created_at.desc()))

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(INVOICE_CSV_HEADERS)
    for invoice in result.scalars():
        writer.writerow(
            [
                invoice.invoice_no,
                invoice.description or "",
                _money(invoice.total_amount),
                _money(invoice.paid_amount),
                _money(invoice.balance),
                invoice_status(invoice),
                invoice.created_at.date().isoformat() if invoice.created_at else "",
            ]
        )
    return buffer.getvalue()
