"""SQLAlchemy database models for STK push requests and the invoice ledger."""
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER primary keys
AutoIncrementId = BigInteger().with_variant(Integer, "sqlite")
JsonDocument = JSON().with_variant(JSONB, "postgresql")
Money = Numeric(12, 2)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentRequestStatus(str, enum.Enum):
    """Lifecycle of an STK push request."""

    INITIATED = "INITIATED"
    SENT = "SENT"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        PaymentRequestStatus.CONFIRMED,
        PaymentRequestStatus.FAILED,
        PaymentRequestStatus.EXPIRED,
    }
)

# target states reachable from each source state
ALLOWED_TRANSITIONS = {
    PaymentRequestStatus.INITIATED: frozenset({PaymentRequestStatus.SENT}),
    PaymentRequestStatus.SENT: TERMINAL_STATUSES,
}


class PaymentMethod(str, enum.Enum):
    """How money reached an invoice."""

    MPESA = "MPESA"
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHEQUE = "CHEQUE"


class Invoice(Base):
    """
    Invoice ledger row.

    Owned by billing; this service only ever increases ``paid_amount``
    through :meth:`apply_payment`, which keeps ``balance`` derived.
    """

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_no: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    payments: Mapped[list["Payment"]] = relationship(
        back_populates="invoice", order_by="Payment.paid_at"
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="non_negative_total"),
        CheckConstraint("paid_amount >= 0", name="non_negative_paid"),
        CheckConstraint("balance >= 0", name="non_negative_balance"),
    )

    @staticmethod
    def derive_balance(total_amount: Decimal, paid_amount: Decimal) -> Decimal:
        """Outstanding amount, floored at zero for overpayments."""
        return max(Decimal("0"), total_amount - paid_amount)

    def apply_payment(self, amount: Decimal) -> None:
        """Increase paid_amount by ``amount`` and recompute the balance."""
        if amount <= 0:
            raise ValueError("Payment amount must be positive")
        self.paid_amount = (self.paid_amount or Decimal("0")) + amount
        self.balance = self.derive_balance(self.total_amount, self.paid_amount)

    def __repr__(self) -> str:
        """String representation of Invoice."""
        return (
            f"<Invoice(id={self.id}, no={self.invoice_no}, total={self.total_amount}, "
            f"paid={self.paid_amount}, balance={self.balance})>"
        )


class PaymentRequest(Base):
    """
    STK push request table.

    One row per prompt sent to a payer's phone, keyed by the provider's
    CheckoutRequestID. Rows are never deleted; they back callback
    idempotency and the status poll.
    """

    __tablename__ = "payment_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    checkout_request_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    merchant_request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id"), nullable=False, index=True
    )
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    account_reference: Mapped[str] = mapped_column(String(12), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(13), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_request_amount"),
        CheckConstraint(
            "status IN ('INITIATED', 'SENT', 'CONFIRMED', 'FAILED', 'EXPIRED')",
            name="valid_request_status",
        ),
        Index("idx_payment_requests_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return PaymentRequestStatus(self.status).is_terminal

    def __repr__(self) -> str:
        """String representation of PaymentRequest."""
        return (
            f"<PaymentRequest(checkout_request_id={self.checkout_request_id}, "
            f"invoice_id={self.invoice_id}, amount={self.amount}, status={self.status})>"
        )


class Payment(Base):
    """
    Payments applied to invoices.

    Immutable once written; corrections are new rows. At most one payment
    exists per payment request and per provider receipt.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id"), nullable=False, index=True
    )
    payment_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("payment_requests.id"), unique=True, nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    external_receipt_ref: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )
    payer_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    provider_transaction_date: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="COMPLETED")
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    invoice: Mapped[Invoice] = relationship(back_populates="payments")

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_payment_amount"),
        CheckConstraint(
            "method IN ('MPESA', 'CASH', 'BANK_TRANSFER', 'CHEQUE')",
            name="valid_payment_method",
        ),
        Index("idx_payments_invoice_paid_at", "invoice_id", "paid_at"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, invoice_id={self.invoice_id}, amount={self.amount}, "
            f"method={self.method}, receipt={self.external_receipt_ref})>"
        )


@event.listens_for(Payment, "before_update")
def _reject_payment_update(mapper: Any, connection: Any, target: Payment) -> None:
    raise ValueError(f"Payment {target.id} is immutable; record a new payment instead")


class CallbackEvent(Base):
    """
    Audit trail of inbound provider callbacks.

    Every delivery is stored with its raw payload and outcome, including
    ones that were rejected, so a swallowed error can still be followed up.
    """

    __tablename__ = "callback_events"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonDocument, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    def __repr__(self) -> str:
        """String representation of CallbackEvent."""
        return (
            f"<CallbackEvent(id={self.id}, checkout_request_id={self.checkout_request_id}, "
            f"outcome={self.outcome})>"
        )
