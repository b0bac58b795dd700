"""
Payment request store.

Records STK push requests by their CheckoutRequestID and moves them through
their lifecycle. Every transition is a compare-and-set on the current status,
so two writers can never both move the same request out of SENT.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_ledger.database.models import (
    ALLOWED_TRANSITIONS,
    PaymentRequest,
    PaymentRequestStatus,
)

logger = structlog.get_logger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a status change is not part of the request lifecycle."""

    pass


def source_statuses(target: PaymentRequestStatus) -> list[str]:
    """States from which ``target`` may be entered."""
    return [
        source.value
        for source, targets in ALLOWED_TRANSITIONS.items()
        if target in targets
    ]


class PaymentRequestStore:
    """Persistence and lifecycle transitions for payment requests."""

    async def create_sent(
        self,
        db: AsyncSession,
        *,
        checkout_request_id: str,
        merchant_request_id: str,
        invoice_id: uuid.UUID,
        phone_number: str,
        amount: Decimal,
        account_reference: str,
        description: Optional[str],
        now: Optional[datetime] = None,
    ) -> PaymentRequest:
        """
        Record a request the provider has accepted.

        The INITIATED -> SENT step happens before the row is visible, since
        the provider only issues the identifiers once it has accepted.
        """
        now = now or datetime.now(timezone.utc)
        request = PaymentRequest(
            id=uuid.uuid4(),
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            invoice_id=invoice_id,
            phone_number=phone_number,
            amount=amount,
            account_reference=account_reference,
            description=description,
            status=PaymentRequestStatus.INITIATED.value,
            created_at=now,
            updated_at=now,
        )
        self._advance_in_memory(request, PaymentRequestStatus.SENT)
        db.add(request)
        await db.flush()

        logger.info(
            "payment_request_recorded",
            checkout_request_id=checkout_request_id,
            invoice_id=str(invoice_id),
            amount=str(amount),
        )
        return request

    async def get(
        self, db: AsyncSession, checkout_request_id: str, for_update: bool = False
    ) -> Optional[PaymentRequest]:
        """
        Look up a request by CheckoutRequestID.

        With ``for_update`` the row stays locked until the transaction ends,
        so a concurrent delivery in another process waits for this one.
        """
        stmt = select(PaymentRequest).where(
            PaymentRequest.checkout_request_id == checkout_request_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        db: AsyncSession,
        checkout_request_id: str,
        target: PaymentRequestStatus,
        *,
        result_code: Optional[int] = None,
        result_description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Move a request to ``target`` if it is still in an allowed source state.

        Returns:
            bool: True if this call made the change, False if the request was
            already past the source state (or does not exist)
        """
        sources = source_statuses(target)
        if not sources:
            raise InvalidTransitionError(f"No transition leads to {target.value}")

        now = now or datetime.now(timezone.utc)
        values: Dict[str, Any] = {"status": target.value, "updated_at": now}
        if target.is_terminal:
            values["resolved_at"] = now
        if result_code is not None:
            values["result_code"] = result_code
        if result_description is not None:
            values["result_description"] = result_description

        stmt = (
            update(PaymentRequest)
            .where(
                PaymentRequest.checkout_request_id == checkout_request_id,
                PaymentRequest.status.in_(sources),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        changed = result.rowcount == 1

        logger.info(
            "payment_request_transition",
            checkout_request_id=checkout_request_id,
            target=target.value,
            applied=changed,
        )
        return changed

    async def expire_stale(
        self, db: AsyncSession, older_than: timedelta, now: Optional[datetime] = None
    ) -> int:
        """Expire every SENT request created at or before ``now - older_than``."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - older_than
        stmt = (
            update(PaymentRequest)
            .where(
                PaymentRequest.status.in_(source_statuses(PaymentRequestStatus.EXPIRED)),
                PaymentRequest.created_at <= cutoff,
            )
            .values(
                status=PaymentRequestStatus.EXPIRED.value,
                resolved_at=now,
                updated_at=now,
                result_description="No callback received before the prompt expired",
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    def _advance_in_memory(request: PaymentRequest, target: PaymentRequestStatus) -> None:
        current = PaymentRequestStatus(request.status)
        if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(f"Cannot move from {current.value} to {target.value}")
        request.status = target.value
