"""
Tests for payment request lifecycle transitions and expiry.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_ledger.core.callback_processor import CallbackProcessor
from mpesa_ledger.core.expiry import ExpirySweeper
from mpesa_ledger.core.payment_requests import InvalidTransitionError, PaymentRequestStore
from mpesa_ledger.database.models import PaymentRequestStatus


class TestPaymentRequestStore:
    """Test suite for compare-and-set transitions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transition_happens_once(
        self,
        test_db: AsyncSession,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
    ) -> None:
        invoice = await invoice_factory("1000")
        request = await sent_request_factory(invoice, "1000")
        store = PaymentRequestStore()

        assert await store.transition(
            test_db, request.checkout_request_id, PaymentRequestStatus.FAILED, result_code=1
        )
        assert not await store.transition(
            test_db, request.checkout_request_id, PaymentRequestStatus.CONFIRMED, result_code=0
        )
        await test_db.commit()

        await test_db.refresh(request)
        assert request.status == "FAILED"
        assert request.result_code == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transition_to_initiated_is_invalid(self, test_db: AsyncSession) -> None:
        with pytest.raises(InvalidTransitionError):
            await PaymentRequestStore().transition(
                test_db, "ws_CO_any", PaymentRequestStatus.INITIATED
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_request_is_sent(
        self,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
    ) -> None:
        invoice = await invoice_factory("1000")
        request = await sent_request_factory(invoice, "1000")

        assert request.status == "SENT"
        assert request.resolved_at is None
        assert not request.is_terminal


class TestExpirySweeper:
    """Test suite for ExpirySweeper."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expires_only_stale_sent_requests(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
    ) -> None:
        now = datetime.now(timezone.utc)
        invoice = await invoice_factory("1000")
        stale = await sent_request_factory(invoice, "500", created_at=now - timedelta(seconds=200))
        fresh = await sent_request_factory(invoice, "500", created_at=now - timedelta(seconds=30))
        sweeper = ExpirySweeper(session_factory=session_factory, timeout=timedelta(seconds=180))

        assert await sweeper.sweep(now=now) == 1

        await test_db.refresh(stale)
        await test_db.refresh(fresh)
        assert stale.status == "EXPIRED"
        assert stale.resolved_at is not None
        assert fresh.status == "SENT"

        assert await sweeper.sweep(now=now) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolved_requests_are_not_expired(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        now = datetime.now(timezone.utc)
        invoice = await invoice_factory("1000")
        request = await sent_request_factory(
            invoice, "1000", created_at=now - timedelta(seconds=600)
        )
        await CallbackProcessor(session_factory=session_factory).process(
            callback_payload(request.checkout_request_id, amount=1000)
        )

        sweeper = ExpirySweeper(session_factory=session_factory, timeout=timedelta(seconds=180))
        assert await sweeper.sweep(now=now) == 0

        await test_db.refresh(request)
        assert request.status == "CONFIRMED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_callback_after_expiry_is_ignored(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        """A success arriving after expiry changes neither the request nor the invoice."""
        now = datetime.now(timezone.utc)
        invoice = await invoice_factory("12000")
        request = await sent_request_factory(
            invoice, "5000", created_at=now - timedelta(seconds=181)
        )
        sweeper = ExpirySweeper(session_factory=session_factory, timeout=timedelta(seconds=180))
        await sweeper.sweep(now=now)

        outcome = await CallbackProcessor(session_factory=session_factory).handle(
            callback_payload(request.checkout_request_id, amount=5000)
        )

        assert outcome.outcome == "duplicate"
        await test_db.refresh(request)
        assert request.status == "EXPIRED"
        await test_db.refresh(invoice)
        assert invoice.paid_amount == Decimal("0")
        assert invoice.balance == Decimal("12000")

    @pytest.mark.unit
    def test_default_timeout_from_settings(self, settings: Any) -> None:
        sweeper = ExpirySweeper()
        assert sweeper.timeout == timedelta(seconds=settings.stk_push_expiry_seconds)
        assert sweeper.timeout == timedelta(seconds=180)
