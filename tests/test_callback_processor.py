"""
Tests for callback processing: idempotence, terminal states and the ledger hand-off.
"""
from decimal import Decimal
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_ledger.core.callback_processor import (
    CallbackEventNotFoundError,
    CallbackProcessor,
)
from mpesa_ledger.core.ledger import LedgerError
from mpesa_ledger.core.payment_requests import PaymentRequestStore
from mpesa_ledger.database.models import CallbackEvent, Invoice, Payment, PaymentRequest
from mpesa_ledger.integrations.stk_callback import (
    InvalidCallbackFormatError,
    UnknownCallbackError,
)


async def payment_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(Payment.id)))).scalar_one()


async def reload(db: AsyncSession, obj: Any) -> Any:
    await db.refresh(obj)
    return obj


class TestCallbackProcessor:
    """Test suite for CallbackProcessor."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_confirms_and_applies_payment(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        invoice = await invoice_factory("12000")
        request = await sent_request_factory(invoice, "5000")
        processor = CallbackProcessor(session_factory=session_factory)

        outcome = await processor.process(
            callback_payload(request.checkout_request_id, amount=5000)
        )

        assert outcome.outcome == "confirmed"
        assert outcome.payment_id is not None

        request = await reload(test_db, request)
        assert request.status == "CONFIRMED"
        assert request.result_code == 0
        assert request.resolved_at is not None

        invoice = await reload(test_db, invoice)
        assert invoice.paid_amount == Decimal("5000")
        assert invoice.balance == Decimal("7000")

        payment = await test_db.get(Payment, outcome.payment_id)
        assert payment.method == "MPESA"
        assert payment.external_receipt_ref == "NLJ7RT61SV"
        assert payment.payment_request_id == request.id
        assert payment.payer_phone == "254712345678"
        assert payment.provider_transaction_date == "20191219102115"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_a_no_op(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        """Applying the same callback twice equals applying it once."""
        invoice = await invoice_factory("12000")
        request = await sent_request_factory(invoice, "5000")
        processor = CallbackProcessor(session_factory=session_factory)
        payload = callback_payload(request.checkout_request_id, amount=5000)

        first = await processor.process(payload)
        second = await processor.process(payload)

        assert first.outcome == "confirmed"
        assert second.outcome == "duplicate"
        assert await payment_count(test_db) == 1

        invoice = await reload(test_db, invoice)
        assert invoice.paid_amount == Decimal("5000")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_result_marks_failed(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        invoice = await invoice_factory("12000")
        request = await sent_request_factory(invoice, "5000")
        processor = CallbackProcessor(session_factory=session_factory)

        outcome = await processor.process(
            callback_payload(
                request.checkout_request_id,
                result_code=1032,
                result_desc="Request cancelled by user",
            )
        )

        assert outcome.outcome == "failed"
        request = await reload(test_db, request)
        assert request.status == "FAILED"
        assert request.result_code == 1032
        assert request.result_description == "Request cancelled by user"

        invoice = await reload(test_db, invoice)
        assert invoice.paid_amount == Decimal("0")
        assert await payment_count(test_db) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_state_never_changes(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        """A failure arriving after a confirmation does not undo it."""
        invoice = await invoice_factory("12000")
        request = await sent_request_factory(invoice, "5000")
        processor = CallbackProcessor(session_factory=session_factory)

        await processor.process(callback_payload(request.checkout_request_id))
        outcome = await processor.process(
            callback_payload(request.checkout_request_id, result_code=1)
        )

        assert outcome.outcome == "duplicate"
        request = await reload(test_db, request)
        assert request.status == "CONFIRMED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_checkout_request(
        self, session_factory: Any, callback_payload: Callable[..., Any]
    ) -> None:
        processor = CallbackProcessor(session_factory=session_factory)

        with pytest.raises(UnknownCallbackError):
            await processor.process(callback_payload("ws_CO_does_not_exist"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_payload(self, session_factory: Any) -> None:
        processor = CallbackProcessor(session_factory=session_factory)

        with pytest.raises(InvalidCallbackFormatError):
            await processor.process({"unexpected": True})


class TestCallbackBoundary:
    """Test suite for handle() and replay()."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handle_never_raises_and_audits(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        callback_payload: Callable[..., Any],
    ) -> None:
        processor = CallbackProcessor(session_factory=session_factory)

        unknown = await processor.handle(callback_payload("ws_CO_missing"))
        invalid = await processor.handle({"Body": "garbage"})

        assert unknown.outcome == "unknown_request"
        assert invalid.outcome == "invalid_format"

        events = (
            await test_db.execute(select(CallbackEvent).order_by(CallbackEvent.id))
        ).scalars().all()
        assert [e.outcome for e in events] == ["unknown_request", "invalid_format"]
        assert events[0].checkout_request_id == "ws_CO_missing"
        assert events[0].result_code == 0
        assert events[1].payload == {"Body": "garbage"}
        assert unknown.event_id == events[0].id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ledger_failure_leaves_request_sent(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        """If the ledger hand-off fails, nothing commits and the request stays SENT."""
        invoice = await invoice_factory("12000")
        request = await sent_request_factory(invoice, "5000")
        processor = CallbackProcessor(session_factory=session_factory)

        with patch.object(
            processor.reconciler,
            "apply_confirmed_payment",
            AsyncMock(side_effect=LedgerError("ledger unavailable")),
        ):
            outcome = await processor.handle(callback_payload(request.checkout_request_id))

        assert outcome.outcome == "error"
        assert "ledger unavailable" in outcome.message

        request = await reload(test_db, request)
        assert request.status == "SENT"
        invoice = await reload(test_db, invoice)
        assert invoice.paid_amount == Decimal("0")

        event = await test_db.get(CallbackEvent, outcome.event_id)
        assert event.outcome == "error"
        assert "ledger unavailable" in event.error_message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_reprocesses_stored_payload(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        invoice = await invoice_factory("12000")
        request = await sent_request_factory(invoice, "5000")
        processor = CallbackProcessor(session_factory=session_factory)

        with patch.object(
            processor.reconciler,
            "apply_confirmed_payment",
            AsyncMock(side_effect=LedgerError("ledger unavailable")),
        ):
            failed = await processor.handle(callback_payload(request.checkout_request_id))

        replayed = await processor.replay(failed.event_id)

        assert replayed.outcome == "confirmed"
        assert replayed.event_id != failed.event_id
        request = await reload(test_db, request)
        assert request.status == "CONFIRMED"
        invoice = await reload(test_db, invoice)
        assert invoice.balance == Decimal("7000")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_unknown_event(self, session_factory: Any) -> None:
        processor = CallbackProcessor(session_factory=session_factory)

        with pytest.raises(CallbackEventNotFoundError):
            await processor.replay(999)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reused_receipt_is_rejected(
        self,
        test_db: AsyncSession,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        """A receipt already on the ledger is not applied a second time."""
        invoice = await invoice_factory("12000")
        first = await sent_request_factory(invoice, "5000")
        second = await sent_request_factory(invoice, "5000")
        processor = CallbackProcessor(session_factory=session_factory)

        await processor.handle(callback_payload(first.checkout_request_id, receipt="QAB1CD2EF3"))
        outcome = await processor.handle(
            callback_payload(second.checkout_request_id, receipt="QAB1CD2EF3")
        )

        assert outcome.outcome == "error"
        assert "QAB1CD2EF3" in outcome.message
        assert await payment_count(test_db) == 1

        second = await reload(test_db, second)
        assert second.status == "SENT"
        invoice = await reload(test_db, invoice)
        assert invoice.paid_amount == Decimal("5000")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_payment_request_lookup_uses_checkout_id_only(
    test_db: AsyncSession,
    session_factory: Any,
    invoice_factory: Callable[..., Any],
    sent_request_factory: Callable[..., Any],
    callback_payload: Callable[..., Any],
) -> None:
    """The MerchantRequestID in the callback plays no part in correlation."""
    invoice = await invoice_factory("1000")
    request = await sent_request_factory(invoice, "1000")
    processor = CallbackProcessor(session_factory=session_factory)

    outcome = await processor.process(
        callback_payload(
            request.checkout_request_id, amount=1000, merchant_request_id="unrelated-id"
        )
    )

    assert outcome.outcome == "confirmed"
    stored = await test_db.get(PaymentRequest, request.id)
    await test_db.refresh(stored)
    assert stored.status == "CONFIRMED"
    invoice = await test_db.get(Invoice, invoice.id)
    await test_db.refresh(invoice)
    assert invoice.balance == Decimal("0")


class TestRequestRowLock:
    """The re-read before resolving holds the request row."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_locked_lookup_uses_select_for_update(self) -> None:
        db = AsyncMock()
        db.execute.return_value = MagicMock(scalar_one_or_none=MagicMock(return_value=None))
        store = PaymentRequestStore()

        await store.get(db, "ws_CO_1", for_update=True)
        locked = db.execute.call_args.args[0]
        await store.get(db, "ws_CO_1")
        plain = db.execute.call_args.args[0]

        dialect = postgresql.dialect()
        assert "FOR UPDATE" in str(locked.compile(dialect=dialect))
        assert "FOR UPDATE" not in str(plain.compile(dialect=dialect))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolution_rereads_request_under_row_lock(
        self,
        session_factory: Any,
        invoice_factory: Callable[..., Any],
        sent_request_factory: Callable[..., Any],
        callback_payload: Callable[..., Any],
    ) -> None:
        invoice = await invoice_factory("12000")
        request = await sent_request_factory(invoice, "5000")
        processor = CallbackProcessor(session_factory=session_factory)

        with patch.object(
            processor.store, "get", AsyncMock(wraps=processor.store.get)
        ) as get:
            outcome = await processor.process(
                callback_payload(request.checkout_request_id, amount=5000)
            )

        assert outcome.outcome == "confirmed"
        assert get.await_args_list[-1].kwargs == {"for_update": True}
