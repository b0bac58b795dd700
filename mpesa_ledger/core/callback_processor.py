"""
STK push callback processing.

Correlates a provider result notification with its payment request by
CheckoutRequestID and resolves the request exactly once. A confirmed result
is handed to the ledger before the status change, and both commit in the same
transaction; a failed ledger hand-off leaves the request SENT.
"""
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_ledger.core.ledger import LedgerError, LedgerReconciler
from mpesa_ledger.core.payment_requests import PaymentRequestStore
from mpesa_ledger.database.connection import get_session_factory
from mpesa_ledger.database.models import CallbackEvent, PaymentRequestStatus
from mpesa_ledger.integrations.stk_callback import (
    CallbackError,
    InvalidCallbackFormatError,
    StkCallback,
    UnknownCallbackError,
    parse_stk_callback,
)
from mpesa_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

OUTCOME_CONFIRMED = "confirmed"
OUTCOME_FAILED = "failed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_UNKNOWN_REQUEST = "unknown_request"
OUTCOME_INVALID_FORMAT = "invalid_format"
OUTCOME_ERROR = "error"

ACKNOWLEDGEMENT = {"ResultCode": 0, "ResultDesc": "Accepted"}


class CallbackEventNotFoundError(CallbackError):
    """Raised when replaying an audit event that does not exist."""

    pass


@dataclass(frozen=True)
class CallbackOutcome:
    """Result of handling one callback delivery."""

    outcome: str
    checkout_request_id: Optional[str] = None
    payment_id: Optional[uuid.UUID] = None
    message: Optional[str] = None
    event_id: Optional[int] = None

    @property
    def applied(self) -> bool:
        """Whether this delivery changed the request's state."""
        return self.outcome in (OUTCOME_CONFIRMED, OUTCOME_FAILED)


class CallbackProcessor:
    """
    Resolves payment requests from provider callbacks.

    Features:
    - Idempotent: a request already in a terminal state is left untouched
    - Ledger first, then a compare-and-set status change, in one transaction
    - Every delivery is written to the callback audit trail
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[PaymentRequestStore] = None,
        reconciler: Optional[LedgerReconciler] = None,
    ):
        """
        Initialize the processor.

        Args:
            session_factory: Optional session factory (defaults to the global one)
            store: Optional payment request store
            reconciler: Optional ledger reconciler
        """
        self._session_factory = session_factory
        self.store = store or PaymentRequestStore()
        self.reconciler = reconciler or LedgerReconciler(session_factory=session_factory)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def process(self, payload: Any) -> CallbackOutcome:
        """
        Apply one callback delivery.

        Args:
            payload: Decoded JSON body posted by the provider

        Returns:
            CallbackOutcome: ``confirmed``, ``failed`` or ``duplicate``

        Raises:
            InvalidCallbackFormatError: If the payload cannot be parsed
            UnknownCallbackError: If no request has the CheckoutRequestID
            LedgerError: If the confirmed payment could not be applied
        """
        callback = parse_stk_callback(payload)

        async with self.session_factory() as db:
            request = await self.store.get(db, callback.checkout_request_id)
            invoice_id = request.invoice_id if request is not None else None
        if invoice_id is None:
            raise UnknownCallbackError(
                f"No payment request for CheckoutRequestID {callback.checkout_request_id}",
                checkout_request_id=callback.checkout_request_id,
            )

        async with self.reconciler.invoice_lock(invoice_id):
            async with self.session_factory() as db:
                try:
                    return await self._resolve(db, callback)
                except Exception:
                    await db.rollback()
                    raise

    async def _resolve(self, db: AsyncSession, callback: StkCallback) -> CallbackOutcome:
        checkout_request_id = callback.checkout_request_id
        request = await self.store.get(db, checkout_request_id, for_update=True)
        if request is None:
            raise UnknownCallbackError(
                f"No payment request for CheckoutRequestID {checkout_request_id}",
                checkout_request_id=checkout_request_id,
            )

        if request.is_terminal:
            await db.rollback()
            logger.info(
                "callback_duplicate",
                checkout_request_id=checkout_request_id,
                status=request.status,
            )
            return CallbackOutcome(OUTCOME_DUPLICATE, checkout_request_id)

        payment_id = None
        if callback.succeeded:
            payment = await self.reconciler.apply_confirmed_payment(
                db,
                request,
                amount=callback.amount,
                receipt_ref=callback.receipt_number,
                payer_phone=callback.phone_number,
                provider_timestamp=callback.transaction_date,
            )
            payment_id = payment.id
            target = PaymentRequestStatus.CONFIRMED
        else:
            target = PaymentRequestStatus.FAILED

        changed = await self.store.transition(
            db,
            checkout_request_id,
            target,
            result_code=callback.result_code,
            result_description=callback.result_description,
        )
        if not changed:
            # another delivery resolved the request first
            await db.rollback()
            logger.info("callback_lost_race", checkout_request_id=checkout_request_id)
            return CallbackOutcome(OUTCOME_DUPLICATE, checkout_request_id)

        await db.commit()

        if callback.succeeded:
            logger.info(
                "payment_confirmed",
                checkout_request_id=checkout_request_id,
                invoice_id=str(request.invoice_id),
                receipt=callback.receipt_number,
                amount=str(callback.amount),
            )
            return CallbackOutcome(OUTCOME_CONFIRMED, checkout_request_id, payment_id=payment_id)

        logger.info(
            "payment_failed",
            checkout_request_id=checkout_request_id,
            result_code=callback.result_code,
            result_description=callback.result_description,
        )
        return CallbackOutcome(
            OUTCOME_FAILED, checkout_request_id, message=callback.result_description
        )

    async def handle(self, payload: Any) -> CallbackOutcome:
        """
        Process a delivery at the endpoint boundary.

        Never raises: every error is logged, counted and recorded in the
        callback audit trail, since the provider only needs an acknowledgement.
        """
        started = time.perf_counter()
        try:
            outcome = await self.process(payload)
        except InvalidCallbackFormatError as e:
            logger.warning(
                "callback_invalid_format",
                checkout_request_id=e.checkout_request_id,
                error=str(e),
            )
            outcome = CallbackOutcome(
                OUTCOME_INVALID_FORMAT, e.checkout_request_id, message=str(e)
            )
        except UnknownCallbackError as e:
            logger.warning(
                "callback_unknown_request",
                checkout_request_id=e.checkout_request_id,
            )
            outcome = CallbackOutcome(
                OUTCOME_UNKNOWN_REQUEST, e.checkout_request_id, message=str(e)
            )
        except LedgerError as e:
            checkout_request_id = _checkout_request_id(payload)
            logger.error(
                "callback_ledger_failed",
                checkout_request_id=checkout_request_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            outcome = CallbackOutcome(OUTCOME_ERROR, checkout_request_id, message=str(e))
        except Exception as e:
            checkout_request_id = _checkout_request_id(payload)
            logger.exception(
                "callback_processing_error",
                checkout_request_id=checkout_request_id,
            )
            outcome = CallbackOutcome(
                OUTCOME_ERROR, checkout_request_id, message=f"{type(e).__name__}: {e}"
            )

        metrics.record_callback(outcome.outcome, time.perf_counter() - started)
        event_id = await self._record_event(payload, outcome)
        return replace(outcome, event_id=event_id)

    async def replay(self, event_id: int) -> CallbackOutcome:
        """
        Reprocess the raw payload of a stored callback event.

        Raises:
            CallbackEventNotFoundError: If no such event exists
        """
        async with self.session_factory() as db:
            event = await db.get(CallbackEvent, event_id)
            if event is None:
                raise CallbackEventNotFoundError(f"Callback event {event_id} not found")
            payload = event.payload

        logger.info("callback_replay", event_id=event_id)
        return await self.handle(payload)

    async def _record_event(self, payload: Any, outcome: CallbackOutcome) -> Optional[int]:
        callback = _stk_callback_section(payload)
        result_code = callback.get("ResultCode")
        event = CallbackEvent(
            checkout_request_id=outcome.checkout_request_id,
            merchant_request_id=_as_str(callback.get("MerchantRequestID")),
            result_code=result_code if isinstance(result_code, int) else None,
            outcome=outcome.outcome,
            error_message=None if outcome.applied else outcome.message,
            payload=payload if isinstance(payload, dict) else {"raw": payload},
        )
        try:
            async with self.session_factory() as db:
                db.add(event)
                await db.commit()
                return event.id
        except Exception:
            logger.exception(
                "callback_audit_write_failed",
                checkout_request_id=outcome.checkout_request_id,
                outcome=outcome.outcome,
            )
            return None


def _stk_callback_section(payload: Any) -> Dict[str, Any]:
    body = payload.get("Body") if isinstance(payload, dict) else None
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    return callback if isinstance(callback, dict) else {}


def _checkout_request_id(payload: Any) -> Optional[str]:
    return _as_str(_stk_callback_section(payload).get("CheckoutRequestID"))


def _as_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None
