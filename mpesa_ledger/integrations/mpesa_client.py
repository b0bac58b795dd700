"""
M-Pesa Daraja client for Lipa na M-Pesa Online (STK push).

Implements:
- Phone number normalization to the 2547XXXXXXXX form
- Password derivation from shortcode, passkey and timestamp
- Silent truncation of the fixed-width reference/description fields
- Circuit breaker that fails fast while the provider is down

Initiation requests are never retried.
"""
import base64
import re
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from zoneinfo import ZoneInfo

import httpx
import structlog

from mpesa_ledger.config import Settings, get_settings
from mpesa_ledger.integrations.errors import (
    AuthenticationError,
    GatewayError,
    MpesaError,
    PaymentValidationError,
)
from mpesa_ledger.integrations.token_cache import AccessTokenCache
from mpesa_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
COUNTRY_CODE = "254"
ACCOUNT_REFERENCE_MAX_LENGTH = 12
DESCRIPTION_MAX_LENGTH = 13
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

T = TypeVar("T")


def normalize_phone(phone: Any) -> str:
    """
    Normalize a phone number to the form the provider expects (2547XXXXXXXX).

    Strips every non-digit (which also drops a leading ``+``) and replaces a
    leading ``0`` with the country code. Anything else passes through; a
    malformed number is left for the provider to reject.
    """
    digits = re.sub(r"\D", "", str(phone).strip())
    if digits.startswith("0"):
        return f"{COUNTRY_CODE}{digits[1:]}"
    return digits


def validate_amount(amount: Any) -> Decimal:
    """
    Coerce ``amount`` to a positive Decimal.

    Raises:
        PaymentValidationError: If the amount is not a positive number
    """
    if isinstance(amount, bool) or amount is None:
        raise PaymentValidationError("Amount must be a positive number")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise PaymentValidationError("Amount must be a positive number")
    if not value.is_finite() or value <= 0:
        raise PaymentValidationError("Amount must be a positive number")
    return value


def validate_phone(phone: Any) -> str:
    """
    Normalize ``phone``, rejecting input that has no digits at all.

    Raises:
        PaymentValidationError: If the phone number contains no digits
    """
    if phone is None:
        raise PaymentValidationError("Phone number is required")
    normalized = normalize_phone(phone)
    if not normalized:
        raise PaymentValidationError("Phone number must contain digits")
    return normalized


def wire_amount(amount: Decimal) -> int:
    """Amounts go over the wire as whole shillings, rounded up."""
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Base64 of shortcode + passkey + timestamp, recomputed by the provider."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


@dataclass(frozen=True)
class StkPushResponse:
    """Provider acknowledgement of an accepted STK push."""

    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str
    customer_message: str
    phone_number: str
    amount: Decimal
    account_reference: str
    description: str


class CircuitBreaker:
    """
    Circuit breaker for Daraja API calls.

    Rejects calls while open so a provider outage fails initiation fast
    instead of stacking up timeouts.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("M-Pesa gateway temporarily unavailable (circuit open)")

        try:
            result = await func()
        except GatewayError as e:
            # a rejected request still means the provider answered
            if e.transient:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class MpesaClient:
    """
    Daraja STK push client.

    Features:
    - Bearer token from a shared single-flight cache
    - Deterministic request building (normalization, truncation, password)
    - Provider error envelopes surfaced as GatewayError, never retried
    """

    def __init__(
        self,
        token_cache: Optional[AccessTokenCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the Daraja client.

        Args:
            token_cache: Optional access token cache
            http_client: Optional HTTP client (one is created per call otherwise)
            settings: Optional settings override
            circuit_breaker: Optional circuit breaker
            now: Optional clock for the password timestamp
        """
        self.settings = settings or get_settings()
        self._http_client = http_client
        self.token_cache = token_cache or AccessTokenCache(
            http_client=http_client, settings=self.settings
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._now = now or (lambda: datetime.now(ZoneInfo(self.settings.mpesa_timezone)))

        logger.info(
            "mpesa_client_initialized",
            environment=self.settings.mpesa_environment,
            shortcode=self.settings.mpesa_shortcode,
        )

    def build_stk_push_payload(
        self,
        phone: str,
        amount: Decimal,
        account_reference: str,
        description: str,
        timestamp: str,
    ) -> Dict[str, Any]:
        """Build the processrequest body; ``phone`` must already be normalized."""
        shortcode = self.settings.mpesa_shortcode
        return {
            "BusinessShortCode": shortcode,
            "Password": generate_password(shortcode, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.mpesa_transaction_type,
            "Amount": wire_amount(amount),
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": account_reference[:ACCOUNT_REFERENCE_MAX_LENGTH],
            "TransactionDesc": description[:DESCRIPTION_MAX_LENGTH],
        }

    async def initiate_payment(
        self,
        phone: Any,
        amount: Any,
        account_reference: str,
        description: Optional[str] = None,
    ) -> StkPushResponse:
        """
        Send an STK push prompt to the payer's phone.

        Args:
            phone: Payer phone number in any common local/international form
            amount: Positive amount; sent rounded up to a whole number
            account_reference: Reference shown to the payer (first 12 chars sent)
            description: Transaction description (first 13 chars sent)

        Returns:
            StkPushResponse: Provider correlation identifiers

        Raises:
            PaymentValidationError: If amount or phone is unusable
            AuthenticationError: If the consumer key/secret are rejected
            GatewayError: If the provider call fails or is refused
        """
        value = validate_amount(amount)
        normalized_phone = validate_phone(phone)
        description = description or self.settings.mpesa_transaction_desc

        token = await self.token_cache.acquire_token()

        timestamp = self._now().strftime(TIMESTAMP_FORMAT)
        payload = self.build_stk_push_payload(
            normalized_phone, value, account_reference, description, timestamp
        )

        logger.info(
            "stk_push_requested",
            phone=normalized_phone,
            amount=payload["Amount"],
            account_reference=payload["AccountReference"],
        )

        data = await self.circuit_breaker.call(lambda: self._post_stk_push(payload, token))

        return StkPushResponse(
            merchant_request_id=data["MerchantRequestID"],
            checkout_request_id=data["CheckoutRequestID"],
            response_code=str(data.get("ResponseCode", "0")),
            response_description=data.get("ResponseDescription", ""),
            customer_message=data.get("CustomerMessage", ""),
            phone_number=normalized_phone,
            amount=value,
            account_reference=payload["AccountReference"],
            description=payload["TransactionDesc"],
        )

    async def _post_stk_push(self, payload: Dict[str, Any], token: str) -> Dict[str, Any]:
        url = f"{self.settings.mpesa_base_url}{STK_PUSH_PATH}"
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        started = time.perf_counter()
        status = "error"

        try:
            try:
                if self._http_client is not None:
                    response = await self._http_client.post(url, json=payload, headers=headers)
                else:
                    async with httpx.AsyncClient(
                        timeout=self.settings.mpesa_http_timeout
                    ) as client:
                        response = await client.post(url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                logger.error("stk_push_transport_error", error=str(e))
                raise GatewayError(f"Failed to reach M-Pesa: {e}", transient=True) from e

            status = str(response.status_code)
            body = self._json_body(response)

            if response.status_code == 401:
                # token revoked early; the next user-initiated attempt refetches
                self.token_cache.invalidate()

            if response.status_code >= 300:
                error_code = body.get("errorCode")
                error_message = body.get("errorMessage") or response.reason_phrase
                logger.error(
                    "stk_push_rejected",
                    status_code=response.status_code,
                    error_code=error_code,
                    error_message=error_message,
                )
                raise GatewayError(
                    f"Failed to initiate STK push: {error_message}",
                    error_code=error_code,
                    status_code=response.status_code,
                    transient=response.status_code >= 500,
                )

            response_code = str(body.get("ResponseCode", ""))
            if response_code != "0" or not body.get("CheckoutRequestID"):
                description = body.get("ResponseDescription") or body.get("errorMessage")
                logger.error(
                    "stk_push_not_accepted",
                    response_code=response_code,
                    response_description=description,
                )
                raise GatewayError(
                    f"STK push not accepted: {description or 'unknown provider response'}",
                    error_code=response_code or body.get("errorCode"),
                    status_code=response.status_code,
                )

            logger.info(
                "stk_push_accepted",
                merchant_request_id=body.get("MerchantRequestID"),
                checkout_request_id=body.get("CheckoutRequestID"),
            )
            return body

        finally:
            metrics.record_mpesa_api_call("stk_push", status, time.perf_counter() - started)

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


__all__ = [
    "AuthenticationError",
    "CircuitBreaker",
    "GatewayError",
    "MpesaClient",
    "MpesaError",
    "PaymentValidationError",
    "StkPushResponse",
    "generate_password",
    "normalize_phone",
    "validate_amount",
    "validate_phone",
    "wire_amount",
]
