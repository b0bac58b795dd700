"""
Pytest configuration and fixtures.

Tests run against a file-backed SQLite database and a fake Daraja API
served through ``httpx.MockTransport``.
"""
import json
import os
import tempfile
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

_TEST_DIR = tempfile.mkdtemp(prefix="mpesa-ledger-tests-")

os.environ["MPESA_CONSUMER_KEY"] = "test-consumer-key"
os.environ["MPESA_CONSUMER_SECRET"] = "test-consumer-secret"
os.environ["MPESA_SHORTCODE"] = "174379"
os.environ["MPESA_PASSKEY"] = "test-passkey"
os.environ["MPESA_CALLBACK_URL"] = "https://ledger.example.com/webhooks/mpesa/stk-callback"
os.environ["MPESA_ENVIRONMENT"] = "sandbox"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/test.db"
os.environ["APP_ENV"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from mpesa_ledger.config import Settings, get_settings  # noqa: E402
from mpesa_ledger.core.invoices import create_invoice  # noqa: E402
from mpesa_ledger.core.payment_requests import PaymentRequestStore  # noqa: E402
from mpesa_ledger.database.connection import (  # noqa: E402
    close_db,
    get_engine,
    get_session_factory,
)
from mpesa_ledger.database.models import Base, Invoice, PaymentRequest  # noqa: E402
from mpesa_ledger.integrations.mpesa_client import MpesaClient  # noqa: E402
from mpesa_ledger.integrations.token_cache import AccessTokenCache  # noqa: E402

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
FIXED_TIMESTAMP = datetime(2024, 1, 15, 10, 30, 0)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "race: concurrency and race condition tests")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")


class FakeDaraja:
    """In-memory stand-in for the Daraja token and STK push endpoints."""

    def __init__(self) -> None:
        self.token_requests = 0
        self.token_status = 200
        self.stk_requests: List[Dict[str, Any]] = []
        self.stk_headers: List[httpx.Headers] = []
        self.stk_status = 200
        self.stk_body: Optional[Dict[str, Any]] = None
        self.stk_error: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == TOKEN_PATH:
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"errorMessage": "Invalid credentials"})
            return httpx.Response(
                200,
                json={"access_token": f"token-{self.token_requests}", "expires_in": "3599"},
            )

        if request.url.path == STK_PUSH_PATH:
            self.stk_requests.append(json.loads(request.content))
            self.stk_headers.append(request.headers)
            if self.stk_error is not None:
                raise self.stk_error
            if self.stk_body is not None:
                return httpx.Response(self.stk_status, json=self.stk_body)
            n = len(self.stk_requests)
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-34620561-{n}",
                    "CheckoutRequestID": f"ws_CO_191220191020363925{n}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )

        return httpx.Response(404)


@pytest.fixture
def settings() -> Settings:
    """Settings loaded from the test environment."""
    return get_settings()


@pytest.fixture
def daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def http_client(daraja: FakeDaraja) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(daraja)) as client:
        yield client


@pytest.fixture
def mpesa_client(http_client: httpx.AsyncClient, settings: Settings) -> MpesaClient:
    """Daraja client wired to the fake provider with a fixed clock."""
    token_cache = AccessTokenCache(http_client=http_client, settings=settings)
    return MpesaClient(
        token_cache=token_cache,
        http_client=http_client,
        settings=settings,
        now=lambda: FIXED_TIMESTAMP,
    )


@pytest_asyncio.fixture
async def test_db() -> AsyncGenerator[AsyncSession, Any]:
    """Fresh schema and a session on the shared test engine."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_session_factory()
    async with session_factory() as session:
        yield session
        await session.rollback()

    await close_db()


@pytest.fixture
def session_factory(test_db: AsyncSession) -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


@pytest_asyncio.fixture
async def invoice_factory(
    test_db: AsyncSession,
) -> Callable[..., Any]:
    async def _create(total: str = "12000", description: str = "Term 1 fees") -> Invoice:
        return await create_invoice(test_db, Decimal(total), description)

    return _create


@pytest_asyncio.fixture
async def sent_request_factory(test_db: AsyncSession) -> Callable[..., Any]:
    """Record a SENT payment request directly, as if the provider accepted it."""
    store = PaymentRequestStore()

    async def _create(
        invoice: Invoice,
        amount: str,
        checkout_request_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> PaymentRequest:
        request = await store.create_sent(
            test_db,
            checkout_request_id=checkout_request_id or f"ws_CO_{uuid.uuid4().hex[:20]}",
            merchant_request_id=f"29115-{uuid.uuid4().hex[:8]}",
            invoice_id=invoice.id,
            phone_number="254712345678",
            amount=Decimal(amount),
            account_reference=invoice.invoice_no[:12],
            description="School Fees P",
            now=created_at or datetime.now(timezone.utc),
        )
        await test_db.commit()
        return request

    return _create


@pytest.fixture
def callback_payload() -> Callable[..., Dict[str, Any]]:
    """Builder for STK push result notifications."""

    def _build(
        checkout_request_id: str,
        result_code: int = 0,
        amount: Any = 5000,
        receipt: str = "NLJ7RT61SV",
        phone: int = 254712345678,
        result_desc: Optional[str] = None,
        merchant_request_id: str = "29115-34620561-1",
    ) -> Dict[str, Any]:
        callback: Dict[str, Any] = {
            "MerchantRequestID": merchant_request_id,
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc
            or (
                "The service request is processed successfully."
                if result_code == 0
                else "Request cancelled by user"
            ),
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "Balance"},
                    {"Name": "TransactionDate", "Value": 20191219102115},
                    {"Name": "PhoneNumber", "Value": phone},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    return _build
