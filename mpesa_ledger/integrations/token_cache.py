"""
Daraja OAuth access token cache.

Holds the short-lived bearer token issued by the provider's token endpoint
and refreshes it shortly before it expires. Concurrent callers that find no
valid token share a single in-flight refresh and all observe its outcome.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mpesa_ledger.config import Settings, get_settings
from mpesa_ledger.integrations.errors import AuthenticationError, GatewayError
from mpesa_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_PATH = "/oauth/v1/generate"


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and the monotonic time at which it stops being valid."""

    value: str
    expires_at: float

    def is_fresh(self, now: float, margin: float) -> bool:
        return self.expires_at - margin > now


class AccessTokenCache:
    """
    Single-flight cache for the Daraja access token.

    The raw token is only handed out through :meth:`acquire_token`; its
    storage is private to this object.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the token cache.

        Args:
            http_client: Optional HTTP client (one is created per refresh otherwise)
            settings: Optional settings override
            clock: Monotonic clock used for expiry checks
        """
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._inflight: Optional[asyncio.Future[AccessToken]] = None

    async def acquire_token(self) -> str:
        """
        Return a valid bearer token, refreshing it if needed.

        Raises:
            AuthenticationError: If the provider rejects the consumer key/secret
            GatewayError: If the token endpoint cannot be reached
        """
        token = self._token
        if token is not None and token.is_fresh(
            self._clock(), self.settings.token_expiry_margin_seconds
        ):
            return token.value

        # No await between the check and the assignment, so only one
        # caller can start a refresh.
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh())

        # shield so a cancelled waiter does not cancel the shared refresh
        token = await asyncio.shield(self._inflight)
        return token.value

    def invalidate(self) -> None:
        """Forget the cached token so the next caller fetches a new one."""
        if self._token is not None:
            logger.info("access_token_invalidated")
        self._token = None

    async def _refresh(self) -> AccessToken:
        started = self._clock()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(self.settings.token_fetch_max_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            ):
                with attempt:
                    response = await self._request_token()
        except RetryError as e:
            metrics.record_token_refresh("error")
            cause = e.last_attempt.exception()
            logger.error("access_token_unreachable", error=str(cause))
            raise GatewayError(
                f"Token endpoint unreachable: {cause}", transient=True
            ) from cause

        if response.status_code in (400, 401, 403):
            metrics.record_token_refresh("rejected")
            logger.error(
                "access_token_rejected",
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise AuthenticationError(
                "M-Pesa rejected the configured consumer key/secret",
                status_code=response.status_code,
            )

        if response.status_code >= 300:
            metrics.record_token_refresh("error")
            logger.error("access_token_http_error", status_code=response.status_code)
            raise GatewayError(
                f"Token endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
                transient=response.status_code >= 500,
            )

        try:
            data = response.json()
            value = data["access_token"]
            lifetime = float(data.get("expires_in", 3599))
        except (ValueError, KeyError, TypeError) as e:
            metrics.record_token_refresh("error")
            raise GatewayError(f"Malformed token response: {e}") from e

        token = AccessToken(value=value, expires_at=started + lifetime)
        self._token = token
        metrics.record_token_refresh("success")
        logger.info("access_token_refreshed", expires_in=lifetime)
        return token

    async def _request_token(self) -> httpx.Response:
        url = f"{self.settings.mpesa_base_url}{TOKEN_PATH}"
        auth = (self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret)
        params = {"grant_type": "client_credentials"}
        started = time.perf_counter()
        status = "error"
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, params=params, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=self.settings.mpesa_http_timeout) as client:
                    response = await client.get(url, params=params, auth=auth)
            status = str(response.status_code)
            return response
        finally:
            metrics.record_mpesa_api_call("token", status, time.perf_counter() - started)
