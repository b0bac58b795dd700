"""Errors raised on the payment initiation path."""
from typing import Optional


class MpesaError(Exception):
    """Base exception for M-Pesa gateway errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        """
        Initialize M-Pesa error.

        Args:
            message: Human-readable error message
            error_code: Provider error code, when the provider returned one
            status_code: HTTP status of the provider response, if any
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code


class PaymentValidationError(MpesaError):
    """Raised when amount or phone input is rejected before any network call."""

    pass


class AuthenticationError(MpesaError):
    """Raised when the provider rejects the configured consumer key/secret. Never retried."""

    pass


class GatewayError(MpesaError):
    """
    Raised when an initiation request fails in transport or at the provider.

    Never retried automatically: the provider may already have pushed the
    prompt to the payer's phone. ``transient`` marks failures that say the
    provider is unavailable (transport errors, 5xx) rather than a rejection
    of this particular request.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        transient: bool = False,
    ):
        super().__init__(message, error_code=error_code, status_code=status_code)
        self.transient = transient
