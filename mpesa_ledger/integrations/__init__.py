"""External integrations for M-Pesa payments."""
from .errors import AuthenticationError, GatewayError, MpesaError, PaymentValidationError
from .mpesa_client import MpesaClient, StkPushResponse, normalize_phone
from .stk_callback import (
    CallbackError,
    InvalidCallbackFormatError,
    StkCallback,
    UnknownCallbackError,
    parse_stk_callback,
)
from .token_cache import AccessTokenCache

__all__ = [
    "AccessTokenCache",
    "AuthenticationError",
    "CallbackError",
    "GatewayError",
    "InvalidCallbackFormatError",
    "MpesaClient",
    "MpesaError",
    "PaymentValidationError",
    "StkCallback",
    "StkPushResponse",
    "UnknownCallbackError",
    "normalize_phone",
    "parse_stk_callback",
]
