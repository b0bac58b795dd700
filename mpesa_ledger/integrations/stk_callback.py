"""
Parsing of the STK push result notification.

The provider POSTs ``{"Body": {"stkCallback": {...}}}`` to the callback URL.
On success the result carries ``CallbackMetadata.Item``, an unordered list of
``{"Name": ..., "Value": ...}`` pairs.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

SUCCESS_RESULT_CODE = 0
TRANSACTION_DATE_FORMAT = "%Y%m%d%H%M%S"


class CallbackError(Exception):
    """Base exception for inbound callback errors."""

    def __init__(self, message: str, checkout_request_id: Optional[str] = None):
        super().__init__(message)
        self.checkout_request_id = checkout_request_id


class InvalidCallbackFormatError(CallbackError):
    """Raised when a callback payload lacks the expected structure."""

    pass


class UnknownCallbackError(CallbackError):
    """Raised when no payment request matches the callback's CheckoutRequestID."""

    pass


@dataclass(frozen=True)
class StkCallback:
    """A parsed STK push result."""

    merchant_request_id: Optional[str]
    checkout_request_id: str
    result_code: int
    result_description: str
    amount: Optional[Decimal] = None
    receipt_number: Optional[str] = None
    phone_number: Optional[str] = None
    transaction_date: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == SUCCESS_RESULT_CODE

    @property
    def transaction_datetime(self) -> Optional[datetime]:
        """Provider timestamp as a naive local datetime, if it parses."""
        if not self.transaction_date:
            return None
        try:
            return datetime.strptime(self.transaction_date, TRANSACTION_DATE_FORMAT)
        except ValueError:
            return None


def metadata_items(callback: Dict[str, Any]) -> Dict[str, Any]:
    """Fold ``CallbackMetadata.Item`` into a dict keyed by each entry's Name."""
    metadata = callback.get("CallbackMetadata")
    if not isinstance(metadata, dict) or not isinstance(metadata.get("Item"), list):
        raise InvalidCallbackFormatError(
            "Successful callback is missing CallbackMetadata.Item",
            checkout_request_id=callback.get("CheckoutRequestID"),
        )

    items: Dict[str, Any] = {}
    for item in metadata["Item"]:
        if isinstance(item, dict) and "Name" in item:
            # some entries (e.g. Balance) arrive without a Value
            items[item["Name"]] = item.get("Value")
    return items


def parse_stk_callback(payload: Any) -> StkCallback:
    """
    Parse a raw callback payload.

    Raises:
        InvalidCallbackFormatError: If the expected structure is missing
    """
    try:
        callback = payload["Body"]["stkCallback"]
    except (KeyError, TypeError):
        raise InvalidCallbackFormatError("Payload is missing Body.stkCallback")
    if not isinstance(callback, dict):
        raise InvalidCallbackFormatError("Body.stkCallback is not an object")

    checkout_request_id = callback.get("CheckoutRequestID")
    if not checkout_request_id or not isinstance(checkout_request_id, str):
        raise InvalidCallbackFormatError("Callback is missing CheckoutRequestID")

    try:
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError):
        raise InvalidCallbackFormatError(
            "Callback is missing a numeric ResultCode",
            checkout_request_id=checkout_request_id,
        )

    parsed = StkCallback(
        merchant_request_id=callback.get("MerchantRequestID"),
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        result_description=str(callback.get("ResultDesc", "")),
    )
    if not parsed.succeeded:
        return parsed

    items = metadata_items(callback)

    try:
        amount = Decimal(str(items["Amount"]))
    except (KeyError, InvalidOperation, ValueError):
        raise InvalidCallbackFormatError(
            "Successful callback has no usable Amount",
            checkout_request_id=checkout_request_id,
        )
    if not amount.is_finite() or amount <= 0:
        raise InvalidCallbackFormatError(
            "Successful callback has a non-positive Amount",
            checkout_request_id=checkout_request_id,
        )

    receipt_number = items.get("MpesaReceiptNumber")
    if not receipt_number:
        raise InvalidCallbackFormatError(
            "Successful callback has no MpesaReceiptNumber",
            checkout_request_id=checkout_request_id,
        )

    phone_number = items.get("PhoneNumber")
    transaction_date = items.get("TransactionDate")

    return StkCallback(
        merchant_request_id=parsed.merchant_request_id,
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        result_description=parsed.result_description,
        amount=amount,
        receipt_number=str(receipt_number),
        phone_number=str(phone_number) if phone_number is not None else None,
        transaction_date=str(transaction_date) if transaction_date is not None else None,
    )
