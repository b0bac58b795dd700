"""
Prometheus metrics for the STK push pipeline.

Tracks:
- STK push initiation outcomes
- Daraja API latency and errors
- Access token refreshes
- Callback outcomes and processing time
- Ledger applications
- Expired payment requests
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Initiation metrics
stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "Total STK push initiation attempts",
    ["outcome"],  # sent, invalid, invoice_not_found, gateway_error
)

stk_push_amount = Histogram(
    "stk_push_amount",
    "Requested STK push amounts",
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000, 250000),
)

# Daraja API metrics
mpesa_api_requests_total = Counter(
    "mpesa_api_requests_total",
    "Total Daraja API requests",
    ["operation", "status"],  # operation: token, stk_push
)

mpesa_api_duration_seconds = Histogram(
    "mpesa_api_duration_seconds",
    "Daraja API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

mpesa_circuit_breaker_state = Gauge(
    "mpesa_circuit_breaker_state",
    "Daraja circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Credential cache metrics
access_token_refreshes_total = Counter(
    "access_token_refreshes_total",
    "Total access token refreshes",
    ["status"],  # success, rejected, error
)

# Callback metrics
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Total STK callbacks received",
    ["outcome"],  # confirmed, failed, duplicate, unknown_request, invalid_format, error
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
ledger_payments_applied_total = Counter(
    "ledger_payments_applied_total",
    "Total payments applied to invoices",
    ["method"],
)

ledger_payment_amount = Histogram(
    "ledger_payment_amount",
    "Amounts applied to invoices",
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000, 250000),
)

ledger_overpayments_total = Counter(
    "ledger_overpayments_total",
    "Payments that took paid_amount past the invoice total",
)

# Expiry metrics
payment_requests_expired_total = Counter(
    "payment_requests_expired_total",
    "Total payment requests expired without a callback",
)

expiry_sweep_last_run_timestamp = Gauge(
    "expiry_sweep_last_run_timestamp",
    "Timestamp of last expiry sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_stk_push(outcome: str, amount: float | None = None) -> None:
        """Record an STK push initiation attempt."""
        stk_push_requests_total.labels(outcome=outcome).inc()
        if amount is not None:
            stk_push_amount.observe(amount)

    @staticmethod
    def record_mpesa_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Daraja API call."""
        mpesa_api_requests_total.labels(operation=operation, status=status).inc()
        mpesa_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        mpesa_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_token_refresh(status: str) -> None:
        """Record an access token refresh."""
        access_token_refreshes_total.labels(status=status).inc()

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        callbacks_received_total.labels(outcome=outcome).inc()
        callback_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_ledger_payment(method: str, amount: float, overpaid: bool) -> None:
        """Record a payment applied to an invoice."""
        ledger_payments_applied_total.labels(method=method).inc()
        ledger_payment_amount.observe(amount)
        if overpaid:
            ledger_overpayments_total.inc()

    @staticmethod
    def record_expiry_sweep(expired_count: int) -> None:
        """Record an expiry sweep."""
        payment_requests_expired_total.inc(expired_count)
        expiry_sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
