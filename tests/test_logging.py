"""
Tests for the JSON log output.
"""
import io
import json
import logging
from typing import Any, Dict, Generator, List

import pytest
import structlog

from mpesa_ledger.monitoring.logging import setup_logging


@pytest.fixture
def log_stream() -> Generator[io.StringIO, Any, None]:
    stream = io.StringIO()
    setup_logging(stream=stream)
    yield stream
    setup_logging()


def records(stream: io.StringIO) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestLogging:
    """Test suite for setup_logging."""

    @pytest.mark.unit
    def test_structlog_event_is_one_json_object(self, log_stream: io.StringIO) -> None:
        """Event fields are top-level keys, not an encoded string."""
        structlog.get_logger("mpesa_ledger.tests").warning(
            "callback_unknown_request", checkout_request_id="ws_CO_1"
        )

        record = records(log_stream)[-1]

        assert record["event"] == "callback_unknown_request"
        assert record["checkout_request_id"] == "ws_CO_1"
        assert record["level"] == "WARNING"
        assert record["logger"] == "mpesa_ledger.tests"
        assert record["timestamp"]
        assert record["app_env"] == "test"
        assert record["mpesa_environment"] == "sandbox"

    @pytest.mark.unit
    def test_exceptions_are_rendered(self, log_stream: io.StringIO) -> None:
        try:
            raise RuntimeError("ledger unavailable")
        except RuntimeError:
            structlog.get_logger("mpesa_ledger.tests").exception("callback_processing_error")

        record = records(log_stream)[-1]

        assert record["event"] == "callback_processing_error"
        assert record["level"] == "ERROR"
        assert "RuntimeError: ledger unavailable" in record["exception"]

    @pytest.mark.unit
    def test_stdlib_records_share_the_format(self, log_stream: io.StringIO) -> None:
        logging.getLogger("uvicorn.error").warning("worker %s restarted", 3)

        record = records(log_stream)[-1]

        assert record["event"] == "worker 3 restarted"
        assert record["level"] == "WARNING"
        assert record["logger"] == "uvicorn.error"
        assert record["timestamp"]
