"""
Tests for environment-based settings.
"""
import pytest
from pydantic import ValidationError

from mpesa_ledger.config import Settings


class TestSettings:
    """Test suite for Settings validation."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "url",
        [
            "http://ledger.example.com/webhooks/mpesa/stk-callback",
            "ledger.example.com/webhooks/mpesa/stk-callback",
            "https://",
        ],
    )
    def test_callback_url_must_be_https(self, url: str) -> None:
        with pytest.raises(ValidationError, match="https://"):
            Settings(mpesa_callback_url=url)

    @pytest.mark.unit
    def test_environment_selects_base_url(self) -> None:
        assert Settings(mpesa_environment="sandbox").mpesa_base_url == (
            "https://sandbox.safaricom.co.ke"
        )
        assert Settings(mpesa_environment="production").mpesa_base_url == (
            "https://api.safaricom.co.ke"
        )

    @pytest.mark.unit
    def test_unknown_environment_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(mpesa_environment="staging")
