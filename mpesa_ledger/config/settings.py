"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # M-Pesa Daraja Configuration
    mpesa_consumer_key: str = Field(..., description="Daraja app consumer key")
    mpesa_consumer_secret: str = Field(..., description="Daraja app consumer secret")
    mpesa_shortcode: str = Field(..., description="PayBill / till shortcode")
    mpesa_passkey: str = Field(..., description="Lipa na M-Pesa Online passkey")
    mpesa_callback_url: str = Field(..., description="Public URL the provider calls back")
    mpesa_environment: str = Field(default="sandbox", description="sandbox or production")
    mpesa_transaction_type: str = Field(
        default="CustomerPayBillOnline", description="STK push transaction type"
    )
    mpesa_transaction_desc: str = Field(
        default="School Fees Payment", description="Default transaction description"
    )
    mpesa_timezone: str = Field(
        default="Africa/Nairobi", description="Timezone of the password timestamp"
    )
    mpesa_http_timeout: float = Field(default=30.0, description="Provider HTTP timeout (seconds)")

    # Credential cache
    token_expiry_margin_seconds: int = Field(
        default=60, description="Refresh the access token this long before it expires"
    )
    token_fetch_max_attempts: int = Field(
        default=3, description="Attempts for the token request on transport errors"
    )

    # Payment request lifecycle
    stk_push_expiry_seconds: int = Field(
        default=180, description="Age after which an unanswered STK push is expired"
    )
    expiry_sweep_interval_seconds: float = Field(
        default=60.0, description="Interval between expiry sweeps (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="mpesa-ledger", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("mpesa_environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Only the sandbox and production hosts exist."""
        v = v.lower()
        if v not in MPESA_BASE_URLS:
            raise ValueError(
                f"Invalid M-Pesa environment. Must be one of: {list(MPESA_BASE_URLS)}"
            )
        return v

    @field_validator("mpesa_callback_url")
    @classmethod
    def validate_callback_url(cls, v: str) -> str:
        """The provider only calls back to absolute HTTPS URLs."""
        if not v.startswith("https://") or len(v) == len("https://"):
            raise ValueError("Callback URL must be an absolute https:// URL")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def mpesa_base_url(self) -> str:
        """Daraja host for the configured environment."""
        return MPESA_BASE_URLS[self.mpesa_environment]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sandbox(self) -> bool:
        """Check if talking to the Daraja sandbox."""
        return self.mpesa_environment == "sandbox"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
