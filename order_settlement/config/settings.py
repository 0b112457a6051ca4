"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./settlement.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="order-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # Pricing
    tax_rate: Decimal = Field(default=Decimal("0.10"), description="Tax rate applied to subtotal")
    shipping_fee: Decimal = Field(default=Decimal("25000"), description="Flat shipping fee")
    currency: str = Field(default="VND", description="Settlement currency code")

    # Outbound gateway calls
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Upper bound for a single gateway HTTP call"
    )
    gateway_retry_max_attempts: int = Field(
        default=3, description="Attempts for transient gateway failures"
    )
    gateway_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )
    gateway_response_max_length: int = Field(
        default=2000, description="Stored gateway payload length"
    )

    # MoMo (gateway A)
    momo_partner_code: str = Field(default="MOMO", description="MoMo partner code")
    momo_access_key: str = Field(default="", description="MoMo access key")
    momo_secret_key: str = Field(default="", description="MoMo HMAC-SHA256 secret")
    momo_endpoint: str = Field(
        default="https://test-payment.momo.vn", description="MoMo API base URL"
    )
    momo_return_url: str = Field(
        default="http://localhost:8000/payments/return/momo",
        description="Customer redirect after MoMo checkout",
    )
    momo_notify_url: str = Field(
        default="http://localhost:8000/payments/callbacks/momo",
        description="MoMo IPN callback URL",
    )
    momo_request_type: str = Field(default="captureWallet", description="MoMo request type")
    momo_lang: str = Field(default="en", description="MoMo checkout language")

    # VNPay (gateway B)
    vnpay_tmn_code: str = Field(default="", description="VNPay terminal code")
    vnpay_hash_secret: str = Field(default="", description="VNPay HMAC-SHA512 secret")
    vnpay_payment_url: str = Field(
        default="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        description="VNPay checkout URL",
    )
    vnpay_api_url: str = Field(
        default="https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
        description="VNPay merchant API URL (refunds)",
    )
    vnpay_return_url: str = Field(
        default="http://localhost:8000/payments/return/vnpay",
        description="Customer redirect after VNPay checkout",
    )
    vnpay_version: str = Field(default="2.1.0", description="VNPay API version")
    vnpay_order_type: str = Field(default="other", description="VNPay order type")
    vnpay_locale: str = Field(default="vn", description="VNPay checkout locale")
    vnpay_expire_minutes: int = Field(default=15, description="VNPay checkout expiry")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("tax_rate", "shipping_fee")
    @classmethod
    def validate_non_negative(cls, v: Decimal) -> Decimal:
        """Tax rate and shipping fee cannot be negative."""
        if v < 0:
            raise ValueError("Pricing values must be non-negative")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
