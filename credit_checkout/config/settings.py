"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CreditPackage(BaseModel):
    """A purchasable bundle of assessment credits."""

    id: str
    name: str
    credits: int = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)
    currency: str = "USD"


def _default_packages() -> Dict[str, CreditPackage]:
    packages = [
        CreditPackage(id="starter-pack", name="Starter Pack", credits=30, price=Decimal("12.00")),
        CreditPackage(id="basic", name="Basic Pack", credits=10, price=Decimal("4.99")),
        CreditPackage(id="standard", name="Standard Pack", credits=25, price=Decimal("9.99")),
        CreditPackage(id="premium", name="Premium Pack", credits=60, price=Decimal("19.99")),
    ]
    return {package.id: package for package in packages}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Razorpay Configuration
    razorpay_key_id: str = Field(..., description="Razorpay key id (rzp_test_... or rzp_live_...)")
    razorpay_key_secret: str = Field(..., description="Razorpay key secret, also the signing secret")
    razorpay_webhook_secret: Optional[str] = Field(
        default=None, description="Razorpay webhook signing secret"
    )
    razorpay_api_base: str = Field(
        default="https://api.razorpay.com/v1", description="Razorpay REST API base URL"
    )
    gateway_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for calls into the payment gateway"
    )
    merchant_name: str = Field(default="Aynstyn", description="Name shown in the checkout UI")

    # Identity Configuration
    firebase_project_id: str = Field(..., description="Firebase project that issues ID tokens")
    firebase_credentials_path: Optional[str] = Field(
        default=None, description="Service account JSON (application default credentials if unset)"
    )
    identity_clock_skew_seconds: int = Field(
        default=30, ge=0, le=60, description="Tolerated clock skew when checking token expiry"
    )
    identity_check_revoked: bool = Field(
        default=True, description="Consult the revocation list when verifying tokens"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./credit_checkout.db", description="Database connection URL"
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="credit-checkout", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5000",
        description="CORS allowed origins (comma-separated)",
    )

    # Orders
    settlement_currency: str = Field(default="INR", description="Gateway settlement currency")
    conversion_rates: Dict[str, Decimal] = Field(
        default_factory=lambda: {"USD": Decimal("83"), "INR": Decimal("1")},
        description="Settlement units per one unit of each accepted source currency",
    )
    conversion_policy_version: str = Field(
        default="static-2024-06", description="Identifier of the active conversion policy"
    )
    order_ttl_minutes: int = Field(
        default=30, gt=0, description="Minutes an unpaid order stays open before expiring"
    )
    packages: Dict[str, CreditPackage] = Field(
        default_factory=_default_packages, description="Credit package catalog"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("razorpay_key_id")
    @classmethod
    def validate_razorpay_key(cls, v: str) -> str:
        """Validate the Razorpay key id format."""
        if not v.startswith("rzp_test_") and not v.startswith("rzp_live_"):
            raise ValueError(
                "Invalid Razorpay key id format. Must start with 'rzp_test_' or 'rzp_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("settlement_currency")
    @classmethod
    def validate_settlement_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("conversion_rates")
    @classmethod
    def validate_conversion_rates(cls, v: Dict[str, Decimal]) -> Dict[str, Decimal]:
        """Normalise currency codes and reject non-positive rates."""
        rates = {}
        for currency, rate in v.items():
            if not rate.is_finite() or rate <= 0:
                raise ValueError(f"Conversion rate for {currency} must be positive")
            rates[currency.upper()] = rate
        return rates

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Razorpay test keys."""
        return self.razorpay_key_id.startswith("rzp_test_")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
