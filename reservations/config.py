"""
Configuration for the reservation pipeline

Values come from ETG_* environment variables (or a .env file); every field
has a development default except the upstream credentials.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


class PriceComparisonMode(str, Enum):
    """Which payment options of the locked rate are compared for drift"""
    FIRST_OPTION = "first_option"
    ALL_OPTIONS = "all_options"


class StepTimeouts(BaseSettings):
    """Per-step upstream timeouts in seconds"""

    model_config = SettingsConfigDict(env_prefix="ETG_TIMEOUT_", extra="ignore")

    prebook: float = Field(default=20.0, gt=0)
    order_form: float = Field(default=15.0, gt=0)
    order_finish: float = Field(default=30.0, gt=0)
    order_status: float = Field(default=10.0, gt=0)
    order_info: float = Field(default=15.0, gt=0)
    order_documents: float = Field(default=15.0, gt=0)


class ReservationSettings(BaseSettings):
    """Settings for the upstream client, retry budgets and polling"""

    model_config = SettingsConfigDict(
        env_prefix="ETG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    base_url: str = Field(default="https://api.worldota.net/api/b2b/v3")
    partner_id: Optional[str] = Field(default=None, description="Upstream key id (basic auth username)")
    api_key: Optional[SecretStr] = Field(default=None, description="Upstream API key (basic auth password)")

    timeouts: StepTimeouts = Field(default_factory=StepTimeouts)

    # Retry budgets; delays in seconds
    max_retries: int = Field(default=3, ge=0, le=10)
    submit_max_retries: int = Field(default=1, ge=0, le=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)

    # Status polling
    poll_interval: float = Field(default=3.0, ge=0)
    poll_timeout: float = Field(default=60.0, ge=0)

    language: str = Field(default="en", min_length=2, max_length=5)
    default_residency: str = Field(default="us", min_length=2, max_length=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    price_comparison: PriceComparisonMode = Field(default=PriceComparisonMode.FIRST_OPTION)
    rate_limiting_enabled: bool = Field(default=True)

    # Connection pool shared by all concurrent bookings
    max_connections: int = Field(default=25, ge=1)
    max_keepalive_connections: int = Field(default=10, ge=0)

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v, info):
        initial = info.data.get("initial_delay")
        if initial is not None and v < initial:
            raise ValueError("max_delay must not be smaller than initial_delay")
        return v

    @field_validator("default_residency", "currency")
    @classmethod
    def normalize_case(cls, v, info):
        return v.upper() if info.field_name == "currency" else v.lower()

    def credentials(self) -> tuple:
        """Basic auth pair for the upstream client"""
        if not self.partner_id or self.api_key is None:
            raise ConfigurationError("ETG_PARTNER_ID and ETG_API_KEY must be set")
        return self.partner_id, self.api_key.get_secret_value()


@lru_cache(maxsize=1)
def get_settings() -> ReservationSettings:
    return ReservationSettings()
