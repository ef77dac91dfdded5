"""Configuration settings for the billing engine."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingSettings(BaseSettings):
    """Process-level settings loaded from environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Tax defaults
    vat_rate: float = Field(default=0.12, validation_alias="BILLING_VAT_RATE")
    default_withholding_rate: float = Field(
        default=0.02, validation_alias="BILLING_DEFAULT_WITHHOLDING_RATE"
    )
    default_withholding_code: str = Field(
        default="WC160", validation_alias="BILLING_DEFAULT_WITHHOLDING_CODE"
    )

    # Numbering
    default_invoice_prefix: str = Field(
        default="INV", validation_alias="BILLING_DEFAULT_INVOICE_PREFIX"
    )

    # Scheduler cadence (daily sweep)
    scheduler_enabled: bool = Field(default=True, validation_alias="SCHEDULER_ENABLED")
    scheduler_hour: int = Field(default=8, ge=0, le=23, validation_alias="SCHEDULER_HOUR")
    scheduler_minute: int = Field(
        default=0, ge=0, le=59, validation_alias="SCHEDULER_MINUTE"
    )
    scheduler_timezone: str = Field(
        default="Asia/Manila", validation_alias="SCHEDULER_TIMEZONE"
    )

    # Read-through cache for runtime settings
    settings_cache_ttl_seconds: float = Field(
        default=300.0, validation_alias="SETTINGS_CACHE_TTL_SECONDS"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> BillingSettings:
    """Get cached settings instance."""
    return BillingSettings()
