"""Centralized configuration using pydantic-settings.

Settings are loaded from environment variables (prefix ``BILLING_``) and an
optional ``.env`` file. Library entry points never read these directly; they
receive a ``BillingContext`` built from them.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class CrossIntervalPolicy(str, Enum):
    """How to treat a plan change between prices with different billing intervals."""

    REJECT = "reject"
    PERIOD_END = "period_end"


class CombinationOrder(str, Enum):
    """Order in which several promo codes are combined on one charge."""

    LIST_ORDER = "list_order"
    LARGEST_FIRST = "largest_first"
    PRIORITY = "priority"


class Settings(BaseSettings):
    """Billing core settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: BILLING_LIFECYCLE__GRACE_PERIOD_DAYS=10
    """

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field("dotmac-billing-core", description="Application name")

    # ============================================================
    # Lifecycle
    # ============================================================

    class LifecycleSettings(BaseModel):
        """Renewal, retry and grace period configuration."""

        grace_period_days: int = Field(7, ge=0, description="Grace period after retries run out")
        retry_intervals: list[int] = Field(
            default_factory=lambda: [1, 3, 5],
            description="Day offsets between failed payment attempts",
        )
        auto_convert_trials: bool = Field(
            True, description="Charge the first period automatically when a trial ends"
        )
        batch_size: int = Field(500, ge=1, description="Max subscriptions per processing pass")
        max_concurrency: int = Field(1, ge=1, description="Subscriptions processed in parallel")

        @field_validator("retry_intervals")
        @classmethod
        def validate_retry_intervals(cls, v: list[int]) -> list[int]:
            """Retry offsets must be non-empty positive day counts."""
            if not v:
                raise ValueError("retry_intervals must contain at least one offset")
            if any(offset < 1 for offset in v):
                raise ValueError("retry_intervals offsets must be >= 1 day")
            return v

    lifecycle: LifecycleSettings = LifecycleSettings()  # type: ignore[call-arg]

    # ============================================================
    # Proration
    # ============================================================

    class ProrationSettings(BaseModel):
        """Mid-cycle price change configuration."""

        cross_interval_policy: CrossIntervalPolicy = Field(
            CrossIntervalPolicy.PERIOD_END,
            description="Policy for changes between different billing intervals",
        )

    proration: ProrationSettings = ProrationSettings()  # type: ignore[call-arg]

    # ============================================================
    # Promotions
    # ============================================================

    class PromotionSettings(BaseModel):
        """Promo code combination configuration."""

        combination_order: CombinationOrder = Field(
            CombinationOrder.LIST_ORDER,
            description="Order in which stackable codes are applied",
        )

    promotions: PromotionSettings = PromotionSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging and metrics configuration."""

        service_name: str = Field("billing-core", description="Service name added to log entries")
        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")
        enable_metrics: bool = Field(True, description="Enable metrics collection")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Database
    # ============================================================

    class DatabaseSettings(BaseModel):
        """SQL storage configuration."""

        url: str = Field(
            "sqlite+aiosqlite:///./billing.db", description="SQLAlchemy async database URL"
        )
        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance (used by the CLI)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
