"""
Lifecycle configuration.
"""

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dotmac.billing_core.settings import CombinationOrder, CrossIntervalPolicy

if TYPE_CHECKING:
    from dotmac.billing_core.settings import Settings


class LifecycleConfig(BaseModel):
    """Configuration consumed by the state machine and lifecycle processor."""

    model_config = ConfigDict(frozen=True)

    grace_period_days: int = Field(7, ge=0, description="Grace period after retries run out")
    retry_intervals: tuple[int, ...] = Field(
        (1, 3, 5), description="Day offsets between failed payment attempts"
    )
    auto_convert_trials: bool = Field(True, description="Charge automatically at trial end")
    batch_size: int = Field(500, ge=1, description="Max subscriptions per processing pass")
    max_concurrency: int = Field(1, ge=1, description="Subscriptions processed in parallel")
    cross_interval_policy: CrossIntervalPolicy = Field(
        CrossIntervalPolicy.PERIOD_END,
        description="Policy for plan changes between different billing intervals",
    )
    combination_order: CombinationOrder = Field(
        CombinationOrder.LIST_ORDER, description="Promo code combination order"
    )

    @field_validator("retry_intervals")
    @classmethod
    def validate_retry_intervals(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if not v:
            raise ValueError("retry_intervals must contain at least one offset")
        if any(offset < 1 for offset in v):
            raise ValueError("retry_intervals offsets must be >= 1 day")
        return v

    @property
    def max_retries(self) -> int:
        """Failed attempts tolerated in past_due before the grace period starts."""
        return len(self.retry_intervals)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "LifecycleConfig":
        """Create configuration from loaded settings."""
        return cls(
            grace_period_days=settings.lifecycle.grace_period_days,
            retry_intervals=tuple(settings.lifecycle.retry_intervals),
            auto_convert_trials=settings.lifecycle.auto_convert_trials,
            batch_size=settings.lifecycle.batch_size,
            max_concurrency=settings.lifecycle.max_concurrency,
            cross_interval_policy=settings.proration.cross_interval_policy,
            combination_order=settings.promotions.combination_order,
        )
