"""
Promo code models.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dotmac.billing_core.dates import ensure_utc
from dotmac.billing_core.money import validate_currency


class DiscountType(str, Enum):
    """Discount types."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class StackingMode(str, Enum):
    """Whether a code may combine with other codes on one charge."""

    NONE = "none"
    STACK = "stack"


# ============================================================================
# Conditions
# ============================================================================


class FirstPurchaseCondition(BaseModel):
    type: Literal["first_purchase"] = "first_purchase"
    value: bool = True


class MinAmountCondition(BaseModel):
    type: Literal["min_amount"] = "min_amount"
    value: int = Field(ge=0, description="Minimum charge amount in minor units")


class MinQuantityCondition(BaseModel):
    type: Literal["min_quantity"] = "min_quantity"
    value: int = Field(ge=1)


class SpecificPlansCondition(BaseModel):
    type: Literal["specific_plans"] = "specific_plans"
    value: list[str] = Field(default_factory=list)


class SpecificProductsCondition(BaseModel):
    type: Literal["specific_products"] = "specific_products"
    value: list[str] = Field(default_factory=list)


class DateRangeCondition(BaseModel):
    type: Literal["date_range"] = "date_range"
    start: datetime | None = None
    end: datetime | None = None

    @field_validator("start", "end")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class CustomerTagCondition(BaseModel):
    type: Literal["customer_tag"] = "customer_tag"
    value: str = Field(min_length=1)


PromoCondition = Annotated[
    FirstPurchaseCondition
    | MinAmountCondition
    | MinQuantityCondition
    | SpecificPlansCondition
    | SpecificProductsCondition
    | DateRangeCondition
    | CustomerTagCondition,
    Field(discriminator="type"),
]


# ============================================================================
# Promo codes
# ============================================================================


class PromoCode(BaseModel):
    """A discount code.

    ``current_redemptions`` only ever grows, through the storage adapter's
    guarded increment.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    promo_code_id: str = Field(min_length=1)
    code: str = Field(min_length=3, max_length=64, description="Normalized, unique code")
    discount_type: DiscountType
    discount_value: int = Field(ge=0, description="Percent (0-100) or amount in minor units")
    currency: str | None = Field(None, description="Required for fixed amount codes")
    stacking_mode: StackingMode = StackingMode.NONE
    priority: int = Field(0, description="Higher applies first under the priority order")

    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_redemptions: int | None = Field(None, ge=1)
    current_redemptions: int = Field(0, ge=0)
    max_redemptions_per_customer: int | None = Field(None, ge=1)

    applicable_plan_ids: list[str] = Field(default_factory=list)
    applicable_product_ids: list[str] = Field(default_factory=list)
    conditions: list[PromoCondition] = Field(default_factory=list)

    active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.upper()

    @field_validator("currency")
    @classmethod
    def validate_currency_code(cls, v: str | None) -> str | None:
        return validate_currency(v) if v is not None else None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def validate_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_discount(self) -> "PromoCode":
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount_value must be between 0 and 100")
        if self.discount_type == DiscountType.FIXED_AMOUNT and self.currency is None:
            raise ValueError("fixed_amount promo codes require a currency")
        if self.valid_from and self.valid_until and self.valid_until < self.valid_from:
            raise ValueError("valid_until must not be before valid_from")
        return self

    @property
    def is_exhausted(self) -> bool:
        return self.max_redemptions is not None and self.current_redemptions >= self.max_redemptions


class DiscountContext(BaseModel):
    """The candidate charge a set of codes is evaluated against."""

    customer_id: str
    amount: int = Field(ge=0, description="Charge amount before discounts, minor units")
    currency: str
    plan_id: str | None = None
    product_ids: list[str] = Field(default_factory=list)
    quantity: int = Field(1, ge=1)
    is_new_customer: bool = False
    customer_tags: list[str] = Field(default_factory=list)
    now: datetime

    @field_validator("currency")
    @classmethod
    def validate_currency_code(cls, v: str) -> str:
        return validate_currency(v)

    @field_validator("now")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class PromoValidation(BaseModel):
    """Result of validating one code."""

    valid: bool
    code: str
    reason: str | None = None


class AppliedDiscount(BaseModel):
    """One code applied to a charge."""

    model_config = ConfigDict(frozen=True)

    promo_code_id: str
    code: str
    discount_type: DiscountType
    discount_value: int
    amount: int = Field(ge=0, description="Discount taken, minor units")
    description: str = ""


class SkippedDiscount(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    reason: str


class DiscountResult(BaseModel):
    """Combined discount for one charge."""

    original_amount: int
    discount_amount: int
    final_amount: int
    currency: str
    applied: list[AppliedDiscount] = Field(default_factory=list)
    skipped: list[SkippedDiscount] = Field(default_factory=list)

    @property
    def has_discount(self) -> bool:
        return self.discount_amount > 0


__all__ = [
    "DiscountType",
    "StackingMode",
    "FirstPurchaseCondition",
    "MinAmountCondition",
    "MinQuantityCondition",
    "SpecificPlansCondition",
    "SpecificProductsCondition",
    "DateRangeCondition",
    "CustomerTagCondition",
    "PromoCondition",
    "PromoCode",
    "DiscountContext",
    "PromoValidation",
    "AppliedDiscount",
    "SkippedDiscount",
    "DiscountResult",
]
