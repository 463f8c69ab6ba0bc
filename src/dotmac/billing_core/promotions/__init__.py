"""Promo code validation, combination and redemption."""

from dotmac.billing_core.promotions.models import (
    AppliedDiscount,
    DiscountContext,
    DiscountResult,
    DiscountType,
    PromoCode,
    PromoValidation,
    SkippedDiscount,
    StackingMode,
)
from dotmac.billing_core.promotions.resolver import (
    PromoCodeResolver,
    calculate_discount,
    combine,
    describe,
    normalize_code,
    validate,
)

__all__ = [
    "AppliedDiscount",
    "DiscountContext",
    "DiscountResult",
    "DiscountType",
    "PromoCode",
    "PromoValidation",
    "SkippedDiscount",
    "StackingMode",
    "PromoCodeResolver",
    "calculate_discount",
    "combine",
    "describe",
    "normalize_code",
    "validate",
]
