"""Pricing calculations."""

from dotmac.billing_core.pricing.proration import (
    ProrationResult,
    calculate_proration,
    try_calculate_proration,
)

__all__ = ["ProrationResult", "calculate_proration", "try_calculate_proration"]
