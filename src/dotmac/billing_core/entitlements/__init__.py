"""Entitlement and limit resolution."""

from dotmac.billing_core.entitlements.resolver import (
    EffectiveCapabilities,
    EntitlementService,
    LimitCheck,
    resolve_capabilities,
)

__all__ = ["EffectiveCapabilities", "EntitlementService", "LimitCheck", "resolve_capabilities"]
