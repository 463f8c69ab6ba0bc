"""
DotMac Billing Core - provider-agnostic subscription lifecycle and billing.

Provides:
- Plan catalog, add-ons and entitlement resolution
- Promo code validation, discount calculation and redemption
- Proration of mid-period plan changes
- Subscription state machine and the batch lifecycle processor
- Pluggable storage and payment adapters
"""

from dotmac.billing_core.exceptions import (
    AdapterError,
    AddOnNotFoundError,
    BillingError,
    BillingValidationError,
    ConcurrencyConflictError,
    CurrencyMismatchError,
    CustomerNotFoundError,
    InvalidPromoCodeError,
    InvoiceNotFoundError,
    InvoiceStateError,
    NotFoundError,
    PaymentAdapterError,
    PaymentDeclinedError,
    PromoCodeExhaustedError,
    PromoCodeNotFoundError,
    ProrationUndefinedError,
    StorageAdapterError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    UnknownPlanError,
    UnknownPriceError,
)
from dotmac.billing_core.settings import (
    CombinationOrder,
    CrossIntervalPolicy,
    Settings,
    get_settings,
)
from dotmac.billing_core.config import LifecycleConfig
from dotmac.billing_core.time_source import SimulatedTimeSource, SystemTimeSource, TimeSource
from dotmac.billing_core.events import (
    EventSink,
    InMemoryEventSink,
    LifecycleEvent,
    LifecycleEventType,
)
from dotmac.billing_core.context import BillingContext
from dotmac.billing_core.catalog import UNLIMITED, AddOn, BillingInterval, Plan, Price
from dotmac.billing_core.customers import Customer
from dotmac.billing_core.promotions import (
    DiscountResult,
    DiscountType,
    PromoCode,
    PromoCodeResolver,
    StackingMode,
)
from dotmac.billing_core.pricing import ProrationResult, calculate_proration
from dotmac.billing_core.entitlements import (
    EffectiveCapabilities,
    EntitlementService,
    resolve_capabilities,
)
from dotmac.billing_core.invoicing import (
    ChargeRequest,
    ChargeResult,
    Invoice,
    InvoiceService,
    InvoiceStatus,
)
from dotmac.billing_core.adapters import (
    InMemoryStorageAdapter,
    Payment,
    PaymentAdapter,
    PaymentStatus,
    SimulatedPaymentAdapter,
    StorageAdapter,
)
from dotmac.billing_core.subscriptions import (
    ChangePlanRequest,
    ProrationBehavior,
    Subscription,
    SubscriptionStatus,
)
from dotmac.billing_core.subscriptions.lifecycle import (
    LifecycleProcessor,
    ProcessAllResult,
    process_all,
)
from dotmac.billing_core.subscriptions.service import SubscriptionService

__version__ = "1.0.0"

__all__ = [
    # Errors
    "BillingError",
    "BillingValidationError",
    "CurrencyMismatchError",
    "InvalidPromoCodeError",
    "PromoCodeExhaustedError",
    "UnknownPlanError",
    "UnknownPriceError",
    "ProrationUndefinedError",
    "SubscriptionStateError",
    "InvoiceStateError",
    "NotFoundError",
    "SubscriptionNotFoundError",
    "CustomerNotFoundError",
    "PromoCodeNotFoundError",
    "InvoiceNotFoundError",
    "AddOnNotFoundError",
    "PaymentDeclinedError",
    "AdapterError",
    "PaymentAdapterError",
    "StorageAdapterError",
    "ConcurrencyConflictError",
    # Configuration
    "Settings",
    "get_settings",
    "CrossIntervalPolicy",
    "CombinationOrder",
    "LifecycleConfig",
    # Time
    "TimeSource",
    "SystemTimeSource",
    "SimulatedTimeSource",
    # Events
    "EventSink",
    "InMemoryEventSink",
    "LifecycleEvent",
    "LifecycleEventType",
    # Wiring
    "BillingContext",
    # Catalog
    "UNLIMITED",
    "AddOn",
    "BillingInterval",
    "Plan",
    "Price",
    "Customer",
    # Promotions
    "DiscountResult",
    "DiscountType",
    "PromoCode",
    "PromoCodeResolver",
    "StackingMode",
    # Pricing
    "ProrationResult",
    "calculate_proration",
    # Entitlements
    "EffectiveCapabilities",
    "EntitlementService",
    "resolve_capabilities",
    # Invoicing
    "ChargeRequest",
    "ChargeResult",
    "Invoice",
    "InvoiceService",
    "InvoiceStatus",
    # Adapters
    "StorageAdapter",
    "InMemoryStorageAdapter",
    "PaymentAdapter",
    "Payment",
    "PaymentStatus",
    "SimulatedPaymentAdapter",
    # Subscriptions
    "ChangePlanRequest",
    "ProrationBehavior",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionService",
    "LifecycleProcessor",
    "ProcessAllResult",
    "process_all",
]
