"""Storage and payment collaborator ports with in-process implementations."""

from dotmac.billing_core.adapters.memory import InMemoryStorageAdapter
from dotmac.billing_core.adapters.payment import (
    CallbackPaymentAdapter,
    CardTokenPaymentMethod,
    Payment,
    PaymentAdapter,
    PaymentMethod,
    PaymentRequest,
    PaymentStatus,
    SavedPaymentMethod,
)
from dotmac.billing_core.adapters.simulated import (
    SimulatedOutcome,
    SimulatedPaymentAdapter,
    TestCards,
)
from dotmac.billing_core.adapters.storage import StorageAdapter

__all__ = [
    "CallbackPaymentAdapter",
    "CardTokenPaymentMethod",
    "Payment",
    "PaymentAdapter",
    "PaymentMethod",
    "PaymentRequest",
    "PaymentStatus",
    "SavedPaymentMethod",
    "StorageAdapter",
    "InMemoryStorageAdapter",
    "SimulatedOutcome",
    "SimulatedPaymentAdapter",
    "TestCards",
]
