"""
Billing context.

Every entry point of the billing core takes a ``BillingContext`` instead of
reaching for a global billing instance. It bundles the collaborators:
storage, payments, the event publisher, the time source, lifecycle
configuration and metrics.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from dotmac.billing_core.config import LifecycleConfig
from dotmac.billing_core.events import EventPublisher, EventSink
from dotmac.billing_core.metrics import LifecycleMetrics
from dotmac.billing_core.time_source import SystemTimeSource, TimeSource

if TYPE_CHECKING:
    from dotmac.billing_core.adapters.payment import PaymentAdapter
    from dotmac.billing_core.adapters.storage import StorageAdapter
    from dotmac.billing_core.settings import Settings


@dataclass
class BillingContext:
    """Collaborators shared by the billing core services."""

    storage: "StorageAdapter"
    payments: "PaymentAdapter"
    events: EventPublisher
    clock: TimeSource = field(default_factory=SystemTimeSource)
    config: LifecycleConfig = field(default_factory=LifecycleConfig)
    metrics: LifecycleMetrics = field(default_factory=LifecycleMetrics)

    @classmethod
    def create(
        cls,
        storage: "StorageAdapter",
        payments: "PaymentAdapter",
        sinks: Iterable[EventSink] | None = None,
        clock: TimeSource | None = None,
        config: LifecycleConfig | None = None,
        settings: "Settings | None" = None,
        metrics: LifecycleMetrics | None = None,
    ) -> "BillingContext":
        """Build a context, filling defaults.

        ``config`` wins over ``settings``; with neither, library defaults apply.
        """
        if config is None:
            config = LifecycleConfig.from_settings(settings) if settings else LifecycleConfig()
        if metrics is None:
            enabled = settings.observability.enable_metrics if settings else True
            metrics = LifecycleMetrics(enabled=enabled)
        return cls(
            storage=storage,
            payments=payments,
            events=EventPublisher(sinks, metrics=metrics),
            clock=clock or SystemTimeSource(),
            config=config,
            metrics=metrics,
        )

    def now(self) -> datetime:
        return self.clock.now()
