"""
Lifecycle metrics and monitoring.

Instruments come from the OpenTelemetry API. Without a configured SDK the
API hands out no-op instruments, so recording is always safe.
"""

from typing import TYPE_CHECKING, Any

from opentelemetry import metrics

if TYPE_CHECKING:
    from opentelemetry.metrics import Counter, Histogram, Meter


class _NoopInstrument:
    """Stand-in instrument used when metrics are disabled in settings."""

    def add(self, *args: Any, **kwargs: Any) -> None:
        return None

    def record(self, *args: Any, **kwargs: Any) -> None:
        return None


class LifecycleMetrics:
    """Subscription lifecycle metrics collector"""

    def __init__(self, meter: "Meter | None" = None, enabled: bool = True) -> None:
        self.meter: "Meter | None" = None
        if enabled:
            self.meter = meter or metrics.get_meter("dotmac.billing_core")

        # Lifecycle metrics
        self.renewal_counter = self._create_counter(
            name="billing.subscription.renewed",
            description="Number of successful renewals, conversions and recoveries",
        )
        self.payment_attempt_counter = self._create_counter(
            name="billing.subscription.payment_attempts",
            description="Number of lifecycle payment attempts by outcome",
        )
        self.grace_counter = self._create_counter(
            name="billing.subscription.grace_started",
            description="Number of subscriptions entering the grace period",
        )
        self.cancel_counter = self._create_counter(
            name="billing.subscription.canceled",
            description="Number of subscription cancellations by reason",
        )
        self.conflict_counter = self._create_counter(
            name="billing.subscription.conflicts",
            description="Compare-and-swap writes lost to a concurrent writer",
        )
        self.adapter_error_counter = self._create_counter(
            name="billing.adapter.errors",
            description="Payment and storage collaborator failures",
        )
        self.payment_amount_histogram = self._create_histogram(
            name="billing.payment.amount",
            description="Charged amounts",
            unit="minor_units",
        )

        # Promotion metrics
        self.promo_redemption_counter = self._create_counter(
            name="billing.promo_code.redeemed",
            description="Number of promo code redemptions",
        )
        self.promo_refused_counter = self._create_counter(
            name="billing.promo_code.refused",
            description="Redemptions refused by the guarded increment",
        )

        # Event delivery metrics
        self.event_delivery_failure_counter = self._create_counter(
            name="billing.events.delivery_failed",
            description="Event sink deliveries that raised",
        )

    def record_payment_attempt(self, action: str, outcome: str, amount: int, currency: str) -> None:
        """Record a lifecycle payment attempt"""
        attributes = {"action": action, "outcome": outcome, "currency": currency}
        self.payment_attempt_counter.add(1, attributes)
        if outcome == "succeeded":
            self.payment_amount_histogram.record(amount, attributes)

    def record_renewal(self, action: str, currency: str) -> None:
        self.renewal_counter.add(1, {"action": action, "currency": currency})

    def record_grace_started(self) -> None:
        self.grace_counter.add(1)

    def record_cancellation(self, reason: str) -> None:
        self.cancel_counter.add(1, {"reason": reason})

    def record_conflict(self, operation: str) -> None:
        self.conflict_counter.add(1, {"operation": operation})

    def record_adapter_error(self, error_code: str) -> None:
        self.adapter_error_counter.add(1, {"error_code": error_code})

    def record_promo_redemption(self, code: str, accepted: bool) -> None:
        if accepted:
            self.promo_redemption_counter.add(1, {"code": code})
        else:
            self.promo_refused_counter.add(1, {"code": code})

    def record_event_delivery_failure(self, event_type: str) -> None:
        self.event_delivery_failure_counter.add(1, {"event_type": event_type})

    def _create_counter(
        self, name: str, description: str, unit: str = "1"
    ) -> "Counter | _NoopInstrument":
        if not self.meter:
            return _NoopInstrument()
        return self.meter.create_counter(name=name, description=description, unit=unit)

    def _create_histogram(
        self, name: str, description: str, unit: str = "1"
    ) -> "Histogram | _NoopInstrument":
        if not self.meter:
            return _NoopInstrument()
        return self.meter.create_histogram(name=name, description=description, unit=unit)
