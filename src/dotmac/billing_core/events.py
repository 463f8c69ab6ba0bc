"""
Lifecycle event types and the event publishing port.

This module defines the closed, versioned set of events the state machine,
lifecycle processor and services publish, and the ``EventPublisher`` that
delivers them to registered sinks. Events are only published after the
change they describe has been persisted.
"""

from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from dotmac.billing_core.metrics import LifecycleMetrics

logger = structlog.get_logger(__name__)

EVENT_SCHEMA_VERSION = 1


# ============================================================================
# Event Types
# ============================================================================


class LifecycleEventType(str, Enum):
    """Lifecycle event type constants."""

    # Subscription events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_ACTIVATION_FAILED = "subscription.activation_failed"
    SUBSCRIPTION_TRIAL_CONVERTED = "subscription.trial_converted"
    SUBSCRIPTION_TRIAL_CONVERSION_FAILED = "subscription.trial_conversion_failed"
    SUBSCRIPTION_TRIAL_EXPIRED = "subscription.trial_expired"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_RENEWAL_FAILED = "subscription.renewal_failed"
    SUBSCRIPTION_RETRY_SCHEDULED = "subscription.retry_scheduled"
    SUBSCRIPTION_RETRY_SUCCEEDED = "subscription.retry_succeeded"
    SUBSCRIPTION_RECOVERED = "subscription.recovered"
    SUBSCRIPTION_RETRY_FAILED = "subscription.retry_failed"
    SUBSCRIPTION_GRACE_PERIOD_STARTED = "subscription.grace_period_started"
    SUBSCRIPTION_CANCELED_NONPAYMENT = "subscription.canceled_nonpayment"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_CANCEL_SCHEDULED = "subscription.cancel_scheduled"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
    SUBSCRIPTION_PLAN_CHANGE_SCHEDULED = "subscription.plan_change_scheduled"
    SUBSCRIPTION_ADDON_ADDED = "subscription.addon_added"
    SUBSCRIPTION_ADDON_REMOVED = "subscription.addon_removed"

    # Promotion events
    PROMO_CODE_REDEEMED = "promo_code.redeemed"

    # Invoice events
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAID = "invoice.paid"
    INVOICE_VOIDED = "invoice.voided"


class LifecycleEvent(BaseModel):
    """One published event."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid4().hex)
    type: LifecycleEventType
    version: int = EVENT_SCHEMA_VERSION
    subscription_id: str | None = None
    customer_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible payload handed to sinks."""
        return self.model_dump(mode="json")


def build_event(
    event_type: LifecycleEventType,
    occurred_at: datetime,
    subscription_id: str | None = None,
    customer_id: str | None = None,
    **data: Any,
) -> LifecycleEvent:
    return LifecycleEvent(
        type=event_type,
        subscription_id=subscription_id,
        customer_id=customer_id,
        data=data,
        occurred_at=occurred_at,
    )


# ============================================================================
# Sinks and publisher
# ============================================================================


@runtime_checkable
class EventSink(Protocol):
    """Receives one call per published event."""

    async def on_event(self, event_type: str, payload: dict[str, Any]) -> None: ...


class InMemoryEventSink:
    """Records events in memory. Used in tests and simulations."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def on_event(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def of_type(self, event_type: LifecycleEventType | str) -> list[dict[str, Any]]:
        wanted = event_type.value if isinstance(event_type, LifecycleEventType) else event_type
        return [payload for name, payload in self.events if name == wanted]

    @property
    def types(self) -> list[str]:
        return [name for name, _ in self.events]

    def clear(self) -> None:
        self.events.clear()


class EventPublisher:
    """Delivers events to every registered sink.

    A failing sink is logged and counted but never raises into the caller:
    by the time an event is published the transition is already persisted.
    """

    def __init__(
        self,
        sinks: Iterable[EventSink] | None = None,
        metrics: "LifecycleMetrics | None" = None,
    ) -> None:
        self._sinks: list[EventSink] = list(sinks or [])
        self._metrics = metrics

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    @property
    def sinks(self) -> list[EventSink]:
        return list(self._sinks)

    async def publish(self, event: LifecycleEvent) -> None:
        payload = event.to_payload()
        for sink in self._sinks:
            try:
                await sink.on_event(event.type.value, payload)
            except Exception as exc:
                logger.error(
                    "events.delivery_failed",
                    event_type=event.type.value,
                    event_id=event.event_id,
                    sink=type(sink).__name__,
                    error=str(exc),
                    exc_info=True,
                )
                if self._metrics is not None:
                    self._metrics.record_event_delivery_failure(event.type.value)

        logger.info(
            "events.published",
            event_type=event.type.value,
            event_id=event.event_id,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
        )

    async def publish_all(self, events: Iterable[LifecycleEvent]) -> None:
        for event in events:
            await self.publish(event)


__all__ = [
    "EVENT_SCHEMA_VERSION",
    "LifecycleEventType",
    "LifecycleEvent",
    "build_event",
    "EventSink",
    "InMemoryEventSink",
    "EventPublisher",
]
