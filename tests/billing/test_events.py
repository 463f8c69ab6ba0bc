"""
Tests for event publishing.
"""

from datetime import UTC, datetime

import pytest

from dotmac.billing_core.events import (
    EVENT_SCHEMA_VERSION,
    EventPublisher,
    EventSink,
    InMemoryEventSink,
    LifecycleEventType,
    build_event,
)
from dotmac.billing_core.metrics import LifecycleMetrics

OCCURRED = datetime(2024, 2, 1, tzinfo=UTC)


class ExplodingSink:
    async def on_event(self, event_type, payload):
        raise RuntimeError("sink down")


@pytest.mark.unit
class TestEvents:
    def test_payload_is_json_ready(self):
        event = build_event(
            LifecycleEventType.SUBSCRIPTION_RENEWED,
            occurred_at=OCCURRED,
            subscription_id="sub_1",
            customer_id="cus_1",
            amount=10000,
            period_end=datetime(2024, 3, 1, tzinfo=UTC),
        )

        payload = event.to_payload()

        assert payload["type"] == "subscription.renewed"
        assert payload["version"] == EVENT_SCHEMA_VERSION
        assert payload["data"]["amount"] == 10000
        assert payload["data"]["period_end"] == "2024-03-01T00:00:00Z"
        assert payload["event_id"]

    def test_in_memory_sink_is_an_event_sink(self):
        assert isinstance(InMemoryEventSink(), EventSink)


@pytest.mark.unit
class TestEventPublisher:
    @pytest.mark.asyncio
    async def test_delivers_to_every_sink(self):
        first, second = InMemoryEventSink(), InMemoryEventSink()
        publisher = EventPublisher([first, second])

        await publisher.publish(
            build_event(LifecycleEventType.INVOICE_PAID, occurred_at=OCCURRED, invoice_id="inv_1")
        )

        assert first.types == second.types == ["invoice.paid"]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_block_others(self):
        recorder = InMemoryEventSink()
        publisher = EventPublisher(
            [ExplodingSink(), recorder], metrics=LifecycleMetrics(enabled=False)
        )

        await publisher.publish_all(
            [
                build_event(LifecycleEventType.SUBSCRIPTION_PAUSED, occurred_at=OCCURRED),
                build_event(LifecycleEventType.SUBSCRIPTION_RESUMED, occurred_at=OCCURRED),
            ]
        )

        assert recorder.types == ["subscription.paused", "subscription.resumed"]

    @pytest.mark.asyncio
    async def test_add_sink_and_clear(self):
        publisher = EventPublisher()
        sink = InMemoryEventSink()
        publisher.add_sink(sink)

        await publisher.publish(
            build_event(LifecycleEventType.SUBSCRIPTION_CREATED, occurred_at=OCCURRED)
        )
        assert publisher.sinks == [sink]
        assert len(sink.of_type("subscription.created")) == 1

        sink.clear()
        assert sink.events == []
