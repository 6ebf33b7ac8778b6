from __future__ import annotations

import logging
from collections.abc import Generator

import pytest

from salesops import events
from salesops.context import reset_correlation_id, set_correlation_id
from salesops.core.events import InProcessEventBus, InternalEvent, event_bus


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def test_failing_subscriber_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    bus = InProcessEventBus()
    received: list[InternalEvent] = []

    def broken(event: InternalEvent) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe("payment.verified", broken)
    bus.subscribe("payment.verified", received.append)

    with caplog.at_level(logging.ERROR, logger="salesops.events"):
        bus.publish("payment.verified", {"payment_id": "p-1"})

    assert [event.payload["payment_id"] for event in received] == ["p-1"]
    assert any(record.getMessage() == "event.handler_failed" for record in caplog.records)


def test_unsubscribed_handler_is_not_called() -> None:
    bus = InProcessEventBus()
    received: list[InternalEvent] = []
    bus.subscribe("payment.rejected", received.append)
    bus.unsubscribe("payment.rejected", received.append)
    bus.unsubscribe("payment.rejected", received.append)

    bus.publish("payment.rejected", {"payment_id": "p-2"})

    assert received == []


def test_publish_fills_correlation_id_and_forwards_to_bus() -> None:
    received: list[InternalEvent] = []
    event_bus.subscribe("quotation.payment_status_changed", received.append)
    token = set_correlation_id("corr-bus")
    try:
        events.publish({"event_type": "quotation.payment_status_changed", "to_status": "deposit_paid"})
    finally:
        reset_correlation_id(token)
        event_bus.unsubscribe("quotation.payment_status_changed", received.append)

    assert received and received[0].payload["correlation_id"] == "corr-bus"
    assert events.events_of_type("quotation.payment_status_changed")[0]["to_status"] == "deposit_paid"
