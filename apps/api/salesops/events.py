from __future__ import annotations

from typing import Any

from salesops.context import get_correlation_id
from salesops.core.events import event_bus

# Every envelope published in this process; tests assert against it.
published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def events_of_type(event_type: str) -> list[dict[str, Any]]:
    return [item for item in published_events if item.get("event_type") == event_type]
