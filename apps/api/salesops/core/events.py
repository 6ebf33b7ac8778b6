import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("salesops.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out to subscribers.

    Events are published after the originating transaction commits, so a
    failing subscriber is logged and never surfaces to the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                handler(event)
            except Exception:
                logger.exception("event.handler_failed", extra={"action": event_name})


event_bus = InProcessEventBus()
