import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict[str, Any]], None]


class EventBus:
    """
    Publishes status events to whoever subscribed (an admin push channel,
    a metrics exporter, tests...). Delivery is synchronous and best-effort:
    a failing subscriber is logged and skipped.
    """

    COLLECTOR_STATUS_CHANGED = "collector_status_changed"
    CACHE_CLEARED = "cache_cleared"

    def __init__(self):
        self.subscribers: list[Subscriber] = []
        self.lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Adds a subscriber; returns a callable that removes it again.
        """
        with self.lock:
            self.subscribers.append(callback)

        def unsubscribe():
            with self.lock:
                if callback in self.subscribers:
                    self.subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: str, data: dict[str, Any]) -> None:
        with self.lock:
            subscribers = list(self.subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event, data)
            except Exception:
                logger.exception(f"Event subscriber failed handling {event}")

    def collector_status_changed(self, status: dict[str, Any]) -> None:
        self.publish(self.COLLECTOR_STATUS_CHANGED, status)

    def cache_cleared(self, pattern: str | None) -> None:
        self.publish(self.CACHE_CLEARED, {"pattern": pattern})
