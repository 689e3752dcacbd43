"""Observer interface for lifecycle notifications."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

log = logging.getLogger(__name__)

Subscriber = Callable[[str, Any], None]


class EventBus:
    """Topic-based publish/subscribe owned by an engine instance.

    Callbacks receive ``(topic, payload)``.  Subscribing to ``"*"`` receives
    every topic.  A failing subscriber is logged and does not prevent
    delivery to the rest.
    """

    def __init__(self) -> None:
        self._subs: dict[str, list[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        topic = str(getattr(topic, "value", topic))
        with self._lock:
            self._subs[topic].append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subs.get(topic, []):
                    self._subs[topic].remove(callback)

        return _unsubscribe

    def publish(self, topic: str, payload: Any = None) -> int:
        """Deliver *payload* to subscribers of *topic*; returns delivered count."""
        topic = str(getattr(topic, "value", topic))
        with self._lock:
            targets = list(self._subs.get(topic, [])) + list(self._subs.get("*", []))
        delivered = 0
        for cb in targets:
            try:
                cb(topic, payload)
                delivered += 1
            except Exception:
                log.exception("Subscriber %r failed on topic %s", cb, topic)
        return delivered

    def subscriber_count(self, topic: str | None = None) -> int:
        with self._lock:
            if topic is None:
                return sum(len(v) for v in self._subs.values())
            return len(self._subs.get(str(getattr(topic, "value", topic)), []))
