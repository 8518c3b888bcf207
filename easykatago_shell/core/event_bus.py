"""Publish/subscribe bus for backend events and bridge state changes."""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, List

from ..constants import EventTopic


@dataclass(frozen=True)
class Event:
    topic: str
    payload: Any
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[Event], None]


class EventBus:
    """Thread-safe event bus; subscribe to ``EventTopic.ANY`` to see every topic."""

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Subscriber]] = defaultdict(list)
        self._lock = threading.RLock()
        self._logger = logging.getLogger("bridge.events")

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers[_topic_key(topic)].append(callback)

    def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        with self._lock:
            listeners = self._subscribers.get(_topic_key(topic), [])
            if callback in listeners:
                listeners.remove(callback)

    def publish(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._subscribers.get(event.topic, []))
            if event.topic != EventTopic.ANY.value:
                listeners.extend(self._subscribers.get(EventTopic.ANY.value, []))
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # one broken listener must not stop delivery to the others
                self._logger.exception("Event listener for %s failed", event.topic)


def _topic_key(topic) -> str:
    return topic.value if isinstance(topic, EventTopic) else topic


__all__ = ["Event", "EventBus"]
