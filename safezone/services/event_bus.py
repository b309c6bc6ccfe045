"""
Event Bus - typed in-process publish/subscribe.

DESIGN PRINCIPLES:
- Two explicit topics: geofence_events (TransitionEvent) and case_events (CaseEvent)
- Bounded subscriber list per topic
- Delivery is synchronous, in subscription order, at most once per
  subscriber per publish
- A failing subscriber is logged and skipped; it never affects the
  publisher or the other subscribers
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from safezone.core.errors import QuotaExceeded, ValidationError
from safezone.core.settings import Settings, settings

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    GEOFENCE_EVENTS = "geofence_events"
    CASE_EVENTS = "case_events"


Handler = Callable[[Any], None]


@dataclass(frozen=True)
class Subscription:
    id: int
    topic: Topic
    name: str
    handler: Handler


class EventBus:
    """In-process observer registry with one subscriber list per topic."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self.max_subscribers = self.config.MAX_SUBSCRIBERS_PER_TOPIC
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: Dict[Topic, List[Subscription]] = {topic: [] for topic in Topic}
        self._published: Dict[Topic, int] = {topic: 0 for topic in Topic}
        self._failures: Dict[Topic, int] = {topic: 0 for topic in Topic}

    def subscribe(self, topic: Topic, handler: Handler, name: Optional[str] = None) -> Subscription:
        """
        Register a handler on a topic.

        Raises:
            ValidationError: Unknown topic or non-callable handler
            QuotaExceeded: Topic already has max_subscribers handlers
        """
        topic = self._topic(topic)
        if not callable(handler):
            raise ValidationError("Subscriber handler must be callable")

        with self._lock:
            subscribers = self._subscribers[topic]
            if len(subscribers) >= self.max_subscribers:
                raise QuotaExceeded(
                    f"Topic {topic.value} already has {self.max_subscribers} subscribers",
                    details={"topic": topic.value, "limit": self.max_subscribers},
                )
            subscription = Subscription(
                id=next(self._ids),
                topic=topic,
                name=name or getattr(handler, "__qualname__", "subscriber"),
                handler=handler,
            )
            subscribers.append(subscription)

        logger.debug(f"Subscribed {subscription.name} to {topic.value}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            subscribers = self._subscribers[subscription.topic]
            for idx, existing in enumerate(subscribers):
                if existing.id == subscription.id:
                    del subscribers[idx]
                    return True
        return False

    def publish(self, topic: Topic, message: Any) -> int:
        """
        Deliver a message to every current subscriber of a topic.

        Returns:
            Number of subscribers that handled the message without raising
        """
        topic = self._topic(topic)
        with self._lock:
            subscribers = list(self._subscribers[topic])
            self._published[topic] += 1

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.handler(message)
                delivered += 1
            except Exception as e:
                with self._lock:
                    self._failures[topic] += 1
                logger.error(
                    f"Subscriber {subscription.name} failed on {topic.value}: {e}",
                    exc_info=True,
                )
        return delivered

    def subscriber_count(self, topic: Topic) -> int:
        with self._lock:
            return len(self._subscribers[self._topic(topic)])

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                topic.value: {
                    "subscribers": len(self._subscribers[topic]),
                    "published": self._published[topic],
                    "failures": self._failures[topic],
                }
                for topic in Topic
            }

    @staticmethod
    def _topic(topic: Any) -> Topic:
        try:
            return Topic(topic)
        except ValueError:
            raise ValidationError(f"Unknown topic: {topic}")
