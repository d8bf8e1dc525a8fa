"""
Typed publish/subscribe for settings change notifications.

Subscribers register a handler per topic and get back a Subscription they
must cancel at teardown. Handlers may be plain callables or coroutine
functions; publish awaits them in registration order.
"""

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Union

logger = logging.getLogger(__name__)

Handler = Callable[[], Union[None, Awaitable[None]]]


class Topic(str, Enum):
    MODEL_KEY = "model_key"
    CHAIN_TYPE = "chain_type"
    SETTINGS = "settings"


class Subscription:
    """Handle returned by EventBus.subscribe."""

    def __init__(self, bus: "EventBus", topic: Topic, handler: Handler) -> None:
        self._bus = bus
        self.topic = topic
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: dict[Topic, list[Subscription]] = defaultdict(list)

    def subscribe(self, topic: Topic, handler: Handler) -> Subscription:
        subscription = Subscription(self, topic, handler)
        self._subscriptions[topic].append(subscription)
        return subscription

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscriptions[topic])

    async def publish(self, topic: Topic) -> None:
        """Notify every subscriber of `topic`; the list is copied first."""
        for subscription in list(self._subscriptions[topic]):
            logger.debug("Dispatching %s to %r", topic.value, subscription.handler)
            result = subscription.handler()
            if inspect.isawaitable(result):
                await result

    def _remove(self, subscription: Subscription) -> None:
        handlers = self._subscriptions[subscription.topic]
        if subscription in handlers:
            handlers.remove(subscription)
