"""In-process realtime feed of store changes."""

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Protocol

from ..logging_config import get_logger
from ..models import ChangeEvent, Topic

logger = get_logger(__name__)


EventHandler = Callable[[ChangeEvent], Awaitable[None]]
EventFilter = Callable[[ChangeEvent], bool]


class Subscription:
    """Handle returned by subscribe(); cancel() stops delivery immediately."""

    def __init__(
        self,
        feed: "ChangeFeed",
        topic: Topic,
        handler: EventHandler,
        where: EventFilter | None,
    ):
        self._feed = feed
        self.topic = topic
        self.handler = handler
        self.where = where
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        return self.active and (self.where is None or self.where(event))

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self)


class IChangeFeed(Protocol):
    """At-least-once pub/sub of store changes, filtered per subscriber."""

    def subscribe(
        self,
        topic: Topic,
        handler: EventHandler,
        where: EventFilter | None = None,
    ) -> Subscription:
        """Subscribe a handler to a topic, optionally filtered."""
        ...

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to every matching subscriber."""
        ...

    def stream(
        self, topic: Topic, where: EventFilter | None = None
    ) -> AsyncIterator[ChangeEvent]:
        """Lazy, unbounded sequence of matching events."""
        ...


class ChangeFeed:
    """In-memory change feed.

    Delivery is at-least-once: a publisher may announce the same change
    twice, and subscribers must dedup by record id.
    """

    def __init__(self) -> None:
        self._subscribers: dict[Topic, list[Subscription]] = {
            topic: [] for topic in Topic
        }

    def subscribe(
        self,
        topic: Topic,
        handler: EventHandler,
        where: EventFilter | None = None,
    ) -> Subscription:
        """Subscribe a handler to a topic, optionally filtered."""
        subscription = Subscription(self, topic, handler, where)
        self._subscribers[topic].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        handlers = self._subscribers[subscription.topic]
        if subscription in handlers:
            handlers.remove(subscription)

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscribers[topic])

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to every matching subscriber."""
        subscriptions = [
            s for s in list(self._subscribers[event.topic]) if s.matches(event)
        ]
        if not subscriptions:
            return

        # Call all handlers concurrently
        results = await asyncio.gather(
            *[s.handler(event) for s in subscriptions],
            return_exceptions=True,
        )

        for subscription, result in zip(subscriptions, results):
            if isinstance(result, Exception):
                logger.error(
                    "Error in %s handler %s: %s",
                    event.topic.value,
                    getattr(subscription.handler, "__qualname__", subscription.handler),
                    result,
                    exc_info=result,
                )

    async def stream(
        self, topic: Topic, where: EventFilter | None = None
    ) -> AsyncIterator[ChangeEvent]:
        """Lazy, unbounded sequence of matching events.

        The underlying subscription lives as long as the iterator; closing
        the generator cancels it.
        """
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

        async def _enqueue(event: ChangeEvent) -> None:
            queue.put_nowait(event)

        subscription = self.subscribe(topic, _enqueue, where)
        try:
            while True:
                yield await queue.get()
        finally:
            subscription.cancel()
