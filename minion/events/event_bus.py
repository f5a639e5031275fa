"""Event bus fanning lifecycle events out to independent subscribers.

Emission is a plain synchronous call that never blocks: each subscriber owns a
bounded asyncio queue and consumes it at its own pace. When a subscriber falls
behind and its queue is full, the oldest queued event is dropped to make room.

``emit`` must be called from the event loop thread that owns the bus.
"""

import asyncio
import logging
from typing import Iterable, Optional

from minion.events.models import EVENT_KINDS, BaseEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """A subscriber's buffered view of the event stream."""

    def __init__(
        self,
        bus: "EventBus",
        kinds: Optional[frozenset[str]],
        maxsize: int
    ):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.kinds = kinds
        self.dropped = 0
        self.closed = False

    def wants(self, event: BaseEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def offer(self, event: BaseEvent) -> bool:
        """
        Queue an event without blocking.

        Returns:
            False if an older event had to be dropped to make room
        """
        if self.closed:
            return True
        return self._put(event)

    def _put(self, item) -> bool:
        try:
            self._queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(item)
            return False

    async def get(self) -> BaseEvent:
        """
        Wait for the next event.

        Raises:
            SubscriptionClosed: If the subscription was closed
        """
        item = await self._queue.get()
        if item is _CLOSED:
            # leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosed("Subscription closed")
        return item

    def get_nowait(self) -> Optional[BaseEvent]:
        """Next queued event, or None when the queue is empty or closed."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def drain(self) -> list[BaseEvent]:
        """All currently queued events."""
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self):
        return self

    async def __anext__(self) -> BaseEvent:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration

    def close(self) -> None:
        """Stop receiving events; pending consumers are woken up."""
        self._bus.unsubscribe(self)

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._put(_CLOSED)


class EventBus:
    """Typed in-process publish/subscribe channel."""

    def __init__(self, queue_size: int = 256):
        """
        Initialize the bus.

        Args:
            queue_size: Default per-subscriber buffer size
        """
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []

    def subscribe(
        self,
        kinds: Optional[Iterable[str]] = None,
        maxsize: Optional[int] = None
    ) -> Subscription:
        """
        Register a new subscriber.

        Args:
            kinds: Event kinds to receive (default: all)
            maxsize: Buffer size (default: the bus's queue_size)

        Returns:
            Subscription to consume with ``async for`` or ``get()``

        Raises:
            ValueError: If an unknown event kind is requested
        """
        wanted = None
        if kinds is not None:
            wanted = frozenset(kinds)
            unknown = wanted - EVENT_KINDS
            if unknown:
                raise ValueError(f"Unknown event kinds: {', '.join(sorted(unknown))}")

        subscription = Subscription(self, wanted, maxsize or self.queue_size)
        self._subscribers.append(subscription)
        logger.debug(f"Subscriber added ({len(self._subscribers)} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        subscription._close()

    def emit(self, event: BaseEvent) -> None:
        """Deliver ``event`` to every interested subscriber without blocking."""
        for subscription in list(self._subscribers):
            if not subscription.wants(event):
                continue
            if not subscription.offer(event) and subscription.dropped % 100 == 1:
                logger.warning(
                    f"Subscriber is falling behind; dropped {subscription.dropped} "
                    f"events so far (latest: {event.kind})"
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        """Close every subscription."""
        for subscription in list(self._subscribers):
            self.unsubscribe(subscription)


class SubscriptionClosed(Exception):
    """Raised when reading from a closed subscription."""
    pass
