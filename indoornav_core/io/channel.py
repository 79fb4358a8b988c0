"""
Publish/Subscribe Channels.

Two delivery disciplines are used between pipeline stages and consumers:

- LatestValueChannel: holds only the most recent value (latest-value-wins).
  Readers never see a backlog; a slow consumer just skips intermediate
  positions, which matches "current position" semantics.
- BoundedEventQueue: FIFO for discrete events (recovery, reroute) where
  order matters. When full, the oldest event is dropped and counted as
  'queue_full', so memory stays bounded.
"""

import logging
import threading
from collections import deque
from typing import Callable, Deque, Generic, List, Optional, Tuple, TypeVar

from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)

T = TypeVar('T')


class LatestValueChannel(Generic[T]):
    """
    Thread-safe latest-value channel with optional subscriber callbacks.

    Usage:
        channel = LatestValueChannel(name='position')
        unsubscribe = channel.subscribe(lambda est: print(est.position))

        channel.publish(estimate)        # producer side
        current = channel.latest()       # polling side
        value, version = channel.wait_for_update(since_version=0, timeout=1.0)

    Notes:
        - Callbacks run on the publisher's thread; exceptions are logged
          and do not reach the publisher
        - version increases by one on every publish
    """

    def __init__(self, name: str = "channel"):
        self.name = name
        self._condition = threading.Condition()
        self._value: Optional[T] = None
        self._version = 0
        self._subscribers: List[Callable[[T], None]] = []

    def publish(self, value: T):
        """Replace the current value and notify subscribers."""
        with self._condition:
            self._value = value
            self._version += 1
            subscribers = list(self._subscribers)
            self._condition.notify_all()

        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                logger.exception(f"Subscriber of '{self.name}' raised")

    def latest(self) -> Optional[T]:
        """Most recent value, or None if nothing was published."""
        with self._condition:
            return self._value

    @property
    def version(self) -> int:
        with self._condition:
            return self._version

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """
        Register a callback for future publishes.

        Returns:
            Function that removes the subscription
        """
        with self._condition:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._condition:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def wait_for_update(
        self,
        since_version: int,
        timeout: Optional[float] = None,
    ) -> Tuple[Optional[T], int]:
        """
        Block until a value newer than since_version is published.

        Args:
            since_version: Last version seen by the caller
            timeout: Max seconds to wait (None = forever)

        Returns:
            (value, version); version == since_version on timeout
        """
        with self._condition:
            self._condition.wait_for(lambda: self._version > since_version, timeout)
            return self._value, self._version

    def clear(self):
        """Drop the current value (version keeps increasing)."""
        with self._condition:
            self._value = None
            self._version += 1
            self._condition.notify_all()


class BoundedEventQueue(Generic[T]):
    """
    Bounded FIFO that drops the oldest event on overflow.

    Args:
        maxsize: Capacity (must be positive)
        metrics: Collector for 'queue_full' drops
    """

    def __init__(self, maxsize: int = 100, metrics: Optional[MetricsCollector] = None):
        if maxsize <= 0:
            raise ValueError(f"maxsize must be positive: {maxsize}")
        self.maxsize = maxsize
        self.metrics = metrics or MetricsCollector()
        self._condition = threading.Condition()
        self._items: Deque[T] = deque()
        self._listeners: List[Callable[[T], None]] = []

    def put(self, item: T):
        """Append an event, evicting the oldest if full."""
        with self._condition:
            if len(self._items) >= self.maxsize:
                self._items.popleft()
                self.metrics.increment_drop('queue_full')
            self._items.append(item)
            listeners = list(self._listeners)
            self._condition.notify_all()

        for listener in listeners:
            try:
                listener(item)
            except Exception:
                logger.exception("Event listener raised")

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """
        Pop the oldest event.

        Args:
            timeout: Max seconds to wait; 0 means don't block

        Returns:
            Event, or None on timeout
        """
        with self._condition:
            if not self._condition.wait_for(lambda: len(self._items) > 0, timeout):
                return None
            return self._items.popleft()

    def drain(self) -> List[T]:
        """Pop all queued events."""
        with self._condition:
            items = list(self._items)
            self._items.clear()
            return items

    def add_listener(self, listener: Callable[[T], None]):
        """Call listener synchronously for every future event."""
        with self._condition:
            self._listeners.append(listener)

    def __len__(self) -> int:
        with self._condition:
            return len(self._items)
