"""
In-process fan-out of domain events to live client connections.

Every subscriber receives every event type; filtering is the client's job.
Delivery is best-effort and at-most-once: a subscriber whose bounded buffer
overflows is disconnected and has to reconnect and re-fetch.
"""
import queue
import logging
import threading
from typing import Callable, Dict, List, Optional

from shared.events import DomainEvent
from shared.errors import BroadcastDeliveryFailure

logger = logging.getLogger(__name__)

_CLOSED = object()


class SubscriptionClosed(Exception):
    def __init__(self, connection_id: str, reason: Optional[str]):
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"subscription {connection_id} closed ({reason})")


class Subscription:
    """One connection's view of the hub: a bounded FIFO of wire frames."""

    def __init__(self, connection_id: str, buffer_size: int):
        self.connection_id = connection_id
        self.close_reason: Optional[str] = None
        self._queue: queue.Queue = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, frame: dict) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(frame)
            return True
        except queue.Full:
            return False

    def get(self, timeout: float = None) -> Optional[dict]:
        """Next frame, or None on timeout. Raises SubscriptionClosed once closed."""
        if self.closed and self._queue.empty():
            raise SubscriptionClosed(self.connection_id, self.close_reason)
        try:
            frame = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if frame is _CLOSED:
            raise SubscriptionClosed(self.connection_id, self.close_reason)
        return frame

    def __iter__(self):
        while True:
            try:
                yield self.get()
            except SubscriptionClosed:
                return

    def close(self, reason: str = "unsubscribed"):
        if self.closed:
            return
        self.close_reason = reason
        self._closed.set()
        # Frames still buffered are dropped; the client re-fetches on reconnect
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass


class BroadcastHub:
    def __init__(self, buffer_size: int = 256):
        self.buffer_size = buffer_size
        self.dropped_connections = 0
        self._subscribers: Dict[str, Subscription] = {}
        self._listeners: List[Callable[[DomainEvent], None]] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def connection_ids(self) -> List[str]:
        with self._lock:
            return list(self._subscribers)

    def subscribe(self, connection_id: str) -> Subscription:
        subscription = Subscription(connection_id, self.buffer_size)
        with self._lock:
            previous = self._subscribers.pop(connection_id, None)
            if previous:
                previous.close("replaced")
            self._subscribers[connection_id] = subscription
        logger.debug(f"Connection {connection_id} subscribed")
        return subscription

    def unsubscribe(self, connection_id: str, subscription: Subscription = None) -> bool:
        """Remove a connection. When a subscription is given, only if it is still the registered one."""
        with self._lock:
            current = self._subscribers.get(connection_id)
            if current is None or (subscription is not None and current is not subscription):
                return False
            subscription = self._subscribers.pop(connection_id)
        subscription.close("unsubscribed")
        logger.debug(f"Connection {connection_id} unsubscribed")
        return True

    def add_listener(self, listener: Callable[[DomainEvent], None]):
        """Called with every locally originated event after fan-out (used by the redis relay)."""
        self._listeners.append(listener)

    def publish(self, event: DomainEvent, forward: bool = True) -> int:
        """Fan an event out to every subscriber. Never blocks; returns the delivery count."""
        frame = event.to_frame()
        delivered = 0

        # Enqueue under one lock so every subscriber observes the same order
        with self._lock:
            for connection_id, subscription in list(self._subscribers.items()):
                if subscription.offer(frame):
                    delivered += 1
                    continue
                failure = BroadcastDeliveryFailure(connection_id, "send buffer overflow")
                logger.warning(f"Dropping slow subscriber: {failure}")
                del self._subscribers[connection_id]
                subscription.close("overflow")
                self.dropped_connections += 1

        logger.debug(f"Published {frame['type']} to {delivered} connections")

        if forward:
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"Broadcast listener failed for {frame['type']}: {e}")

        return delivered

    def close_all(self, reason: str = "shutdown"):
        with self._lock:
            subscriptions = list(self._subscribers.values())
            self._subscribers.clear()
        for subscription in subscriptions:
            subscription.close(reason)
