"""Live event feed for /ws/live.

The backup manager publishes its events here from the worker thread.
``publish`` only enqueues: each connected client owns a bounded
``Subscription`` that its own WebSocket request thread drains and writes to
the socket. A client that stops reading fills its queue and is dropped; the
publisher never touches a socket.
"""

import json
import logging
import queue
import threading

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 256


class Subscription:
    """Pending messages for one client."""

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING):
        self._queue: queue.Queue[str] = queue.Queue(maxsize=max_pending)
        self.closed = False

    def offer(self, message: str) -> bool:
        """Queue a message without blocking. False once the client is closed."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            self.closed = True
            return False
        return True

    def next_message(self, timeout: float | None = None) -> str | None:
        """Return the next queued message, or None if none arrived in time."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class LiveFeed:
    """Fan-out of backup manager events to WebSocket subscriptions.

    ``publish`` has the ``on_event(name, data)`` signature expected by
    ``BackupManager``.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING):
        self.max_pending = max_pending
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        sub = Subscription(self.max_pending)
        with self._lock:
            self._subscriptions.append(sub)
            total = len(self._subscriptions)
        logger.debug("Live feed client connected (%d total)", total)
        return sub

    def unsubscribe(self, sub: Subscription):
        sub.closed = True
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
            remaining = len(self._subscriptions)
        logger.debug("Live feed client disconnected (%d remaining)", remaining)

    def publish(self, event_type: str, data: dict):
        message = json.dumps({"type": event_type, "data": data}, default=str)
        with self._lock:
            subs = list(self._subscriptions)
        for sub in subs:
            if not sub.offer(message):
                logger.warning("Dropping live feed client with %d unread messages",
                               sub.pending)
                self.unsubscribe(sub)

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
