"""
Pathwarden Subscription Mailbox.

Bounded per-subscription event queue drained on a shared worker pool.
Requires Python 3.11+.
"""

import threading
from collections import deque
from concurrent.futures import Executor

from utils.logger import LoggerMixin
from watcher.models import EventKind, WatchEvent, WatchSubscription

# Set on worker threads while they run a handler
_current = threading.local()


def current_subscription() -> WatchSubscription | None:
    """The subscription whose handler is running on this thread, if any."""
    return getattr(_current, "subscription", None)


class Mailbox(LoggerMixin):
    """
    Pending events of one subscription.

    At most one drain task per mailbox is on the pool at a time, so the
    handler sees events strictly one after another. When the queue is full
    the oldest event is dropped; the handler then receives an overflow
    event before the events that remain.
    """

    def __init__(self, subscription: WatchSubscription, executor: Executor, depth: int) -> None:
        self._subscription = subscription
        self._executor = executor
        self._depth = depth
        self._pending: deque[WatchEvent] = deque()
        self._dropped = 0
        self._scheduled = False
        self._in_flight: int | None = None
        self._closed = False
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def put(self, event: WatchEvent) -> None:
        """Queue an event, dropping the oldest one if the queue is full."""
        with self._lock:
            if self._closed:
                return
            if len(self._pending) >= self._depth:
                self._pending.popleft()
                self._dropped += 1
                if self._dropped == 1:
                    self.log.warning(
                        "subscription_overflow",
                        root=str(self._subscription.root),
                        depth=self._depth,
                    )
            self._pending.append(event)
            if self._scheduled:
                return
            self._scheduled = True

        try:
            self._executor.submit(self._drain)
        except RuntimeError:
            # Pool already shut down by close()
            with self._lock:
                self._scheduled = False
                self._idle.notify_all()

    def _next(self) -> WatchEvent | None:
        # Caller holds the lock
        if self._closed:
            return None
        if self._dropped:
            dropped, self._dropped = self._dropped, 0
            if self._subscription.wants(EventKind.OVERFLOW):
                return WatchEvent(
                    kind=EventKind.OVERFLOW,
                    path=self._subscription.root,
                    root=self._subscription.root,
                    is_directory=True,
                    count=dropped,
                )
        if self._pending:
            return self._pending.popleft()
        return None

    def _drain(self) -> None:
        _current.subscription = self._subscription
        try:
            while True:
                with self._lock:
                    event = self._next()
                    if event is None:
                        self._scheduled = False
                        self._idle.notify_all()
                        return
                    self._in_flight = threading.get_ident()
                try:
                    self._deliver(event)
                finally:
                    with self._lock:
                        self._in_flight = None
                        self._idle.notify_all()
        finally:
            _current.subscription = None

    def _deliver(self, event: WatchEvent) -> None:
        subscription = self._subscription
        try:
            subscription.handler(event)
        except Exception as e:
            self.log.exception(
                "handler_failed",
                kind=event.kind.value,
                path=str(event.path),
                root=str(subscription.root),
            )
            if subscription.on_error is not None:
                try:
                    subscription.on_error(event, e)
                except Exception:
                    self.log.exception("error_handler_failed", root=str(subscription.root))

    def join(self) -> None:
        """Block until every queued event has been handled."""
        with self._lock:
            if self._in_flight == threading.get_ident():
                return
            self._idle.wait_for(
                lambda: self._closed or (not self._scheduled and not self._pending)
            )

    def close(self, wait: bool = True) -> None:
        """
        Discard pending events and refuse new ones.

        With wait, blocks until a handler call in progress returns, unless
        called from inside that handler.
        """
        with self._lock:
            self._closed = True
            self._pending.clear()
            self._dropped = 0
            if not wait or self._in_flight == threading.get_ident():
                return
            self._idle.wait_for(lambda: self._in_flight is None)
