"""
Pathwarden Event Coalescer.

Collapses bursts of identical raw notifications.
Requires Python 3.11+.
"""

import queue
import time
from dataclasses import replace
from typing import Any

from utils.logger import LoggerMixin
from watcher.models import RawEvent


class EventCoalescer(LoggerMixin):
    """
    Gathers intake items into batches and merges duplicate notifications.

    Consecutive raw events for the same watch, path and kind become one
    event whose count is the number merged. Anything that is not a raw
    event (engine commands) is a barrier: events are never merged across
    it, so commands keep their place in the intake order.
    """

    def __init__(self, window_ms: int = 0, max_batch: int = 4096) -> None:
        """
        Initialize the coalescer.

        Args:
            window_ms: How long to keep collecting after the first raw event
                of a batch; 0 takes only what is already queued
            max_batch: Upper bound on items per batch
        """
        self._window = window_ms / 1000.0
        self._max_batch = max_batch

    def gather(self, intake: "queue.Queue[Any]", first: Any) -> list[Any]:
        """
        Collect a batch starting with an item already taken from intake.

        The window is cut short as soon as a command arrives.
        """
        items = [first]
        deadline = None
        if self._window and isinstance(first, RawEvent):
            deadline = time.monotonic() + self._window

        while len(items) < self._max_batch:
            try:
                item = intake.get_nowait()
            except queue.Empty:
                if deadline is None:
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    item = intake.get(timeout=remaining)
                except queue.Empty:
                    break
            items.append(item)
            if not isinstance(item, RawEvent):
                deadline = None

        return self.collapse(items)

    def collapse(self, items: list[Any]) -> list[Any]:
        """Merge runs of identical raw events."""
        merged: list[Any] = []
        for item in items:
            previous = merged[-1] if merged else None
            if (
                isinstance(item, RawEvent)
                and isinstance(previous, RawEvent)
                and previous.watch_id == item.watch_id
                and previous.path == item.path
                and previous.kind == item.kind
            ):
                merged[-1] = replace(
                    previous,
                    sequence=item.sequence,
                    count=previous.count + item.count,
                    is_directory=previous.is_directory or item.is_directory,
                )
            else:
                merged.append(item)

        if len(merged) < len(items):
            self.log.debug("coalesced_events", received=len(items), dispatched=len(merged))
        return merged
