"""
Pathwarden Watcher Package.

File-system change notifications with recursive-directory semantics.
Requires Python 3.11+.
"""

from watcher.backends import NativeBackend, PollingBackend, WatchBackend, WatchHandle, select_backend
from watcher.engine import WatchEngine
from watcher.models import (
    ALL_KINDS,
    EngineState,
    EventKind,
    RawEvent,
    WatchEvent,
    WatchSubscription,
)

__all__ = [
    "WatchEngine",
    "WatchSubscription",
    "WatchEvent",
    "RawEvent",
    "EventKind",
    "EngineState",
    "ALL_KINDS",
    "WatchBackend",
    "WatchHandle",
    "NativeBackend",
    "PollingBackend",
    "select_backend",
]
