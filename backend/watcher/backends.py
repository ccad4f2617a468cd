"""
Pathwarden Watch Backends.

Platform watch primitives behind one capability interface, using watchdog.
Requires Python 3.11+.
"""

import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from utils.config import WatchSettings, get_settings
from utils.errors import WatchRegistrationError
from utils.logger import LoggerMixin
from watcher.models import EventKind

# Receives (kind, path, is_directory) from backend threads
Sink = Callable[[EventKind, Path, bool], None]

# Observers whose platform API watches whole trees natively
_NATIVE_RECURSIVE_OBSERVERS = frozenset({"FSEventsObserver", "WindowsApiObserver"})

_EVENT_KINDS = {
    EVENT_TYPE_CREATED: EventKind.CREATED,
    EVENT_TYPE_MODIFIED: EventKind.MODIFIED,
    EVENT_TYPE_DELETED: EventKind.DELETED,
}


@dataclass(frozen=True, eq=False)
class WatchHandle:
    """One installed platform watch."""

    path: Path
    recursive: bool
    token: Any


class WatchBackend(ABC):
    """
    Capability interface over a platform watch primitive.

    Implementations deliver changes for each scheduled directory to the
    sink given at schedule time, from their own threads.
    """

    name: str = "abstract"
    native_recursive: bool = False

    @abstractmethod
    def start(self) -> None:
        """Start delivering events. Called once before any schedule()."""

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering events and release all watches."""

    @abstractmethod
    def schedule(self, path: Path, recursive: bool, sink: Sink) -> WatchHandle:
        """
        Install a watch on a directory.

        Raises:
            WatchRegistrationError: The platform refused the watch
        """

    @abstractmethod
    def unschedule(self, handle: WatchHandle) -> None:
        """Remove a watch. Removing a watch that already died is a no-op."""

    @abstractmethod
    def is_alive(self, handle: WatchHandle) -> bool:
        """Whether the watch is still delivering events."""


class _IntakeHandler(FileSystemEventHandler):
    """Translates watchdog events for one watch into sink calls."""

    def __init__(self, sink: Sink) -> None:
        super().__init__()
        self._sink = sink

    def on_any_event(self, event: FileSystemEvent) -> None:
        src_path = Path(os.fsdecode(event.src_path))

        if event.event_type == EVENT_TYPE_MOVED:
            # A move is a delete at the source and a create at the destination
            self._sink(EventKind.DELETED, src_path, event.is_directory)
            self._sink(EventKind.CREATED, Path(os.fsdecode(event.dest_path)), event.is_directory)
            return

        kind = _EVENT_KINDS.get(event.event_type)
        if kind is not None:
            self._sink(kind, src_path, event.is_directory)


class WatchdogBackend(WatchBackend, LoggerMixin):
    """Backend driving one watchdog observer."""

    def __init__(self, observer: BaseObserver, join_timeout_s: float = 10.0) -> None:
        self._observer = observer
        self._join_timeout = join_timeout_s
        self._started = False

    @property
    def observer(self) -> BaseObserver:
        return self._observer

    def start(self) -> None:
        if self._started:
            return
        self._observer.start()
        self._started = True
        self.log.debug("backend_started", backend=self.name)

    def stop(self) -> None:
        if not self._started:
            return
        self._observer.stop()
        self._observer.join(timeout=self._join_timeout)
        self._started = False
        self.log.debug("backend_stopped", backend=self.name)

    def schedule(self, path: Path, recursive: bool, sink: Sink) -> WatchHandle:
        try:
            watch = self._observer.schedule(_IntakeHandler(sink), str(path), recursive=recursive)
        except OSError as e:
            # inotify reports exhausted watch or instance limits as ENOSPC / EMFILE
            raise WatchRegistrationError(path, e.strerror or str(e)) from e
        return WatchHandle(path=path, recursive=recursive, token=watch)

    def unschedule(self, handle: WatchHandle) -> None:
        try:
            self._observer.unschedule(handle.token)
        except KeyError:
            # Emitter already removed
            pass

    def is_alive(self, handle: WatchHandle) -> bool:
        return any(
            emitter.watch == handle.token and emitter.is_alive()
            for emitter in self._observer.emitters
        )


class NativeBackend(WatchdogBackend):
    """The platform's preferred observer: inotify, FSEvents, kqueue or Windows API."""

    name = "native"

    def __init__(self, join_timeout_s: float = 10.0) -> None:
        super().__init__(Observer(), join_timeout_s)
        self.native_recursive = type(self._observer).__name__ in _NATIVE_RECURSIVE_OBSERVERS


class PollingBackend(WatchdogBackend):
    """Directory snapshots compared on an interval. Works everywhere."""

    name = "polling"
    native_recursive = False

    def __init__(self, interval_s: float = 1.0, join_timeout_s: float = 10.0) -> None:
        super().__init__(PollingObserver(timeout=interval_s), join_timeout_s)
        self.interval_s = interval_s


def select_backend(settings: WatchSettings | None = None) -> WatchBackend:
    """
    Pick the backend for this platform.

    Args:
        settings: Watch settings; defaults to the application settings

    Returns:
        A backend that has not been started yet
    """
    settings = settings or get_settings().watch

    if settings.backend == "polling" or (
        settings.backend == "auto" and Observer is PollingObserver
    ):
        return PollingBackend(settings.polling_interval_s, settings.join_timeout_s)
    return NativeBackend(settings.join_timeout_s)
