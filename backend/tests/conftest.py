"""
Pathwarden Test Configuration.

Pytest fixtures and configuration.
Requires Python 3.11+.
"""

import threading
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from utils.config import WatchSettings
from utils.errors import WatchRegistrationError
from watcher.backends import Sink, WatchBackend, WatchHandle
from watcher.engine import WatchEngine
from watcher.models import EventKind, WatchEvent


class FakeBackend(WatchBackend):
    """
    In-memory backend driven by the test.

    emit() delivers a change to every installed watch that would see it:
    the watched directory itself, its direct children, or anything below
    it for recursive watches.
    """

    name = "fake"

    def __init__(self, native_recursive: bool = False) -> None:
        self.native_recursive = native_recursive
        self.started = False
        self.stopped = False
        self.refuse: set[Path] = set()
        self.dead: set[WatchHandle] = set()
        self.schedule_count = 0
        self._watches: dict[WatchHandle, Sink] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True
        with self._lock:
            self._watches.clear()

    def schedule(self, path: Path, recursive: bool, sink: Sink) -> WatchHandle:
        if path in self.refuse:
            raise WatchRegistrationError(path, "inotify watch limit reached")
        handle = WatchHandle(path=path, recursive=recursive, token=object())
        with self._lock:
            self._watches[handle] = sink
            self.schedule_count += 1
        return handle

    def unschedule(self, handle: WatchHandle) -> None:
        with self._lock:
            self._watches.pop(handle, None)
        self.dead.discard(handle)

    def is_alive(self, handle: WatchHandle) -> bool:
        with self._lock:
            return handle in self._watches and handle not in self.dead

    @property
    def watched(self) -> list[Path]:
        """Directories with a live watch, sorted."""
        with self._lock:
            return sorted(h.path for h in self._watches if h not in self.dead)

    def handles_for(self, path: Path) -> list[WatchHandle]:
        with self._lock:
            return [h for h in self._watches if h.path == path]

    def emit(self, kind: EventKind, path: Path, is_directory: bool = False) -> None:
        with self._lock:
            targets = [
                sink
                for handle, sink in self._watches.items()
                if handle not in self.dead
                and (
                    path == handle.path
                    or path.parent == handle.path
                    or (handle.recursive and handle.path in path.parents)
                )
            ]
        for sink in targets:
            sink(kind, path, is_directory)

    def overflow(self, directory: Path) -> None:
        for handle in self.handles_for(directory):
            with self._lock:
                sink = self._watches.get(handle)
            if sink is not None:
                sink(EventKind.OVERFLOW, directory, True)

    def kill(self, directory: Path) -> None:
        """Make the watch on directory stop delivering, as if its emitter died."""
        for handle in self.handles_for(directory):
            self.dead.add(handle)


class EventCollector:
    """Handler that records events and lets tests wait for them."""

    def __init__(self) -> None:
        self.events: list[WatchEvent] = []
        self._cond = threading.Condition()

    def __call__(self, event: WatchEvent) -> None:
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def wait_for(self, predicate: Callable[[list[WatchEvent]], bool], timeout: float = 10.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self.events), timeout=timeout)

    def wait_for_event(self, kind: EventKind, path: Path, timeout: float = 10.0) -> bool:
        return self.wait_for(
            lambda events: any(e.kind is kind and e.path == path for e in events),
            timeout=timeout,
        )

    @property
    def pairs(self) -> list[tuple[EventKind, Path]]:
        with self._cond:
            return [(e.kind, e.path) for e in self.events]


@pytest.fixture
def watch_settings() -> WatchSettings:
    """Settings with a fast health check."""
    return WatchSettings(
        backend="auto",
        recursive_mode="auto",
        health_check_interval_s=0.05,
        queue_depth=64,
        max_workers=4,
        coalesce_window_ms=0,
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    """Create a fake backend without native recursion."""
    return FakeBackend()


@pytest.fixture
def engine(fake_backend: FakeBackend, watch_settings: WatchSettings) -> Generator[WatchEngine, None, None]:
    """Create an engine over the fake backend, closed after the test."""
    engine = WatchEngine(backend=fake_backend, settings=watch_settings)
    yield engine
    engine.close()


@pytest.fixture
def collector() -> EventCollector:
    """Create an event collector."""
    return EventCollector()


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """A resolved directory to watch."""
    directory = tmp_path / "root"
    directory.mkdir()
    return directory.resolve()
