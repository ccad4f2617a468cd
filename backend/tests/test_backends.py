"""
Tests for Watch Backends and Settings.

Requires Python 3.11+.
"""

from pathlib import Path

import pytest
from watchdog.events import (
    DirCreatedEvent,
    FileClosedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from utils.config import WatchSettings
from utils.errors import WatchRegistrationError
from watcher.backends import NativeBackend, PollingBackend, _IntakeHandler, select_backend
from watcher.models import EventKind


class TestIntakeHandler:
    """Test cases for watchdog event translation."""

    @pytest.fixture
    def received(self) -> list:
        """Collected sink calls."""
        return []

    @pytest.fixture
    def handler(self, received: list) -> _IntakeHandler:
        """Create an intake handler writing to received."""
        return _IntakeHandler(lambda kind, path, is_dir: received.append((kind, path, is_dir)))

    def test_basic_events(self, handler: _IntakeHandler, received: list):
        """Test created, modified and deleted translation."""
        handler.dispatch(DirCreatedEvent("/w/sub"))
        handler.dispatch(FileModifiedEvent("/w/a.txt"))
        handler.dispatch(FileDeletedEvent("/w/a.txt"))

        assert received == [
            (EventKind.CREATED, Path("/w/sub"), True),
            (EventKind.MODIFIED, Path("/w/a.txt"), False),
            (EventKind.DELETED, Path("/w/a.txt"), False),
        ]

    def test_move_becomes_delete_and_create(self, handler: _IntakeHandler, received: list):
        """Test that a move is split in two."""
        handler.dispatch(FileMovedEvent("/w/old.txt", "/w/new.txt"))

        assert received == [
            (EventKind.DELETED, Path("/w/old.txt"), False),
            (EventKind.CREATED, Path("/w/new.txt"), False),
        ]

    def test_closed_events_ignored(self, handler: _IntakeHandler, received: list):
        """Test that open/close notifications are dropped."""
        handler.dispatch(FileClosedEvent("/w/a.txt"))
        assert received == []


class TestBackendSelection:
    """Test cases for select_backend."""

    def test_polling_requested(self):
        """Test that backend=polling gives a polling backend."""
        backend = select_backend(WatchSettings(backend="polling", polling_interval_s=0.25))

        assert isinstance(backend, PollingBackend)
        assert backend.interval_s == 0.25
        assert backend.native_recursive is False

    def test_native_requested(self):
        """Test that backend=native gives the platform observer."""
        backend = select_backend(WatchSettings(backend="native"))

        assert isinstance(backend, NativeBackend)
        assert isinstance(backend.native_recursive, bool)


class TestPollingBackend:
    """Test cases for the polling backend lifecycle."""

    def test_schedule_and_unschedule(self, tmp_path: Path):
        """Test installing and removing a watch."""
        backend = PollingBackend(interval_s=0.1)
        backend.start()
        try:
            handle = backend.schedule(tmp_path, False, lambda *args: None)
            assert backend.is_alive(handle)

            backend.unschedule(handle)
            assert not backend.is_alive(handle)
            # Removing twice is harmless
            backend.unschedule(handle)
        finally:
            backend.stop()

    def test_os_error_becomes_registration_error(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test that a refused schedule surfaces as WatchRegistrationError."""
        backend = PollingBackend(interval_s=0.1)

        def refuse(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(backend.observer, "schedule", refuse)
        with pytest.raises(WatchRegistrationError) as info:
            backend.schedule(tmp_path, False, lambda *args: None)

        assert info.value.path == tmp_path
        assert "No space left" in info.value.reason


class TestSettings:
    """Test cases for watch settings."""

    def test_defaults(self):
        """Test default values."""
        settings = WatchSettings()
        assert settings.backend == "auto"
        assert settings.queue_depth >= 1

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch):
        """Test that WATCH_ variables are read."""
        monkeypatch.setenv("WATCH_QUEUE_DEPTH", "7")
        monkeypatch.setenv("WATCH_BACKEND", "polling")

        settings = WatchSettings()
        assert settings.queue_depth == 7
        assert settings.backend == "polling"

    def test_invalid_value_rejected(self):
        """Test validation of bounds."""
        with pytest.raises(ValueError):
            WatchSettings(queue_depth=0)
