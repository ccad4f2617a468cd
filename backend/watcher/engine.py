"""
Pathwarden Watch Engine.

Typed, subscription-scoped file-system change notifications.
Requires Python 3.11+.
"""

from __future__ import annotations

import itertools
import os
import queue
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from utils.config import WatchSettings, get_settings
from utils.errors import EngineClosedError, PathNotFoundError, WatchRegistrationError
from utils.logger import LoggerMixin
from watcher.backends import WatchBackend, WatchHandle, select_backend
from watcher.coalescer import EventCoalescer
from watcher.mailbox import Mailbox, current_subscription
from watcher.models import (
    ALL_KINDS,
    EngineState,
    ErrorHandler,
    EventKind,
    Handler,
    RawEvent,
    WatchEvent,
    WatchKey,
    WatchSubscription,
)


@dataclass(eq=False)
class _Command:
    """Work for the dispatch loop, acknowledged through a future."""

    fn: Callable[..., Any]
    args: tuple[Any, ...]
    future: Future[Any] = field(default_factory=Future)


_SHUTDOWN = object()


@dataclass(eq=False)
class _DirectoryWatch:
    """A platform watch shared by every subscription that claims its key."""

    id: int
    key: WatchKey
    sink: Callable[[EventKind, Path, bool], None]
    handle: WatchHandle | None = None
    claimants: dict[int, WatchSubscription] = field(default_factory=dict)
    last_sequence: int = -1

    @property
    def directory(self) -> Path:
        return self.key[0]


class WatchEngine(LoggerMixin):
    """
    Watches paths and dispatches typed events to subscription handlers.

    A single dispatch loop thread owns every platform watch and all
    subscription bookkeeping. watch(), stop() and close() called from other
    threads are queued to that loop and block until it has acted, so the
    caller sees the new state as soon as the call returns. Handlers run on
    a bounded worker pool; each subscription's handler is called for one
    event at a time.

    Recursive watches on platforms without a recursive primitive are built
    from one watch per directory, extended as directories are created.
    Entries created and removed inside a new directory before its watch is
    installed can be missed.

    Usage:
        with WatchEngine() as engine:
            engine.watch("/srv/inbox", print, recursive=True)
            ...
    """

    def __init__(
        self,
        backend: WatchBackend | None = None,
        settings: WatchSettings | None = None,
    ) -> None:
        """
        Initialize the engine. Nothing is watched until start() or watch().

        Args:
            backend: Platform backend; chosen from settings when omitted
            settings: Watch settings; defaults to the application settings
        """
        self._settings = settings or get_settings().watch
        self._backend = backend or select_backend(self._settings)

        mode = self._settings.recursive_mode
        if mode == "auto":
            self._native_recursive = self._backend.native_recursive
        else:
            self._native_recursive = mode == "native"

        self._state = EngineState.CREATED
        self._state_lock = threading.Lock()
        self._closed = threading.Event()
        self._intake: queue.Queue[Any] = queue.Queue()
        self._coalescer = EventCoalescer(self._settings.coalesce_window_ms)
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

        # Owned by the dispatch loop
        self._subscriptions: dict[int, WatchSubscription] = {}
        self._watches: dict[WatchKey, _DirectoryWatch] = {}
        self._watches_by_id: dict[int, _DirectoryWatch] = {}
        self._watch_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)
        self._next_health_check = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def backend(self) -> WatchBackend:
        return self._backend

    @property
    def native_recursive(self) -> bool:
        """Whether recursive watches are delegated to the backend."""
        return self._native_recursive

    @property
    def subscriptions(self) -> list[WatchSubscription]:
        """Snapshot of the live subscriptions."""
        return [s for s in list(self._subscriptions.values()) if s.is_live]

    def start(self) -> None:
        """Start the backend, dispatch loop and handler pool."""
        with self._state_lock:
            if self._state is EngineState.STOPPED:
                raise EngineClosedError("watch engine is closed")
            if self._state is EngineState.RUNNING:
                return

            self._backend.start()
            self._executor = ThreadPoolExecutor(
                max_workers=self._settings.max_workers,
                thread_name_prefix="pathwarden-handler",
            )
            self._next_health_check = time.monotonic() + self._settings.health_check_interval_s
            self._thread = threading.Thread(
                target=self._run, name="pathwarden-dispatch", daemon=True
            )
            self._thread.start()
            self._state = EngineState.RUNNING

        self.log.info(
            "watch_engine_started",
            backend=self._backend.name,
            native_recursive=self._native_recursive,
        )

    def watch(
        self,
        path: Path | str,
        handler: Handler,
        recursive: bool = False,
        kinds: Iterable[EventKind | str] | None = None,
        *,
        max_depth: int | None = None,
        on_error: ErrorHandler | None = None,
    ) -> WatchSubscription:
        """
        Subscribe to changes at a path.

        Args:
            path: Directory or file to watch
            handler: Called with each WatchEvent, never concurrently with
                itself
            recursive: Include changes below direct children (directories)
            kinds: Event kinds to deliver; all kinds when omitted
            max_depth: Deepest nesting level delivered for recursive watches;
                1 means direct children only
            on_error: Called with the event and exception when handler raises

        Returns:
            The live subscription

        Raises:
            PathNotFoundError: path does not exist
            WatchRegistrationError: The platform refused a watch
            EngineClosedError: The engine has been closed
        """
        target = Path(path).resolve()
        if not target.exists():
            raise PathNotFoundError(target)

        wanted = ALL_KINDS if kinds is None else frozenset(EventKind(k) for k in kinds)
        if not wanted:
            raise ValueError("kinds must name at least one event kind")
        if max_depth is not None and max_depth < 1:
            raise ValueError("max_depth must be at least 1")

        self.start()
        assert self._executor is not None

        is_dir = target.is_dir()
        recursive = recursive and is_dir
        subscription = WatchSubscription(
            id=next(self._subscription_ids),
            target=target,
            root=target if is_dir else target.parent,
            recursive=recursive,
            kinds=wanted,
            handler=handler,
            max_depth=max_depth if recursive else None,
            on_error=on_error,
            emulated=recursive and not self._native_recursive,
        )
        subscription._engine = self
        subscription._mailbox = Mailbox(subscription, self._executor, self._settings.queue_depth)

        self._call(self._register, subscription)
        self.log.info(
            "watch_registered",
            path=str(target),
            recursive=recursive,
            kinds=sorted(k.value for k in wanted),
            directories=len(subscription.claims),
        )
        return subscription

    def stop(self, subscription: WatchSubscription) -> None:
        """
        Stop one subscription.

        Its pending events are discarded and, unless called from its own
        handler, this waits for a handler call in progress to return.
        Sibling subscriptions, including ones on the same directories,
        keep receiving events.

        Raises:
            EngineClosedError: The engine has been closed
        """
        if subscription._engine is not self:
            raise ValueError("subscription belongs to a different engine")
        if self._state is EngineState.STOPPED:
            raise EngineClosedError("watch engine is closed")
        if not subscription.is_live:
            return

        mailbox = subscription._mailbox
        if mailbox is not None:
            mailbox.close(wait=False)
        self._call(self._deregister, subscription)
        if mailbox is not None:
            mailbox.close(wait=True)
        self.log.info("watch_stopped", path=str(subscription.target))

    def flush(self) -> None:
        """
        Block until every event received so far has been handled.

        Must not be called from inside a handler of a different subscription
        whose events are still pending.
        """
        if self._state is not EngineState.RUNNING:
            return
        self._call(lambda: None)
        for subscription in self.subscriptions:
            if subscription._mailbox is not None and current_subscription() is not subscription:
                subscription._mailbox.join()

    def close(self) -> None:
        """
        Stop every subscription and shut the engine down.

        Handler calls already in progress finish; nothing else is
        delivered. Blocks until the dispatch loop has exited, including
        when another thread is already closing the engine. Calling close()
        again does nothing.
        """
        with self._state_lock:
            previous = self._state
            self._state = EngineState.STOPPED
            if previous is EngineState.CREATED:
                self._closed.set()
            first = previous is EngineState.RUNNING
            if first:
                self._intake.put(_SHUTDOWN)

        if not first:
            # The loop and our own handlers are part of the shutdown being waited on
            if threading.current_thread() is self._thread or self._inside_own_handler():
                return
            self._closed.wait()
            if self._executor is not None:
                self._executor.shutdown(wait=True)
            return

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        if self._executor is not None:
            # A handler closing its own engine cannot wait for itself
            self._executor.shutdown(wait=not self._inside_own_handler())
        self._closed.set()
        self.log.info("watch_engine_closed")

    def _inside_own_handler(self) -> bool:
        subscription = current_subscription()
        return subscription is not None and subscription._engine is self

    def __enter__(self) -> WatchEngine:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Command plumbing
    # ------------------------------------------------------------------

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run fn on the dispatch loop and wait for its result."""
        if threading.current_thread() is self._thread:
            return fn(*args)

        command = _Command(fn, args)
        with self._state_lock:
            if self._state is not EngineState.RUNNING:
                raise EngineClosedError("watch engine is closed")
            self._intake.put(command)
        return command.future.result()

    def _run(self) -> None:
        interval = self._settings.health_check_interval_s
        while True:
            try:
                first = self._intake.get(timeout=interval)
            except queue.Empty:
                self._check_health()
                continue

            shutting_down = False
            for item in self._coalescer.gather(self._intake, first):
                if item is _SHUTDOWN:
                    shutting_down = True
                elif isinstance(item, _Command):
                    self._execute(item)
                elif not shutting_down:
                    try:
                        self._dispatch(item)
                    except Exception:
                        self.log.exception("dispatch_failed", path=str(item.path))

            if shutting_down:
                self._shutdown()
                return
            if time.monotonic() >= self._next_health_check:
                self._check_health()

    def _execute(self, command: _Command) -> None:
        if not command.future.set_running_or_notify_cancel():
            return
        try:
            result = command.fn(*command.args)
        except BaseException as e:
            command.future.set_exception(e)
        else:
            command.future.set_result(result)

    def _shutdown(self) -> None:
        for subscription in list(self._subscriptions.values()):
            self._deregister(subscription)
            if subscription._mailbox is not None:
                subscription._mailbox.close(wait=False)
        try:
            self._backend.stop()
        except Exception:
            self.log.exception("backend_stop_failed", backend=self._backend.name)

    # ------------------------------------------------------------------
    # Registration (dispatch loop only)
    # ------------------------------------------------------------------

    def _register(self, subscription: WatchSubscription) -> None:
        if subscription.emulated:
            directories = self._walk(subscription, subscription.root)
            keys = [(directory, False) for directory in directories]
        else:
            keys = [(subscription.root, subscription.recursive)]

        try:
            for key in keys:
                self._claim(key, subscription)
        except WatchRegistrationError:
            for key in list(subscription.claims):
                self._release(key, subscription)
            subscription._live = False
            raise

        self._subscriptions[subscription.id] = subscription

    def _deregister(self, subscription: WatchSubscription) -> None:
        subscription._live = False
        for key in list(subscription.claims):
            self._release(key, subscription)
        self._subscriptions.pop(subscription.id, None)

    def _walk(self, subscription: WatchSubscription, start: Path) -> list[Path]:
        """Directories at and below start whose entries are in scope."""
        if not subscription.descends_into(start):
            return []
        directories = [start]

        def on_error(error: OSError) -> None:
            self.log.warning("walk_failed", path=error.filename, error=error.strerror)

        for dirpath, dirnames, _ in os.walk(start, onerror=on_error):
            current = Path(dirpath)
            dirnames[:] = [
                name
                for name in dirnames
                if not (current / name).is_symlink() and subscription.descends_into(current / name)
            ]
            directories.extend(current / name for name in dirnames)
        return directories

    def _claim(self, key: WatchKey, subscription: WatchSubscription) -> None:
        watch = self._watches.get(key)
        if watch is None:
            watch_id = next(self._watch_ids)
            watch = _DirectoryWatch(id=watch_id, key=key, sink=self._make_sink(watch_id, key[0]))
            watch.handle = self._backend.schedule(key[0], key[1], watch.sink)
            self._watches[key] = watch
            self._watches_by_id[watch_id] = watch
            self.log.debug("directory_watch_installed", path=str(key[0]), recursive=key[1])
        watch.claimants[subscription.id] = subscription
        subscription.claims.add(key)

    def _release(self, key: WatchKey, subscription: WatchSubscription) -> None:
        subscription.claims.discard(key)
        watch = self._watches.get(key)
        if watch is None:
            return
        watch.claimants.pop(subscription.id, None)
        if watch.claimants:
            return

        del self._watches[key]
        del self._watches_by_id[watch.id]
        self._drop_handle(watch)
        self.log.debug("directory_watch_removed", path=str(key[0]))

    def _drop_handle(self, watch: _DirectoryWatch) -> None:
        handle, watch.handle = watch.handle, None
        if handle is None:
            return
        try:
            self._backend.unschedule(handle)
        except Exception:
            self.log.exception("unschedule_failed", path=str(watch.directory))

    def _make_sink(self, watch_id: int, directory: Path) -> Callable[[EventKind, Path, bool], None]:
        sequence = itertools.count()

        def sink(kind: EventKind, path: Path, is_directory: bool) -> None:
            self._intake.put(
                RawEvent(
                    watch_id=watch_id,
                    directory=directory,
                    path=path,
                    kind=kind,
                    is_directory=is_directory,
                    sequence=next(sequence),
                )
            )

        return sink

    # ------------------------------------------------------------------
    # Dispatch (dispatch loop only)
    # ------------------------------------------------------------------

    def _dispatch(self, raw: RawEvent) -> None:
        watch = self._watches_by_id.get(raw.watch_id)
        if watch is None or not watch.claimants:
            return
        if raw.sequence <= watch.last_sequence:
            return
        watch.last_sequence = raw.sequence

        if raw.kind is EventKind.OVERFLOW:
            self._signal_overflow(watch)
            return

        if raw.path == watch.directory:
            if raw.kind is EventKind.DELETED:
                self._directory_deleted(watch, raw)
            # A directory's own modification only echoes changes to its entries
            return

        for subscription in list(watch.claimants.values()):
            if not subscription.is_live or not subscription.in_scope(raw.path):
                continue
            if subscription.emulated:
                self._maintain(subscription, raw)
            if subscription.wants(raw.kind):
                self._deliver(subscription, raw.kind, raw.path, raw.is_directory, raw.count)

    def _maintain(self, subscription: WatchSubscription, raw: RawEvent) -> None:
        """Keep per-directory watches in step with the tree."""
        if raw.kind is EventKind.CREATED and raw.is_directory:
            self._extend(subscription, raw.path)
        elif raw.kind is EventKind.DELETED:
            self._prune(subscription, raw.path)

    def _extend(self, subscription: WatchSubscription, directory: Path) -> None:
        for found in self._walk(subscription, directory):
            key = (found, False)
            if key in subscription.claims:
                continue
            try:
                self._claim(key, subscription)
            except WatchRegistrationError as e:
                self.log.warning("directory_watch_failed", path=str(found), reason=e.reason)
                self._deliver(subscription, EventKind.OVERFLOW, found, True, 1)

    def _prune(self, subscription: WatchSubscription, path: Path) -> None:
        for key in list(subscription.claims):
            directory = key[0]
            if directory == path or path in directory.parents:
                self._release(key, subscription)

    def _directory_deleted(self, watch: _DirectoryWatch, raw: RawEvent) -> None:
        """The watched directory itself went away."""
        for subscription in list(watch.claimants.values()):
            if watch.directory == subscription.root:
                if (
                    subscription.is_live
                    and subscription.in_scope(raw.path)
                    and subscription.wants(EventKind.DELETED)
                ):
                    self._deliver(subscription, EventKind.DELETED, raw.path, True, raw.count)
            else:
                self._release(watch.key, subscription)

        if watch.claimants:
            # Only roots are left; re-registered by the health check if they return
            self._drop_handle(watch)
            self.log.info("watch_root_deleted", path=str(watch.directory))

    def _signal_overflow(self, watch: _DirectoryWatch) -> None:
        for subscription in list(watch.claimants.values()):
            if subscription.is_live and subscription.wants(EventKind.OVERFLOW):
                self._deliver(subscription, EventKind.OVERFLOW, watch.directory, True, 1)

    def _deliver(
        self,
        subscription: WatchSubscription,
        kind: EventKind,
        path: Path,
        is_directory: bool,
        count: int,
    ) -> None:
        if subscription._mailbox is None:
            return
        subscription._mailbox.put(
            WatchEvent(
                kind=kind,
                path=path,
                root=subscription.root,
                is_directory=is_directory,
                count=count,
            )
        )

    # ------------------------------------------------------------------
    # Health (dispatch loop only)
    # ------------------------------------------------------------------

    def _check_health(self) -> None:
        """Recover watches that died or whose directory came back."""
        self._next_health_check = time.monotonic() + self._settings.health_check_interval_s
        for watch in list(self._watches.values()):
            if watch.handle is not None and self._backend.is_alive(watch.handle):
                continue
            try:
                self._recover(watch)
            except Exception:
                self.log.exception("watch_recovery_failed", path=str(watch.directory))

    def _recover(self, watch: _DirectoryWatch) -> None:
        lost = watch.handle is not None
        if lost:
            self.log.warning("watch_lost", path=str(watch.directory))
            self._drop_handle(watch)

        if not watch.directory.is_dir():
            for subscription in list(watch.claimants.values()):
                if watch.directory != subscription.root:
                    self._release(watch.key, subscription)
            if lost:
                self._signal_overflow(watch)
            return

        try:
            watch.handle = self._backend.schedule(watch.directory, watch.key[1], watch.sink)
        except WatchRegistrationError as e:
            self.log.warning("watch_restore_failed", path=str(watch.directory), reason=e.reason)
            if lost:
                self._signal_overflow(watch)
            return

        self.log.info("watch_restored", path=str(watch.directory))
        self._signal_overflow(watch)
        for subscription in list(watch.claimants.values()):
            if subscription.emulated:
                self._extend(subscription, watch.directory)
