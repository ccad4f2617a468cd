"""
Pathwarden Watcher Data Models.

Event types and subscription handles shared by the watch engine.
Requires Python 3.11+.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from watcher.engine import WatchEngine
    from watcher.mailbox import Mailbox


class EventKind(str, Enum):
    """Kinds of change a subscription can ask for."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    OVERFLOW = "overflow"


ALL_KINDS: frozenset[EventKind] = frozenset(EventKind)


class EngineState(str, Enum):
    """Lifecycle of a watch engine. STOPPED is terminal."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


# (directory, recursive) identifies one platform watch
WatchKey = tuple[Path, bool]


@dataclass(frozen=True, slots=True)
class RawEvent:
    """A notification as delivered by a platform backend."""

    watch_id: int
    directory: Path
    path: Path
    kind: EventKind
    is_directory: bool
    sequence: int
    count: int = 1


@dataclass(frozen=True, slots=True)
class WatchEvent:
    """
    A change delivered to a subscription handler.

    Attributes:
        kind: What happened
        path: The affected path; for overflow events, the directory whose
            changes may have been missed
        root: Root directory of the receiving subscription
        is_directory: Whether the affected path is a directory
        count: Number of identical notifications collapsed into this one
    """

    kind: EventKind
    path: Path
    root: Path
    is_directory: bool = False
    count: int = 1


Handler = Callable[[WatchEvent], Any]
ErrorHandler = Callable[[WatchEvent, Exception], Any]


@dataclass(eq=False)
class WatchSubscription:
    """
    Interest in changes under one path.

    Created by WatchEngine.watch(). Liveness and claims are only changed by
    the engine's dispatch loop.
    """

    id: int
    target: Path
    root: Path
    recursive: bool
    kinds: frozenset[EventKind]
    handler: Handler
    max_depth: int | None = None
    on_error: ErrorHandler | None = None
    emulated: bool = False
    claims: set[WatchKey] = field(default_factory=set, repr=False)
    _engine: WatchEngine | None = field(default=None, repr=False)
    _mailbox: Mailbox | None = field(default=None, repr=False)
    _live: bool = field(default=True, repr=False)

    @property
    def is_live(self) -> bool:
        """Whether events are still being delivered."""
        return self._live

    @property
    def is_file_target(self) -> bool:
        return self.target != self.root

    @property
    def watched_directories(self) -> list[Path]:
        """Directories with a platform watch held for this subscription."""
        return sorted({directory for directory, _ in self.claims})

    def wants(self, kind: EventKind) -> bool:
        return kind in self.kinds

    def depth_of(self, path: Path) -> int | None:
        """Nesting depth of path below the root, or None if outside it."""
        if path == self.root:
            return 0
        try:
            return len(path.relative_to(self.root).parts)
        except ValueError:
            return None

    def in_scope(self, path: Path) -> bool:
        """
        Whether a change at path concerns this subscription.

        Non-recursive subscriptions see the root and its direct children.
        Recursive ones see everything below the root, down to max_depth.
        """
        if self.is_file_target:
            return path == self.target
        depth = self.depth_of(path)
        if depth is None:
            return False
        if not self.recursive:
            return depth <= 1
        return self.max_depth is None or depth <= self.max_depth

    def descends_into(self, directory: Path) -> bool:
        """Whether children of directory are still within max_depth."""
        depth = self.depth_of(directory)
        if depth is None or not self.recursive:
            return False
        return self.max_depth is None or depth < self.max_depth

    def stop(self) -> None:
        """Stop this subscription; other subscriptions are unaffected."""
        if self._engine is None:
            raise RuntimeError("subscription is not attached to an engine")
        self._engine.stop(self)
