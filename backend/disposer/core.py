"""
Pathwarden Disposer.

Composable resource handles with guaranteed reverse-order release.
Requires Python 3.11+.
"""

from __future__ import annotations

import atexit
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from utils.errors import DisposalError
from utils.logger import get_logger

if TYPE_CHECKING:
    from disposer.iterators import ClosingIterator

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")

Release = Callable[[], None]
ExitRelease = Callable[[BaseException | None], Any]

log = get_logger("disposer")


class ReleaseStack:
    """
    Pending release actions of one materialization.

    Actions are pushed after each successful acquisition and popped in
    LIFO order by unwind(). Every action runs at most once.
    """

    __slots__ = ("_actions",)

    def __init__(self) -> None:
        self._actions: list[ExitRelease] = []

    def push(self, action: Release) -> None:
        """Register the release action of a resource just acquired."""
        self._actions.append(lambda primary: action())

    def push_exit(self, action: ExitRelease) -> None:
        """Register a release action that is told about the primary error."""
        self._actions.append(action)

    def __len__(self) -> int:
        return len(self._actions)

    def unwind(self, primary: BaseException | None = None) -> list[Exception]:
        """
        Run all pending releases, newest first.

        A failing release is logged and collected; the remaining releases
        still run. A KeyboardInterrupt or SystemExit raised by a release is
        re-raised once every release has run.

        Args:
            primary: Error raised while acquiring or using the resources

        Returns:
            Errors raised by release actions, in the order they ran
        """
        errors: list[Exception] = []
        interrupt: BaseException | None = None
        while self._actions:
            action = self._actions.pop()
            try:
                action(primary)
            except Exception as e:
                log.error(
                    "release_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    remaining=len(self._actions),
                )
                errors.append(e)
            except BaseException as e:
                if interrupt is None:
                    interrupt = e
        if interrupt is not None:
            raise interrupt
        return errors

    def close(self, primary: BaseException | None = None) -> None:
        """
        Unwind and raise according to the failure rules.

        With no release failures the primary error (if any) is left to the
        caller to re-raise. Release failures always surface as DisposalError
        carrying the primary error as its cause.
        """
        errors = self.unwind(primary)
        if errors:
            raise DisposalError(primary, errors) from primary


class Disposer(Generic[T]):
    """
    A resource acquisition paired with its release.

    Nothing is acquired until the disposer is materialized by use(),
    scoped(), iterate() or get(). A Disposer holds no mutable state, so
    the same value can be materialized any number of times, from any
    number of threads; each materialization has its own ReleaseStack.

    Example:
        config = Disposer.closing(lambda: open("a.txt")).flat_map(
            lambda a: Disposer.closing(lambda: open(a.readline().strip()))
        )
        text = config.use(lambda f: f.read())
    """

    __slots__ = ("_acquire",)

    def __init__(self, acquire: Callable[[ReleaseStack], T]) -> None:
        """
        Initialize from a raw acquisition step.

        Args:
            acquire: Acquires the value, pushing one release action onto the
                stack for every resource it successfully acquires
        """
        self._acquire = acquire

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def of(cls, acquire: Callable[[], T], release: Callable[[T], Any]) -> Disposer[T]:
        """Wrap an acquisition and its matching release."""

        def step(stack: ReleaseStack) -> T:
            value = acquire()
            stack.push(lambda: release(value))
            return value

        return cls(step)

    @classmethod
    def closing(cls, factory: Callable[[], T]) -> Disposer[T]:
        """Wrap a factory whose result is released by calling close()."""
        return cls.of(factory, lambda resource: resource.close())  # type: ignore[attr-defined]

    @classmethod
    def from_context(cls, factory: Callable[[], AbstractContextManager[T]]) -> Disposer[T]:
        """
        Wrap a context manager factory; __exit__ is the release.

        __exit__ receives the error that ended the scope, so transactional
        managers roll back on failure. Its return value is ignored: the
        error is never suppressed.
        """

        def step(stack: ReleaseStack) -> T:
            manager = factory()
            value = manager.__enter__()

            def release(primary: BaseException | None) -> None:
                if primary is None:
                    manager.__exit__(None, None, None)
                else:
                    manager.__exit__(type(primary), primary, primary.__traceback__)

            stack.push_exit(release)
            return value

        return cls(step)

    @classmethod
    def pure(cls, value: T) -> Disposer[T]:
        """A value with nothing to release."""
        return cls(lambda stack: value)

    @classmethod
    def sequence(cls, disposers: Iterable[Disposer[Any]]) -> Disposer[list[Any]]:
        """Acquire disposers in order, releasing them in reverse."""
        stages = list(disposers)

        def step(stack: ReleaseStack) -> list[Any]:
            return [stage._acquire(stack) for stage in stages]

        return cls(step)

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def map(self, f: Callable[[T], U]) -> Disposer[U]:
        """Transform the value without changing what gets released."""
        acquire = self._acquire
        return Disposer(lambda stack: f(acquire(stack)))

    def flat_map(self, f: Callable[[T], Disposer[U]]) -> Disposer[U]:
        """
        Chain a resource that depends on this one.

        The outer resource is acquired first and released last. If the
        inner acquisition fails, the outer release still runs exactly once.
        """
        acquire = self._acquire

        def step(stack: ReleaseStack) -> U:
            outer = acquire(stack)
            return f(outer)._acquire(stack)

        return Disposer(step)

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def use(self, body: Callable[[T], R]) -> R:
        """
        Acquire the whole chain, run body, release everything.

        Releases run in reverse acquisition order on every exit path. If a
        release fails the remaining releases still run and a DisposalError
        is raised, with the body or acquisition error (if any) as primary.

        Args:
            body: Function receiving the acquired value

        Returns:
            Whatever body returns
        """
        stack = ReleaseStack()
        try:
            result = body(self._acquire(stack))
        except BaseException as e:
            stack.close(e)
            raise
        stack.close()
        return result

    def foreach(self, f: Callable[[T], Any]) -> None:
        """Run f on the value for its side effects."""
        self.use(f)

    @contextmanager
    def scoped(self) -> Iterator[T]:
        """Materialize for the duration of a with block."""
        stack = ReleaseStack()
        try:
            yield self._acquire(stack)
        except BaseException as e:
            stack.close(e)
            raise
        stack.close()

    def iterate(self: Disposer[Iterable[U]]) -> ClosingIterator[U]:
        """
        Expose an iterable resource as a lazy single-pass iterator.

        The resource is acquired on the first next() and released when the
        iterator is exhausted, closed, or garbage collected.
        """
        from disposer.iterators import ClosingIterator

        return ClosingIterator(self)

    def get(self) -> T:
        """
        Acquire without a scope.

        The releases are deferred until interpreter exit. Only use this for
        resources that genuinely live as long as the process.
        """
        stack = ReleaseStack()
        try:
            value = self._acquire(stack)
        except BaseException as e:
            stack.close(e)
            raise
        _exit_releases.register(stack)
        return value

    def materialize(self, stack: ReleaseStack) -> T:
        """Acquire into a caller-owned stack."""
        return self._acquire(stack)


class _ExitReleases:
    """Stacks acquired through Disposer.get(), unwound at interpreter exit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stacks: list[ReleaseStack] = []
        self._hooked = False

    def register(self, stack: ReleaseStack) -> None:
        with self._lock:
            self._stacks.append(stack)
            if not self._hooked:
                atexit.register(self.release_all)
                self._hooked = True

    def release_all(self) -> None:
        with self._lock:
            stacks, self._stacks = self._stacks, []
        # Newest first, matching the nesting of the acquisitions
        for stack in reversed(stacks):
            stack.unwind()


_exit_releases = _ExitReleases()
