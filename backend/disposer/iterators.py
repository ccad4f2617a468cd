"""
Pathwarden Closing Iterator.

Single-pass iteration over a disposable sequence.
Requires Python 3.11+.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from types import TracebackType
from typing import TYPE_CHECKING, TypeVar

from disposer.core import ReleaseStack

if TYPE_CHECKING:
    from disposer.core import Disposer

T = TypeVar("T")


class ClosingIterator(Iterator[T]):
    """
    Lazy iterator that owns the resources behind its items.

    Acquisition happens on the first next(). Release happens exactly once,
    on whichever comes first: exhaustion, close(), leaving a with block,
    or garbage collection after an abandoned loop. A closed iterator
    stays exhausted; it can never be restarted.
    """

    def __init__(self, source: Disposer[Iterable[T]]) -> None:
        self._source = source
        self._stack: ReleaseStack | None = None
        self._iterator: Iterator[T] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether the underlying resources have been released."""
        return self._closed

    def __iter__(self) -> ClosingIterator[T]:
        return self

    def __next__(self) -> T:
        if self._closed:
            raise StopIteration
        if self._iterator is None:
            self._open()
        assert self._iterator is not None
        try:
            return next(self._iterator)
        except StopIteration:
            self.close()
            raise
        except BaseException as e:
            self._release(e)
            raise

    def _open(self) -> None:
        stack = ReleaseStack()
        try:
            self._iterator = iter(self._source.materialize(stack))
        except BaseException as e:
            self._closed = True
            stack.close(e)
            raise
        self._stack = stack

    def _release(self, primary: BaseException | None) -> None:
        if self._closed:
            return
        self._closed = True
        self._iterator = None
        stack, self._stack = self._stack, None
        if stack is not None:
            stack.close(primary)

    def close(self) -> None:
        """Release the resources now; further next() calls stop immediately."""
        self._release(None)

    def __enter__(self) -> ClosingIterator[T]:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._release(exc)

    def __del__(self) -> None:
        # Abandoned mid-iteration; errors were already logged by unwind()
        stack = getattr(self, "_stack", None)
        if stack is not None and not self._closed:
            self._closed = True
            self._stack = None
            stack.unwind()
