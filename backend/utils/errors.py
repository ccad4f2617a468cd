"""
Pathwarden Error Types.

Exceptions shared by the disposer and watcher packages.
Requires Python 3.11+.
"""

from collections.abc import Sequence
from pathlib import Path


class PathwardenError(Exception):
    """Base class for all Pathwarden errors."""


class PathNotFoundError(PathwardenError, FileNotFoundError):
    """A watch target did not exist at registration time."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(f"path does not exist: {self.path}")


class WatchRegistrationError(PathwardenError):
    """The platform refused to install a watch."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"cannot watch {self.path}: {reason}")


class EngineClosedError(PathwardenError, RuntimeError):
    """A watch engine or one of its subscriptions was used after close()."""


class DisposalError(PathwardenError):
    """
    One or more release actions failed.

    Attributes:
        primary: The error raised while acquiring or using the resources,
            or None when only releases failed.
        suppressed: Errors raised by release actions, in the order they ran.
    """

    def __init__(
        self,
        primary: BaseException | None,
        suppressed: Sequence[BaseException],
    ) -> None:
        self.primary = primary
        self.suppressed = list(suppressed)
        if primary is not None:
            message = (
                f"{type(primary).__name__}: {primary} "
                f"(and {len(self.suppressed)} release failure(s))"
            )
        else:
            message = f"{len(self.suppressed)} release failure(s)"
        super().__init__(message)
