"""
Pathwarden Resource Factories.

Disposers for the file-system resources the rest of the code opens.
Requires Python 3.11+.
"""

import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import IO, Any

from disposer.core import Disposer


def open_file(
    path: Path | str,
    mode: str = "r",
    encoding: str | None = None,
    **kwargs: Any,
) -> Disposer[IO[Any]]:
    """
    A file handle closed on release.

    Args:
        path: File to open
        mode: Mode string as for open()
        encoding: Text encoding; defaults to UTF-8 for text modes
    """
    if encoding is None and "b" not in mode:
        encoding = "utf-8"
    return Disposer.closing(lambda: open(path, mode, encoding=encoding, **kwargs))


def read_lines(path: Path | str, encoding: str = "utf-8") -> Disposer[Iterator[str]]:
    """
    Lines of a text file without their line terminators.

    Typically consumed through iterate(), which keeps the file open only
    while lines are being read:

        for line in read_lines("app.log").iterate():
            ...
    """
    return open_file(path, "r", encoding=encoding).map(
        lambda handle: (line.rstrip("\r\n") for line in handle)
    )


def temporary_file(
    suffix: str | None = None,
    prefix: str | None = None,
    dir: Path | str | None = None,
) -> Disposer[Path]:
    """An empty temporary file, deleted on release."""

    def create() -> Path:
        fd, name = tempfile.mkstemp(suffix=suffix, prefix=prefix, dir=dir)
        os.close(fd)
        return Path(name)

    return Disposer.of(create, lambda path: path.unlink(missing_ok=True))


def temporary_directory(
    suffix: str | None = None,
    prefix: str | None = None,
    dir: Path | str | None = None,
) -> Disposer[Path]:
    """A temporary directory, removed with its contents on release."""
    return Disposer.of(
        lambda: Path(tempfile.mkdtemp(suffix=suffix, prefix=prefix, dir=dir)),
        lambda path: shutil.rmtree(path) if path.exists() else None,
    )
