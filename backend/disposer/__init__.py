"""
Pathwarden Disposer Package.

Deterministic, exception-safe release of acquired resources.
Requires Python 3.11+.
"""

from disposer.core import Disposer, ReleaseStack
from disposer.iterators import ClosingIterator
from disposer.resources import open_file, read_lines, temporary_directory, temporary_file

__all__ = [
    "Disposer",
    "ReleaseStack",
    "ClosingIterator",
    "open_file",
    "read_lines",
    "temporary_directory",
    "temporary_file",
]
