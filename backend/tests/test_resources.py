"""
Tests for Closing Iterators and Resource Factories.

Requires Python 3.11+.
"""

import gc
from pathlib import Path

import pytest

from disposer.core import Disposer
from disposer.resources import open_file, read_lines, temporary_directory, temporary_file
from utils.errors import DisposalError


class CountingSource:
    """An iterable resource that counts opens and closes."""

    def __init__(self, items: list[int]) -> None:
        self.items = items
        self.opened = 0
        self.closed = 0

    def disposer(self) -> Disposer[list[int]]:
        def acquire() -> list[int]:
            self.opened += 1
            return list(self.items)

        def release(_: list[int]) -> None:
            self.closed += 1

        return Disposer.of(acquire, release)


class TestClosingIterator:
    """Test cases for Disposer.iterate()."""

    @pytest.fixture
    def source(self) -> CountingSource:
        """Create a counting source."""
        return CountingSource([1, 2, 3])

    def test_lazy_acquisition(self, source: CountingSource):
        """Test that nothing is opened before the first item is requested."""
        iterator = source.disposer().iterate()
        assert source.opened == 0

        assert next(iterator) == 1
        assert source.opened == 1
        iterator.close()

    def test_exhaustion_releases_once(self, source: CountingSource):
        """Test that running out of items releases exactly once."""
        iterator = source.disposer().iterate()

        assert list(iterator) == [1, 2, 3]
        assert iterator.closed
        assert source.closed == 1

        # Not restartable
        assert list(iterator) == []
        assert source.opened == 1
        assert source.closed == 1

    def test_early_close(self, source: CountingSource):
        """Test that close() mid-iteration releases."""
        iterator = source.disposer().iterate()
        next(iterator)
        iterator.close()
        iterator.close()

        assert source.closed == 1
        with pytest.raises(StopIteration):
            next(iterator)

    def test_with_block_releases_after_break(self, source: CountingSource):
        """Test that leaving a with block after break releases."""
        with source.disposer().iterate() as iterator:
            for item in iterator:
                if item == 2:
                    break
            assert source.closed == 0

        assert source.closed == 1

    def test_abandoned_iterator_released_on_collection(self, source: CountingSource):
        """Test that garbage collection releases an abandoned iterator."""
        iterator = source.disposer().iterate()
        for _ in iterator:
            break
        del iterator
        gc.collect()

        assert source.closed == 1

    def test_close_before_start(self, source: CountingSource):
        """Test that closing an unopened iterator acquires nothing."""
        iterator = source.disposer().iterate()
        iterator.close()

        assert list(iterator) == []
        assert source.opened == 0
        assert source.closed == 0

    def test_error_during_iteration_releases(self):
        """Test that an error from the underlying iterator releases."""
        released = []

        def items():
            yield 1
            raise ValueError("broken record")

        iterator = Disposer.of(items, lambda _: released.append(True)).iterate()
        assert next(iterator) == 1
        with pytest.raises(ValueError):
            next(iterator)

        assert released == [True]
        assert iterator.closed

    def test_release_failure_on_exhaustion(self):
        """Test that a failing release is raised when iteration ends."""

        def release(_: list[int]) -> None:
            raise OSError("disk gone")

        iterator = Disposer.of(lambda: [1], release).iterate()
        assert next(iterator) == 1
        with pytest.raises(DisposalError):
            next(iterator)


class TestResources:
    """Test cases for file resource factories."""

    def test_open_file_round_trip(self, tmp_path: Path):
        """Test writing then reading through open_file."""
        target = tmp_path / "notes.txt"
        open_file(target, "w").use(lambda handle: handle.write("héllo\n"))

        assert open_file(target).use(lambda handle: handle.read()) == "héllo\n"

    def test_open_file_closed_after_use(self, tmp_path: Path):
        """Test that the handle is closed once use() returns."""
        target = tmp_path / "data.bin"
        target.write_bytes(b"\x00\x01")

        handle = open_file(target, "rb").use(lambda h: h)
        assert handle.closed

    def test_read_lines(self, tmp_path: Path):
        """Test that lines come back without terminators."""
        target = tmp_path / "lines.txt"
        target.write_text("one\r\ntwo\nthree", encoding="utf-8")

        assert list(read_lines(target).iterate()) == ["one", "two", "three"]

    def test_read_lines_closes_on_break(self, tmp_path: Path):
        """Test that the file is closed when iteration stops early."""
        target = tmp_path / "lines.txt"
        target.write_text("a\nb\nc\n", encoding="utf-8")
        handles = []

        lines = open_file(target).map(lambda h: handles.append(h) or h)
        with lines.iterate() as iterator:
            assert next(iterator) == "a\n"

        assert handles[0].closed

    def test_missing_file_raises(self, tmp_path: Path):
        """Test that acquisition errors propagate unchanged."""
        with pytest.raises(FileNotFoundError):
            open_file(tmp_path / "absent.txt").use(lambda h: h.read())

    def test_temporary_file_deleted(self, tmp_path: Path):
        """Test that the temporary file is removed on release."""
        path = temporary_file(suffix=".tmp", dir=tmp_path).use(
            lambda p: (p.write_text("scratch"), p)[1]
        )
        assert not path.exists()

    def test_temporary_directory_removed(self, tmp_path: Path):
        """Test that the temporary directory and its contents are removed."""

        def populate(directory: Path) -> Path:
            (directory / "nested").mkdir()
            (directory / "nested" / "file.txt").write_text("x")
            return directory

        path = temporary_directory(dir=tmp_path).use(populate)
        assert not path.exists()

    def test_temporary_file_inside_temporary_directory(self, tmp_path: Path):
        """Test nesting two temporary resources."""
        scratch = temporary_directory(dir=tmp_path).flat_map(
            lambda directory: temporary_file(dir=directory).map(lambda f: (directory, f))
        )
        directory, file = scratch.use(lambda pair: pair)

        assert not file.exists()
        assert not directory.exists()
