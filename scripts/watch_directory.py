#!/usr/bin/env python3
"""
Pathwarden Directory Watch Script.

Watches a path and prints one line per change until interrupted.
Requires Python 3.11+.

Usage:
    python scripts/watch_directory.py /path/to/dir --recursive
    python scripts/watch_directory.py /path/to/file.txt --kinds modified,deleted
"""

import argparse
import sys
import threading
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from utils.config import get_settings
from utils.errors import PathwardenError
from utils.logger import configure_logging, get_logger
from watcher.backends import PollingBackend
from watcher.engine import WatchEngine
from watcher.models import EventKind, WatchEvent


logger = get_logger("watch_directory")


def print_event(event: WatchEvent) -> None:
    """Print a change as a single line."""
    suffix = "/" if event.is_directory else ""
    repeat = f" (x{event.count})" if event.count > 1 else ""
    print(f"{event.kind.value:<9} {event.path}{suffix}{repeat}", flush=True)


def parse_kinds(value: str) -> list[EventKind]:
    """Parse a comma-separated list of event kinds."""
    try:
        return [EventKind(part.strip()) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Watch a directory or file and print changes"
    )
    parser.add_argument(
        "path",
        type=Path,
        help="Directory or file to watch",
    )
    parser.add_argument(
        "--recursive", "-r",
        action="store_true",
        help="Include changes in subdirectories",
    )
    parser.add_argument(
        "--kinds",
        type=parse_kinds,
        default=None,
        help="Comma-separated kinds: created,modified,deleted,overflow",
    )
    parser.add_argument(
        "--max-depth",
        type=int,
        default=None,
        help="Deepest nesting level reported with --recursive",
    )
    parser.add_argument(
        "--polling",
        action="store_true",
        help="Use the polling backend instead of the native one",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL for this run",
    )

    args = parser.parse_args()
    configure_logging(args.log_level)
    settings = get_settings()

    backend = None
    if args.polling:
        backend = PollingBackend(settings.watch.polling_interval_s, settings.watch.join_timeout_s)

    done = threading.Event()
    try:
        with WatchEngine(backend=backend, settings=settings.watch) as engine:
            engine.watch(
                args.path,
                print_event,
                recursive=args.recursive,
                kinds=args.kinds,
                max_depth=args.max_depth,
            )
            logger.info("watching", path=str(args.path), backend=engine.backend.name)
            try:
                done.wait()
            except KeyboardInterrupt:
                logger.info("interrupted")
    except PathwardenError as e:
        logger.error("watch_failed", error=str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
