"""
Pathwarden Structured Logging Module.

Log lines go to stderr so that stdout stays free for event output.
Requires Python 3.11+.
"""

import logging
import sys

import structlog
from structlog.processors import CallsiteParameter
from structlog.types import Processor

from utils.config import get_settings


def configure_logging(level: str | None = None) -> None:
    """
    Configure structlog for the watch engine and scripts.

    Args:
        level: Overrides LOG_LEVEL when given
    """
    settings = get_settings().logging
    numeric = getattr(logging, (level or settings.level).upper(), logging.INFO)

    processors: list[Processor] = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        # Dispatch loop, handler pool and observer threads all log
        structlog.processors.CallsiteParameterAdder([CallsiteParameter.THREAD_NAME]),
        structlog.dev.set_exc_info,
    ]
    if settings.format == "json":
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr, level=numeric)
    logging.getLogger("watchdog").setLevel(max(numeric, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger, named after the component that logs."""
    return structlog.get_logger(name)


class LoggerMixin:
    """Gives a class a `log` attribute bound to its class name."""

    @property
    def log(self) -> structlog.stdlib.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(type(self).__name__)
        return self._logger
