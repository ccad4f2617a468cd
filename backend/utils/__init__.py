"""
Pathwarden Utilities Package.

Configuration, logging and errors shared by all packages.
Requires Python 3.11+.
"""

from utils.config import Settings, WatchSettings, get_settings
from utils.errors import (
    DisposalError,
    EngineClosedError,
    PathNotFoundError,
    PathwardenError,
    WatchRegistrationError,
)
from utils.logger import configure_logging, get_logger, LoggerMixin

__all__ = [
    "Settings",
    "WatchSettings",
    "get_settings",
    "DisposalError",
    "EngineClosedError",
    "PathNotFoundError",
    "PathwardenError",
    "WatchRegistrationError",
    "configure_logging",
    "get_logger",
    "LoggerMixin",
]
