# Shared infrastructure

from tally_core.core.logging import (
    JSONFormatter,
    LogFormat,
    PrettyFormatter,
    SimpleFormatter,
    get_logger,
    setup_logging,
)

__all__ = [
    "JSONFormatter",
    "LogFormat",
    "PrettyFormatter",
    "SimpleFormatter",
    "get_logger",
    "setup_logging",
]
