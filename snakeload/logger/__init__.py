"""Logger module for snakeload

Usage:
    from snakeload.logger import Logger, session_logger

    session_logger.info("run.start", event="run.start", stages=2)

    # Or implement your own
    class MyCustomLogger(Logger):
        def info(self, message: str, **kwargs):
            # Your custom implementation
            pass
"""

import logging

from .base import Logger
from .console_logger import ConsoleLogger, format_fields

# Shared logger instance for modules that just need basic console logging
session_logger: Logger = ConsoleLogger(level=logging.INFO)

__all__ = [
    "Logger",
    "ConsoleLogger",
    "format_fields",
    "session_logger",
]
