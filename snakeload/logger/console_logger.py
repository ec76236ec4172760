from __future__ import annotations

import logging
import sys
from typing import Any

from snakeload.logger.base import Logger

_MAX_FIELD_CHARS = 500
_TRUNCATED_SUFFIX = "...[truncated]"


def _render_value(value: Any) -> str:
    text = str(value)
    if len(text) > _MAX_FIELD_CHARS:
        text = text[:_MAX_FIELD_CHARS] + _TRUNCATED_SUFFIX
    if " " in text or not text:
        return repr(text)
    return text


def format_fields(message: str, fields: dict[str, Any]) -> str:
    """Render ``message key=value ...`` with ``None`` fields dropped."""

    parts = [message]
    for key, value in fields.items():
        if value is None:
            continue
        parts.append(f"{key}={_render_value(value)}")
    return " ".join(parts)


class ConsoleLogger(Logger):
    """Logger that writes ``message key=value`` lines to stderr.

    Built on the standard ``logging`` module so the level can be tuned and
    handlers swapped by the embedding application.
    """

    def __init__(self, name: str = "snakeload", level: int = logging.INFO) -> None:
        self._logger = logging.getLogger(name)
        self._logger.setLevel(level)
        self._logger.propagate = False

        if not self._logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
            )
            self._logger.addHandler(handler)

    @property
    def level(self) -> int:
        return self._logger.level

    def set_level(self, level: int) -> None:
        self._logger.setLevel(level)

    def debug(self, message: str, **kwargs: Any) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(format_fields(message, kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        if self._logger.isEnabledFor(logging.INFO):
            self._logger.info(format_fields(message, kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(format_fields(message, kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(format_fields(message, kwargs))

    def critical(self, message: str, **kwargs: Any) -> None:
        self._logger.critical(format_fields(message, kwargs))
