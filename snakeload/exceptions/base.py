"""Base exception hierarchy for snakeload.

Every error carries a machine-readable ``code``, a human-readable
``message`` and an optional ``details`` mapping used for structured logging.
"""

from __future__ import annotations

from typing import Any


class SnakeLoadError(Exception):
    """Base exception for all harness errors."""

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.code}: {self.message} (details: {self.details})"
        return f"{self.code}: {self.message}"


class ValidationError(SnakeLoadError):
    """Raised when an input value fails validation."""

    pass


class ConfigurationError(SnakeLoadError):
    """Raised when run configuration is malformed. Fatal at startup."""

    pass
