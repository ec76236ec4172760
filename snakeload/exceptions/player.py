"""Virtual-player exceptions.

These are contained at the player boundary and surface only as check
outcomes or log lines; none of them abort a run.
"""

from __future__ import annotations

from typing import Any

from snakeload.exceptions.base import SnakeLoadError, ValidationError


class PlayerConnectionError(SnakeLoadError):
    """Raised when the transport fails to open or upgrade."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if status is not None:
            merged["status"] = status
        super().__init__("CONNECTION_ERROR", message, details=merged)
        self.status = status


class DecodeError(SnakeLoadError):
    """Raised when a payload that looked structured fails to parse."""

    def __init__(self, message: str, *, raw: str | None = None) -> None:
        details = {"raw": raw[:200]} if raw is not None else None
        super().__init__("DECODE_ERROR", message, details=details)
        self.raw = raw


class InvalidPlayerStateError(ValidationError):
    """Raised when a single-use player is driven again."""

    def __init__(self, message: str, *, player_id: str, state: str) -> None:
        super().__init__(
            "INVALID_PLAYER_STATE",
            message,
            details={"player_id": player_id, "state": state},
        )
