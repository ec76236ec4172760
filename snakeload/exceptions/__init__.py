"""Exception classes for snakeload."""

from snakeload.exceptions.base import (
    ConfigurationError,
    SnakeLoadError,
    ValidationError,
)
from snakeload.exceptions.player import (
    DecodeError,
    InvalidPlayerStateError,
    PlayerConnectionError,
)

__all__ = [
    "SnakeLoadError",
    "ValidationError",
    "ConfigurationError",
    "PlayerConnectionError",
    "DecodeError",
    "InvalidPlayerStateError",
]
