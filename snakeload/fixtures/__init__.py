"""Local fixture servers for CI-safe runs."""

from __future__ import annotations

__all__ = ["GameFixtureServer"]

from snakeload.fixtures.game_server import GameFixtureServer
