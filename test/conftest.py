"""Pytest configuration and fixtures

Provides an in-memory WebSocket transport that plays the game server's part
(answers pings, answers a start request with ``startGame`` and a
``snake_update``) and a logger that records structured log calls.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

# Add project root to sys.path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from snakeload.core.codec import EVENT_NEW_PLAYER, EVENT_SNAKE_UPDATE, EVENT_START_GAME
from snakeload.core.transport import SWITCHING_PROTOCOLS, OpenResult
from snakeload.logger import Logger


# ============================================================================
# RECORDING LOGGER
# ============================================================================


class RecordingLogger(Logger):
    """Keeps every log call as ``(level, message, fields)``."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def _log(self, level: str, message: str, fields: dict[str, Any]) -> None:
        self.records.append((level, message, fields))

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("debug", message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("info", message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("warning", message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("error", message, kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        self._log("critical", message, kwargs)

    def events(self, name: str) -> list[dict[str, Any]]:
        return [fields for _, message, fields in self.records if message == name]


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


# ============================================================================
# IN-MEMORY TRANSPORT
# ============================================================================

PEER_CLOSE = object()

Responder = Callable[[str], list]


def _event(name: str, **payload: Any) -> str:
    return json.dumps({"event": name, **payload}, separators=(",", ":"))


def game_responder(message: str) -> list:
    """Minimal stand-in for the game server's replies to one client message."""
    if message == "p":
        return ["p"]
    if message.startswith("{"):
        event = json.loads(message).get("event")
        if event == EVENT_START_GAME:
            return [_event(EVENT_START_GAME), _event(EVENT_SNAKE_UPDATE, snakesMap={})]
    return []


def silent_responder(message: str) -> list:
    return []


def scripted_responder(on_join: list, fallback: Responder = game_responder) -> Responder:
    """Push ``on_join`` when the join message arrives, else defer to ``fallback``.

    Exceptions in ``on_join`` are raised from ``receive()``; ``PEER_CLOSE``
    closes the channel from the server side.
    """

    def _respond(message: str) -> list:
        if message.startswith("{") and json.loads(message).get("event") == EVENT_NEW_PLAYER:
            return list(on_join)
        return fallback(message)

    return _respond


class MockChannel:
    def __init__(self, url: str, headers: Optional[dict[str, str]], responder: Responder) -> None:
        self.url = url
        self.headers = headers
        self.sent: list[str] = []
        self.closed = False
        self.peer_closed = False
        self._responder = responder
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed or self.peer_closed:
            raise ConnectionResetError("channel is closed")
        self.sent.append(message)
        for reply in self._responder(message):
            if reply is PEER_CLOSE:
                self.close_from_peer()
            else:
                self.push(reply)

    async def receive(self):
        if self.closed:
            return None
        item = await self._inbox.get()
        if item is PEER_CLOSE:
            return None
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(PEER_CLOSE)

    def push(self, raw) -> None:
        self._inbox.put_nowait(raw)

    def close_from_peer(self) -> None:
        if not self.peer_closed:
            self.peer_closed = True
            self._inbox.put_nowait(PEER_CLOSE)


class MockTransport:
    """Transport double.

    ``reject_every`` answers every n-th open with HTTP 503 (no channel).
    ``fail_with`` makes every open raise that exception.
    ``open_delay`` suspends each open before it resolves.
    """

    def __init__(
        self,
        *,
        responder: Responder = game_responder,
        reject_every: Optional[int] = None,
        fail_with: Optional[BaseException] = None,
        open_delay: float = 0.0,
    ) -> None:
        self._responder = responder
        self._reject_every = reject_every
        self._fail_with = fail_with
        self._open_delay = open_delay
        self.open_attempts = 0
        self.rejected = 0
        self.channels: list[MockChannel] = []
        self.aclosed = False

    async def open(self, url: str, *, headers=None, timeout: float = 10.0) -> OpenResult:
        self.open_attempts += 1
        attempt = self.open_attempts
        if self._open_delay:
            await asyncio.sleep(self._open_delay)
        if self._fail_with is not None:
            raise self._fail_with
        if self._reject_every and attempt % self._reject_every == 0:
            self.rejected += 1
            return OpenResult(status=503, channel=None)
        channel = MockChannel(url, headers, self._responder)
        self.channels.append(channel)
        return OpenResult(status=SWITCHING_PROTOCOLS, channel=channel)

    async def aclose(self) -> None:
        self.aclosed = True


@pytest.fixture
def mock_transport() -> MockTransport:
    return MockTransport()
