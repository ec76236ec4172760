"""Wire codec for the snake game protocol.

Structured messages are compact JSON objects carrying an ``event`` field.
Two messages sit outside that format to stay cheap on the hot path: the
ping/pong literal ``p`` and the positional move command ``m:<id>:<code>``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from snakeload.core.models import Direction, PlayerIdentity
from snakeload.exceptions import DecodeError

PING_LITERAL = "p"
PONG_LITERAL = "p"
MOVE_PREFIX = "m"

EVENT_NEW_PLAYER = "newPlayer"
EVENT_START_GAME = "startGame"
EVENT_SNAKE_UPDATE = "snake_update"

PONG_KEY = "<pong>"
MALFORMED_KEY = "<malformed>"

_STRUCTURED_OPEN = "{"


@dataclass(frozen=True)
class Pong:
    pass


@dataclass(frozen=True)
class GameEvent:
    event_name: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class Malformed:
    raw: str


InboundMessage = Union[Pong, GameEvent, Malformed]


def _dumps(obj: dict[str, Any]) -> str:
    return json.dumps(obj, separators=(",", ":"))


def encode_join(identity: PlayerIdentity) -> str:
    colours = identity.colours
    return _dumps(
        {
            "event": EVENT_NEW_PLAYER,
            "player": {
                "name": identity.name,
                "id": identity.id,
                "colours": {
                    "head": colours.head,
                    "body": colours.body,
                    "eyes": colours.eyes,
                },
            },
        }
    )


def encode_start() -> str:
    return _dumps({"event": EVENT_START_GAME})


def encode_move(identity: PlayerIdentity, direction: Direction) -> str:
    return f"{MOVE_PREFIX}:{identity.id}:{direction.code}"


def encode_ping() -> str:
    return PING_LITERAL


def decode(raw: str | bytes) -> InboundMessage:
    """Classify and decode one inbound payload.

    Raises:
        DecodeError: the payload opened like a JSON object but did not parse
            into an object with a string ``event`` field.
    """

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"payload is not valid UTF-8: {exc}") from exc

    if raw == PONG_LITERAL:
        return Pong()

    if not raw.startswith(_STRUCTURED_OPEN):
        return Malformed(raw=raw)

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"invalid JSON message: {exc.msg}", raw=raw) from exc

    if not isinstance(data, dict):
        raise DecodeError("structured message is not an object", raw=raw)

    event_name = data.get("event")
    if not isinstance(event_name, str):
        raise DecodeError("structured message has no string 'event' field", raw=raw)

    return GameEvent(event_name=event_name, payload=data)


def decode_move(raw: str) -> tuple[str, Direction]:
    """Parse a move command as the server sees it. Returns ``(player_id, direction)``."""

    prefix, sep, rest = raw.partition(":")
    player_id, sep2, code = rest.rpartition(":")
    if prefix != MOVE_PREFIX or not sep or not sep2 or not player_id:
        raise DecodeError("not a move command", raw=raw)
    try:
        return player_id, Direction.from_code(code)
    except ValueError as exc:
        raise DecodeError(str(exc), raw=raw) from exc


def dispatch_key(message: InboundMessage) -> str:
    """Key a message for the per-state dispatch table."""

    if isinstance(message, Pong):
        return PONG_KEY
    if isinstance(message, GameEvent):
        return message.event_name
    return MALFORMED_KEY
