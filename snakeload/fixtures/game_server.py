from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from snakeload.core.codec import (
    EVENT_NEW_PLAYER,
    EVENT_START_GAME,
    EVENT_SNAKE_UPDATE,
    MOVE_PREFIX,
    PING_LITERAL,
    PONG_LITERAL,
    GameEvent,
    decode,
    decode_move,
)
from snakeload.core.models import Direction
from snakeload.exceptions import DecodeError
from snakeload.logger import Logger, session_logger

_GRID_SIDE = 20
_STARTING_POSITIONS = ((5, 5), (15, 5), (5, 15), (15, 15))
_HEADINGS = {
    Direction.UP: (0, -1),
    Direction.DOWN: (0, 1),
    Direction.LEFT: (-1, 0),
    Direction.RIGHT: (1, 0),
}


@dataclass(eq=False)
class _Client:
    ws: web.WebSocketResponse
    player_id: str | None
    room: "_Room | None" = None


@dataclass(eq=False)
class _Room:
    id: str
    capacity: int
    clients: list[_Client] = field(default_factory=list)
    snakes: dict[str, dict[str, Any]] = field(default_factory=dict)
    started: bool = False
    started_at: float | None = None
    loop_task: asyncio.Task[None] | None = None

    @property
    def has_space(self) -> bool:
        return len(self.clients) < self.capacity and not self.started


class GameFixtureServer:
    """Local WebSocket stand-in for the snake game server.

    Speaks enough of the real protocol to drive the harness end to end
    without a deployment:

    - ``p`` is answered with ``p``
    - ``newPlayer`` places the player's snake in the connection's room
      (rooms hold ``room_capacity`` connections, first come first served)
    - the first ``startGame`` in a room broadcasts ``startGame`` and starts a
      tick loop broadcasting ``snake_update`` at ``fps``
    - ``m:<id>:<code>`` turns that player's snake

    ``reject_every`` answers every n-th upgrade with HTTP 503 and
    ``game_seconds`` ends each game with ``gameover`` and closes the room.

    Env defaults:
      SNAKELOAD_FIXTURE_HOST=127.0.0.1
    """

    def __init__(
        self,
        *,
        host: str | None = None,
        port: int = 0,
        room_capacity: int = 2,
        fps: float = 10.0,
        reject_every: int | None = None,
        game_seconds: float | None = None,
        logger: Logger | None = None,
    ) -> None:
        if room_capacity < 1:
            raise ValueError("room_capacity must be >= 1")
        if fps <= 0:
            raise ValueError("fps must be > 0")
        if reject_every is not None and reject_every < 1:
            raise ValueError("reject_every must be >= 1")

        self._logger = logger or session_logger
        self._host = host or os.environ.get("SNAKELOAD_FIXTURE_HOST", "127.0.0.1")
        self.port = port
        self._room_capacity = room_capacity
        self._tick_seconds = 1.0 / fps
        self._reject_every = reject_every
        self._game_seconds = game_seconds

        self._runner: web.AppRunner | None = None
        self._rooms: dict[str, _Room] = {}
        self._clients: set[_Client] = set()
        self._room_seq = 0
        self._upgrade_attempts = 0

        self.connections_accepted = 0
        self.connections_rejected = 0
        self.pings_answered = 0
        self.moves_received: dict[str, int] = {}
        self.joined_players: list[str] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/ws", self._handle_ws)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self.port)
        await site.start()
        self.port = int(self._runner.addresses[0][1])

        self._logger.info(
            "fixture.game_server_started",
            event="fixture.game_server_started",
            host=self._host,
            port=self.port,
            room_capacity=self._room_capacity,
            reject_every=self._reject_every,
        )

    async def stop(self) -> None:
        for room in list(self._rooms.values()):
            if room.loop_task is not None:
                room.loop_task.cancel()
        tasks = [r.loop_task for r in self._rooms.values() if r.loop_task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for client in list(self._clients):
            await client.ws.close(code=WSCloseCode.GOING_AWAY, message=b"fixture shutdown")

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

        self._logger.info(
            "fixture.game_server_stopped",
            event="fixture.game_server_stopped",
            port=self.port,
            accepted=self.connections_accepted,
            rejected=self.connections_rejected,
        )

    async def __aenter__(self) -> "GameFixtureServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def ws_url(self) -> str:
        return f"ws://{self._host}:{self.port}/ws"

    @property
    def player_url_template(self) -> str:
        return f"{self.ws_url}?playerId={{player_id}}"

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        self._upgrade_attempts += 1
        if self._reject_every and self._upgrade_attempts % self._reject_every == 0:
            self.connections_rejected += 1
            return web.Response(status=503, text="rejected by fixture")

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.connections_accepted += 1

        client = _Client(ws=ws, player_id=request.query.get("playerId"))
        self._clients.add(client)
        self._assign_room(client)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._on_text(client, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    break
        finally:
            self._disconnect(client)
        return ws

    def _assign_room(self, client: _Client) -> None:
        for room in self._rooms.values():
            if room.has_space:
                break
        else:
            self._room_seq += 1
            room = _Room(id=f"room_{self._room_seq}", capacity=self._room_capacity)
            self._rooms[room.id] = room
        room.clients.append(client)
        client.room = room

    def _disconnect(self, client: _Client) -> None:
        self._clients.discard(client)
        room = client.room
        if room is None:
            return
        if client in room.clients:
            room.clients.remove(client)
        if client.player_id is not None:
            room.snakes.pop(client.player_id, None)
        if not room.clients:
            if room.loop_task is not None and room.loop_task is not asyncio.current_task():
                room.loop_task.cancel()
            self._rooms.pop(room.id, None)

    async def _on_text(self, client: _Client, data: str) -> None:
        if data == PING_LITERAL:
            self.pings_answered += 1
            await client.ws.send_str(PONG_LITERAL)
            return

        if data.startswith(MOVE_PREFIX + ":"):
            try:
                player_id, direction = decode_move(data)
            except DecodeError:
                return
            self.moves_received[player_id] = self.moves_received.get(player_id, 0) + 1
            room = client.room
            if room is not None and player_id in room.snakes:
                room.snakes[player_id]["heading"] = direction.value
            return

        try:
            message = decode(data)
        except DecodeError as exc:
            self._logger.debug("fixture.bad_message", event="fixture.bad_message", error=exc.message)
            return
        if not isinstance(message, GameEvent):
            return

        if message.event_name == EVENT_NEW_PLAYER:
            self._on_new_player(client, message.payload)
        elif message.event_name == EVENT_START_GAME:
            await self._on_start_game(client)

    def _on_new_player(self, client: _Client, payload: dict[str, Any]) -> None:
        room = client.room
        player = payload.get("player")
        if room is None or not isinstance(player, dict):
            return
        player_id = str(player.get("id") or client.player_id or "")
        if not player_id:
            return
        client.player_id = player_id
        x, y = _STARTING_POSITIONS[min(len(room.snakes), len(_STARTING_POSITIONS) - 1)]
        room.snakes[player_id] = {
            "name": player.get("name", ""),
            "id": player_id,
            "colours": player.get("colours", {}),
            "snake": {"x": x, "y": y},
            "heading": Direction.RIGHT.value,
        }
        self.joined_players.append(player_id)

    async def _on_start_game(self, client: _Client) -> None:
        room = client.room
        if room is None or room.started or not room.snakes:
            return
        room.started = True
        room.started_at = time.monotonic()
        await self._broadcast(room, {"event": EVENT_START_GAME})
        room.loop_task = asyncio.create_task(self._game_loop(room), name=f"fixture-{room.id}")

    async def _game_loop(self, room: _Room) -> None:
        while room.clients:
            await asyncio.sleep(self._tick_seconds)
            for entry in room.snakes.values():
                dx, dy = _HEADINGS[Direction(entry["heading"])]
                snake = entry["snake"]
                snake["x"] = (snake["x"] + dx) % _GRID_SIDE
                snake["y"] = (snake["y"] + dy) % _GRID_SIDE

            await self._broadcast(room, {"event": EVENT_SNAKE_UPDATE, "snakesMap": room.snakes})

            if (
                self._game_seconds is not None
                and room.started_at is not None
                and time.monotonic() - room.started_at >= self._game_seconds
            ):
                await self._broadcast(room, {"event": "gameover"})
                room.loop_task = None
                for member in list(room.clients):
                    await member.ws.close(code=WSCloseCode.OK, message=b"gameover")
                return

    async def _broadcast(self, room: _Room, message: dict[str, Any]) -> None:
        payload = json.dumps(message, separators=(",", ":"))
        for member in list(room.clients):
            try:
                await member.ws.send_str(payload)
            except (ConnectionError, RuntimeError) as exc:
                self._logger.debug(
                    "fixture.broadcast_failed",
                    event="fixture.broadcast_failed",
                    room=room.id,
                    player_id=member.player_id,
                    error=str(exc),
                )
                self._disconnect(member)
