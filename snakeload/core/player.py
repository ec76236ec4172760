from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from typing import Awaitable, Callable

from snakeload.core.assertions import (
    CONNECTION_ESTABLISHED,
    GAME_UPDATE_RECEIVED,
    PONG_RECEIVED,
    SESSION_HEALTHY,
    AssertionSink,
)
from snakeload.core.codec import (
    EVENT_SNAKE_UPDATE,
    EVENT_START_GAME,
    PONG_KEY,
    InboundMessage,
    decode,
    dispatch_key,
    encode_join,
    encode_move,
    encode_ping,
    encode_start,
)
from snakeload.core.metrics import METRIC_CONNECT, METRIC_PING_RTT, METRIC_SESSION, MetricsCollector
from snakeload.core.models import (
    BehaviourProfile,
    Direction,
    MoveDirectionMode,
    PlayerIdentity,
    ProtocolState,
    RunConfig,
)
from snakeload.core.transport import (
    Channel,
    OpenResult,
    Transport,
    build_player_url,
    classify_exception,
    tag_headers,
)
from snakeload.exceptions import DecodeError, InvalidPlayerStateError
from snakeload.logger import Logger, session_logger

DIRECTIONS: tuple[Direction, ...] = (Direction.UP, Direction.DOWN, Direction.LEFT, Direction.RIGHT)

_Handler = Callable[["VirtualPlayer", InboundMessage], Awaitable[None]]


class VirtualPlayer:
    """One simulated game client.

    Lifecycle: ``connecting`` -> ``awaiting_ack`` -> ``playing`` -> ``closed``.
    The player owns its channel, its periodic timers and its random source;
    the only thing it shares with other players is the assertion sink.

    Inbound messages go through ``_DISPATCH``, keyed by
    ``(state, dispatch_key(message))``. Anything without an entry is dropped,
    which covers malformed payloads, unknown events and every message that
    arrives once the player is closed.
    """

    def __init__(
        self,
        identity: PlayerIdentity,
        config: RunConfig,
        transport: Transport,
        sink: AssertionSink,
        *,
        profile: BehaviourProfile | None = None,
        metrics: MetricsCollector | None = None,
        rng: random.Random | None = None,
        logger: Logger | None = None,
    ) -> None:
        self.identity = identity
        self.profile = profile or config.resolved_profiles()[0]
        self._config = config
        self._transport = transport
        self._sink = sink
        self._metrics = metrics
        self._rng = rng or random.Random()
        self._logger = logger or session_logger

        self._state = ProtocolState.CONNECTING
        self._started = False
        self._channel: Channel | None = None
        self._timers: set[asyncio.Task[None]] = set()
        self._cancelled: list[asyncio.Task[None]] = []
        self._move_timer_armed = False
        # Pongs carry no id, so only the latest ping can be matched; a new
        # ping supersedes an unanswered one.
        self._pings_in_flight: deque[float] = deque(maxlen=1)
        self._connected_at: float | None = None
        self._transport_error: BaseException | None = None

        self.pings_sent = 0
        self.moves_sent = 0

    @property
    def state(self) -> ProtocolState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is ProtocolState.CLOSED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Drive the player from connect to close. Single use."""

        if self._started or self._state is ProtocolState.CLOSED:
            raise InvalidPlayerStateError(
                "virtual player is single-use",
                player_id=self.identity.id,
                state=self._state.value,
            )
        self._started = True

        try:
            if not await self._connect():
                return
            await self._on_open()
            await self._receive_loop()
        except Exception as exc:
            self._transport_error = exc
            self._logger.warning(
                "player.session_error",
                event="player.session_error",
                player_id=self.identity.id,
                state=self._state.value,
                error_type=classify_exception(exc),
                error=str(exc),
            )
        finally:
            await self._shutdown()
            if self._cancelled:
                await asyncio.gather(*self._cancelled, return_exceptions=True)
                self._cancelled.clear()
            await self._finish_session()

    async def close(self) -> None:
        """Close locally. Safe to call at any point, any number of times."""
        await self._shutdown()

    async def _connect(self) -> bool:
        url = build_player_url(self._config.target_url, self.identity.id)
        headers = tag_headers(self._config.tags) or None
        started = time.monotonic()

        result: OpenResult | None = None
        error_type: str | None = None
        try:
            result = await self._transport.open(
                url,
                headers=headers,
                timeout=self._config.connect_timeout_seconds,
            )
        except Exception as exc:
            error_type = classify_exception(exc)
            self._logger.debug(
                "player.open_error",
                event="player.open_error",
                player_id=self.identity.id,
                error_type=error_type,
                error=str(exc),
            )

        duration_ms = (time.monotonic() - started) * 1000

        if self._state is ProtocolState.CLOSED:
            # Closed by the engine while the open was in flight.
            if result is not None and result.channel is not None:
                await result.channel.close()
            return False

        upgraded = result is not None and result.upgraded
        if result is not None and not upgraded:
            error_type = f"http_{result.status}"
            if result.channel is not None:
                await result.channel.close()

        await self._sink.check(CONNECTION_ESTABLISHED, upgraded)
        if self._metrics is not None:
            await self._metrics.record(
                metric=METRIC_CONNECT,
                duration_ms=duration_ms,
                success=upgraded,
                profile=self.profile.name,
                error_type=error_type,
            )

        if not upgraded:
            self._state = ProtocolState.CLOSED
            self._logger.warning(
                "player.connect_failed",
                event="player.connect_failed",
                player_id=self.identity.id,
                url=url,
                status=result.status if result is not None else None,
                error_type=error_type,
            )
            return False

        assert result is not None
        self._channel = result.channel
        self._connected_at = time.monotonic()
        self._logger.debug(
            "player.connected",
            event="player.connected",
            player_id=self.identity.id,
            profile=self.profile.name,
            duration_ms=round(duration_ms, 2),
        )
        return True

    async def _on_open(self) -> None:
        await self._send(encode_join(self.identity))
        if self.profile.ping_enabled:
            self._start_timer(self._every(self._config.ping_interval_seconds, self._send_ping), "ping")
        self._state = ProtocolState.AWAITING_ACK
        self._start_timer(self._settle(), "settle")
        if self._config.player_lifetime_seconds is not None:
            self._start_timer(self._expire(self._config.player_lifetime_seconds), "lifetime")

    async def _receive_loop(self) -> None:
        channel = self._channel
        assert channel is not None
        while self._state is not ProtocolState.CLOSED:
            try:
                raw = await channel.receive()
            except Exception:
                if self._state is ProtocolState.CLOSED:
                    break
                raise
            if raw is None:
                if self._state is not ProtocolState.CLOSED:
                    self._logger.debug(
                        "player.peer_closed",
                        event="player.peer_closed",
                        player_id=self.identity.id,
                        state=self._state.value,
                    )
                break
            await self.handle_raw(raw)

    async def _shutdown(self) -> None:
        # State flips before the first suspension point so no timer can send
        # on a channel that is being released.
        self._state = ProtocolState.CLOSED

        current = asyncio.current_task()
        for timer in list(self._timers):
            if timer is not current:
                timer.cancel()
                self._cancelled.append(timer)
        self._timers.clear()

        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as exc:
                self._logger.debug(
                    "player.close_error",
                    event="player.close_error",
                    player_id=self.identity.id,
                    error_type=classify_exception(exc),
                    error=str(exc),
                )

    async def _finish_session(self) -> None:
        if self._connected_at is None:
            return
        healthy = self._transport_error is None
        await self._sink.check(SESSION_HEALTHY, healthy)
        if self._metrics is not None:
            await self._metrics.record(
                metric=METRIC_SESSION,
                duration_ms=(time.monotonic() - self._connected_at) * 1000,
                success=healthy,
                profile=self.profile.name,
                error_type=None if healthy else classify_exception(self._transport_error),
            )
        self._connected_at = None
        self._logger.debug(
            "player.closed",
            event="player.closed",
            player_id=self.identity.id,
            healthy=healthy,
            pings_sent=self.pings_sent,
            moves_sent=self.moves_sent,
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _start_timer(self, coro: Awaitable[None], name: str) -> None:
        if self._state is ProtocolState.CLOSED:
            coro.close()  # type: ignore[attr-defined]
            return
        task = asyncio.create_task(coro, name=f"player-{self.identity.id}-{name}")
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _every(self, interval: float, action: Callable[[], Awaitable[None]]) -> None:
        while self._state is not ProtocolState.CLOSED:
            await asyncio.sleep(interval)
            await self._guarded(action)

    async def _settle(self) -> None:
        await asyncio.sleep(self._config.settle_delay_seconds)
        await self._guarded(self._send_start)

    async def _expire(self, after: float) -> None:
        await asyncio.sleep(after)
        self._logger.debug("player.lifetime_elapsed", event="player.lifetime_elapsed", player_id=self.identity.id)
        await self._shutdown()

    async def _guarded(self, action: Callable[[], Awaitable[None]]) -> None:
        try:
            await action()
        except Exception as exc:
            if self._state is ProtocolState.CLOSED:
                return
            self._transport_error = exc
            self._logger.warning(
                "player.send_failed",
                event="player.send_failed",
                player_id=self.identity.id,
                state=self._state.value,
                error_type=classify_exception(exc),
                error=str(exc),
            )
            await self._shutdown()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, message: str) -> bool:
        channel = self._channel
        if self._state is ProtocolState.CLOSED or channel is None:
            return False
        await channel.send(message)
        return True

    async def _send_ping(self) -> None:
        if self._state not in (ProtocolState.AWAITING_ACK, ProtocolState.PLAYING):
            return
        # Recorded before the send: the pong may be dispatched while send() is suspended.
        sent_at = time.monotonic()
        self._pings_in_flight.append(sent_at)
        try:
            sent = await self._send(encode_ping())
        except Exception:
            self._discard_ping(sent_at)
            raise
        if sent:
            self.pings_sent += 1
        else:
            self._discard_ping(sent_at)

    def _discard_ping(self, sent_at: float) -> None:
        if self._pings_in_flight and self._pings_in_flight[-1] == sent_at:
            self._pings_in_flight.pop()

    async def _send_start(self) -> None:
        if self._state is not ProtocolState.AWAITING_ACK:
            return
        # Enter PLAYING first: the server may answer before send() returns.
        self._state = ProtocolState.PLAYING
        await self._send(encode_start())

    async def _send_move(self) -> None:
        if self._state is not ProtocolState.PLAYING:
            return
        chosen = self._rng.choice(DIRECTIONS)
        if self._config.move_direction_mode is MoveDirectionMode.FIXED:
            wire = self._config.fixed_move_direction
        else:
            wire = chosen
        self._logger.debug(
            "player.move",
            event="player.move",
            player_id=self.identity.id,
            direction=chosen.value,
            wire_direction=wire.value,
        )
        if await self._send(encode_move(self.identity, wire)):
            self.moves_sent += 1

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_raw(self, raw: str | bytes) -> None:
        """Decode one payload and dispatch it against the current state."""

        if self._state is ProtocolState.CLOSED:
            return
        try:
            message = decode(raw)
        except DecodeError as exc:
            self._logger.warning(
                "player.decode_error",
                event="player.decode_error",
                player_id=self.identity.id,
                error=exc.message,
            )
            await self._sink.record_error("decode_error")
            return
        await self.dispatch(message)

    async def dispatch(self, message: InboundMessage) -> None:
        handler = self._DISPATCH.get((self._state, dispatch_key(message)))
        if handler is None:
            return
        await handler(self, message)

    async def _on_pong(self, message: InboundMessage) -> None:
        if self._pings_in_flight:
            rtt_ms = (time.monotonic() - self._pings_in_flight.popleft()) * 1000
            if self._metrics is not None:
                await self._metrics.record(metric=METRIC_PING_RTT, duration_ms=rtt_ms, profile=self.profile.name)
        await self._sink.check(PONG_RECEIVED, True)

    async def _on_start_game(self, message: InboundMessage) -> None:
        if not self.profile.move_enabled or self._move_timer_armed:
            return
        self._move_timer_armed = True
        self._start_timer(self._every(self._config.move_interval_seconds, self._send_move), "move")

    async def _on_snake_update(self, message: InboundMessage) -> None:
        await self._sink.check(GAME_UPDATE_RECEIVED, True)

    _DISPATCH: dict[tuple[ProtocolState, str], _Handler] = {
        (ProtocolState.AWAITING_ACK, PONG_KEY): _on_pong,
        (ProtocolState.AWAITING_ACK, EVENT_START_GAME): _on_start_game,
        (ProtocolState.PLAYING, PONG_KEY): _on_pong,
        (ProtocolState.PLAYING, EVENT_START_GAME): _on_start_game,
        (ProtocolState.PLAYING, EVENT_SNAKE_UPDATE): _on_snake_update,
    }
