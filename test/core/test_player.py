"""Tests for the virtual player state machine."""

from __future__ import annotations

import asyncio
import json
import random

import pytest

from conftest import PEER_CLOSE, MockTransport, game_responder, scripted_responder, silent_responder
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
    GameEvent,
    Malformed,
    Pong,
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
    Stage,
)
from snakeload.core.player import VirtualPlayer
from snakeload.exceptions import InvalidPlayerStateError, PlayerConnectionError

START_GAME = json.dumps({"event": EVENT_START_GAME})
SNAKE_UPDATE = json.dumps({"event": EVENT_SNAKE_UPDATE, "snakesMap": {}})


def _config(**overrides) -> RunConfig:
    values = dict(
        stages=(Stage(0.0, 1),),
        settle_delay_seconds=0.01,
        ping_interval_seconds=0.02,
        move_interval_seconds=0.02,
        player_lifetime_seconds=0.3,
    )
    values.update(overrides)
    return RunConfig(**values)


def _identity(player_id: str = "00000042") -> PlayerIdentity:
    return PlayerIdentity(id=player_id, name=f"test_player{player_id}")


def _moves(sent: list[str]) -> list[str]:
    return [m for m in sent if m.startswith("m:")]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_full_session(self):
        transport = MockTransport()
        sink = AssertionSink()
        player = VirtualPlayer(_identity(), _config(), transport, sink, rng=random.Random(1))

        await asyncio.wait_for(player.run(), timeout=5)

        assert player.state is ProtocolState.CLOSED
        summary = sink.summary()
        assert summary[CONNECTION_ESTABLISHED] == {"pass_count": 1, "fail_count": 0}
        assert summary[GAME_UPDATE_RECEIVED] == {"pass_count": 1, "fail_count": 0}
        assert summary[PONG_RECEIVED]["pass_count"] >= 1
        assert summary[PONG_RECEIVED]["fail_count"] == 0
        assert summary[SESSION_HEALTHY] == {"pass_count": 1, "fail_count": 0}

        channel = transport.channels[0]
        assert channel.closed
        assert json.loads(channel.sent[0])["event"] == "newPlayer"
        assert channel.sent.count(encode_start()) == 1
        assert channel.sent.index(encode_start()) < channel.sent.index(_moves(channel.sent)[0])
        assert player.moves_sent == len(_moves(channel.sent)) >= 1
        assert player.pings_sent == channel.sent.count("p") >= 1
        assert all(m.startswith("m:00000042:") for m in _moves(channel.sent))

    @pytest.mark.asyncio
    async def test_url_and_tag_headers(self):
        transport = MockTransport()
        player = VirtualPlayer(
            _identity("00000007"),
            _config(tags=(("my_tag", "snake"),), player_lifetime_seconds=0.05),
            transport,
            AssertionSink(),
        )
        await player.run()

        channel = transport.channels[0]
        assert channel.url.endswith("playerId=00000007")
        assert channel.headers == {"X-Load-Tag-my_tag": "snake"}

    @pytest.mark.asyncio
    async def test_rejected_upgrade_sends_nothing(self):
        transport = MockTransport(reject_every=1)
        sink = AssertionSink()
        metrics = MetricsCollector()
        player = VirtualPlayer(_identity(), _config(), transport, sink, metrics=metrics)

        await player.run()

        assert player.state is ProtocolState.CLOSED
        assert transport.channels == []
        assert sink.summary() == {CONNECTION_ESTABLISHED: {"pass_count": 0, "fail_count": 1}}
        report = await metrics.build_report()
        assert report["by_metric"][METRIC_CONNECT]["error_types"] == {"http_503": 1}

    @pytest.mark.asyncio
    async def test_open_exception_is_a_failed_connection(self):
        transport = MockTransport(
            fail_with=PlayerConnectionError("refused", details={"error_type": "network_connect"})
        )
        sink = AssertionSink()
        metrics = MetricsCollector()
        player = VirtualPlayer(_identity(), _config(), transport, sink, metrics=metrics)

        await player.run()

        assert player.is_closed
        assert sink.summary() == {CONNECTION_ESTABLISHED: {"pass_count": 0, "fail_count": 1}}
        report = await metrics.build_report()
        assert report["by_metric"][METRIC_CONNECT]["error_types"] == {"network_connect": 1}

    @pytest.mark.asyncio
    async def test_single_use(self):
        player = VirtualPlayer(_identity(), _config(player_lifetime_seconds=0.02), MockTransport(), AssertionSink())
        await player.run()
        with pytest.raises(InvalidPlayerStateError) as exc_info:
            await player.run()
        assert exc_info.value.details == {"player_id": "00000042", "state": "closed"}

    @pytest.mark.asyncio
    async def test_closed_before_run_cannot_start(self):
        transport = MockTransport()
        player = VirtualPlayer(_identity(), _config(), transport, AssertionSink())
        await player.close()
        with pytest.raises(InvalidPlayerStateError):
            await player.run()
        assert transport.open_attempts == 0

    @pytest.mark.asyncio
    async def test_close_while_opening_records_nothing(self):
        transport = MockTransport(open_delay=0.1)
        sink = AssertionSink()
        player = VirtualPlayer(_identity(), _config(), transport, sink)

        task = asyncio.create_task(player.run())
        await asyncio.sleep(0.02)
        await player.close()
        await asyncio.wait_for(task, timeout=2)

        assert player.is_closed
        assert transport.channels[0].sent == []
        assert transport.channels[0].closed
        assert sink.summary() == {}

    @pytest.mark.asyncio
    async def test_peer_close_ends_session_healthy(self):
        transport = MockTransport(responder=scripted_responder(on_join=[PEER_CLOSE]))
        sink = AssertionSink()
        player = VirtualPlayer(_identity(), _config(player_lifetime_seconds=None), transport, sink)

        await asyncio.wait_for(player.run(), timeout=2)

        assert player.is_closed
        assert sink.summary()[SESSION_HEALTHY] == {"pass_count": 1, "fail_count": 0}

    @pytest.mark.asyncio
    async def test_transport_error_marks_session_unhealthy(self, recording_logger):
        transport = MockTransport(responder=scripted_responder(on_join=[ConnectionResetError("reset")]))
        sink = AssertionSink()
        metrics = MetricsCollector()
        player = VirtualPlayer(
            _identity(),
            _config(player_lifetime_seconds=None),
            transport,
            sink,
            metrics=metrics,
            logger=recording_logger,
        )

        await asyncio.wait_for(player.run(), timeout=2)

        assert sink.summary()[SESSION_HEALTHY] == {"pass_count": 0, "fail_count": 1}
        report = await metrics.build_report()
        assert report["by_metric"][METRIC_SESSION]["error_types"] == {"network_error": 1}
        assert recording_logger.events("player.session_error")[0]["error_type"] == "network_error"


class TestProtocol:
    @pytest.mark.asyncio
    async def test_snake_update_before_start_is_ignored(self):
        transport = MockTransport(responder=scripted_responder(on_join=[SNAKE_UPDATE]))
        sink = AssertionSink()
        player = VirtualPlayer(
            _identity(),
            _config(settle_delay_seconds=5.0, player_lifetime_seconds=0.1),
            transport,
            sink,
        )

        await player.run()

        assert GAME_UPDATE_RECEIVED not in sink.summary()
        assert encode_start() not in transport.channels[0].sent
        assert _moves(transport.channels[0].sent) == []

    @pytest.mark.asyncio
    async def test_start_then_late_update(self):
        def _responder(message: str) -> list:
            return [START_GAME] if message == encode_start() else []

        transport = MockTransport(responder=_responder)
        sink = AssertionSink()
        player = VirtualPlayer(
            _identity(),
            _config(ping_enabled=False, player_lifetime_seconds=None),
            transport,
            sink,
        )
        task = asyncio.create_task(player.run())

        await _wait_until(lambda: player.state is ProtocolState.PLAYING)
        await asyncio.sleep(0.3)
        transport.channels[0].push(SNAKE_UPDATE)
        await _wait_until(lambda: GAME_UPDATE_RECEIVED in sink.summary())

        assert player.moves_sent >= 1
        assert sink.summary()[GAME_UPDATE_RECEIVED] == {"pass_count": 1, "fail_count": 0}

        await player.close()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_repeated_start_game_arms_one_move_timer(self):
        transport = MockTransport(responder=scripted_responder(on_join=[START_GAME, START_GAME]))
        player = VirtualPlayer(
            _identity(),
            _config(ping_enabled=False, settle_delay_seconds=0.0, player_lifetime_seconds=None),
            transport,
            AssertionSink(),
        )
        task = asyncio.create_task(player.run())
        await _wait_until(lambda: player.moves_sent >= 1)

        assert len([t for t in player._timers if t.get_name().endswith("-move")]) == 1

        await player.close()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_decode_error_is_tallied_and_session_continues(self, recording_logger):
        transport = MockTransport(
            responder=scripted_responder(on_join=['{"event":', "hello", '{"event":"gameover"}'])
        )
        sink = AssertionSink()
        player = VirtualPlayer(_identity(), _config(), transport, sink, logger=recording_logger)

        await player.run()

        assert sink.errors() == {"decode_error": 1}
        assert len(recording_logger.events("player.decode_error")) == 1
        summary = sink.summary()
        assert summary[SESSION_HEALTHY] == {"pass_count": 1, "fail_count": 0}
        assert summary[GAME_UPDATE_RECEIVED]["pass_count"] == 1

    @pytest.mark.asyncio
    async def test_fixed_direction_mode(self):
        transport = MockTransport()
        config = _config(
            move_direction_mode=MoveDirectionMode.FIXED,
            fixed_move_direction=Direction.RIGHT,
            move_interval_seconds=0.01,
        )
        player = VirtualPlayer(_identity(), config, transport, AssertionSink(), rng=random.Random(3))

        await player.run()

        moves = _moves(transport.channels[0].sent)
        assert moves
        assert all(m == "m:00000042:r" for m in moves)

    @pytest.mark.asyncio
    async def test_random_direction_mode_uses_policy(self):
        transport = MockTransport()
        config = _config(move_interval_seconds=0.005, player_lifetime_seconds=0.4)
        player = VirtualPlayer(_identity(), config, transport, AssertionSink(), rng=random.Random(3))

        await player.run()

        codes = {m.rsplit(":", 1)[1] for m in _moves(transport.channels[0].sent)}
        assert codes <= {"u", "d", "l", "r"}
        assert len(codes) > 1

    @pytest.mark.asyncio
    async def test_profile_without_ping(self):
        transport = MockTransport()
        player = VirtualPlayer(
            _identity(),
            _config(),
            transport,
            AssertionSink(),
            profile=BehaviourProfile(name="move_only", ping_enabled=False, move_enabled=True),
        )
        await player.run()

        assert "p" not in transport.channels[0].sent
        assert player.pings_sent == 0
        assert player.moves_sent >= 1

    @pytest.mark.asyncio
    async def test_profile_without_move(self):
        transport = MockTransport()
        player = VirtualPlayer(
            _identity(),
            _config(),
            transport,
            AssertionSink(),
            profile=BehaviourProfile(name="idle", ping_enabled=True, move_enabled=False),
        )
        await player.run()

        sent = transport.channels[0].sent
        assert encode_start() in sent
        assert _moves(sent) == []
        assert player.pings_sent >= 1


class TestPingRoundTrip:
    @pytest.mark.asyncio
    async def test_rtt_recovers_after_a_lost_pong(self):
        pings_seen = 0

        def _drop_first_pong(message: str) -> list:
            nonlocal pings_seen
            if message == "p":
                pings_seen += 1
                return [] if pings_seen == 1 else ["p"]
            return game_responder(message)

        metrics = MetricsCollector()
        sink = AssertionSink()
        player = VirtualPlayer(
            _identity(),
            _config(ping_interval_seconds=0.1, player_lifetime_seconds=0.75),
            MockTransport(responder=_drop_first_pong),
            sink,
            metrics=metrics,
        )

        await player.run()

        rtt = (await metrics.build_report())["by_metric"][METRIC_PING_RTT]
        assert rtt["count"] >= 3
        assert rtt["count"] == sink.summary()[PONG_RECEIVED]["pass_count"]
        # Echo is immediate; matching a pong to the lost ping would add a full interval.
        assert rtt["max_ms"] < 50

    @pytest.mark.asyncio
    async def test_unanswered_pings_stay_bounded(self):
        metrics = MetricsCollector()
        player = VirtualPlayer(
            _identity(),
            _config(ping_interval_seconds=0.005, player_lifetime_seconds=None),
            MockTransport(responder=silent_responder),
            AssertionSink(),
            metrics=metrics,
        )
        task = asyncio.create_task(player.run())

        await _wait_until(lambda: player.pings_sent >= 20)
        assert len(player._pings_in_flight) <= 1

        await player.close()
        await asyncio.wait_for(task, timeout=2)

        assert len(player._pings_in_flight) <= 1
        assert METRIC_PING_RTT not in (await metrics.build_report())["by_metric"]

    @pytest.mark.asyncio
    async def test_ping_not_tracked_when_not_sent(self):
        player = VirtualPlayer(_identity(), _config(), MockTransport(), AssertionSink())
        player._state = ProtocolState.PLAYING

        # No channel: nothing goes out, so nothing may wait for a pong.
        await player._send_ping()

        assert player.pings_sent == 0
        assert len(player._pings_in_flight) == 0


class TestDispatchTable:
    def test_table_entries(self):
        assert set(VirtualPlayer._DISPATCH) == {
            (ProtocolState.AWAITING_ACK, PONG_KEY),
            (ProtocolState.AWAITING_ACK, EVENT_START_GAME),
            (ProtocolState.PLAYING, PONG_KEY),
            (ProtocolState.PLAYING, EVENT_START_GAME),
            (ProtocolState.PLAYING, EVENT_SNAKE_UPDATE),
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", list(ProtocolState))
    @pytest.mark.parametrize(
        "message",
        [
            Pong(),
            GameEvent(EVENT_START_GAME, {"event": EVENT_START_GAME}),
            GameEvent(EVENT_SNAKE_UPDATE, {"event": EVENT_SNAKE_UPDATE}),
            GameEvent("gameover", {"event": "gameover"}),
            GameEvent("pong", {"event": "pong"}),
            Malformed("hello"),
        ],
    )
    async def test_every_state_message_pair(self, state, message):
        sink = AssertionSink()
        player = VirtualPlayer(_identity(), _config(), MockTransport(), sink)
        player._state = state

        await player.dispatch(message)

        expected_checks: dict[str, dict[str, int]] = {}
        live = state in (ProtocolState.AWAITING_ACK, ProtocolState.PLAYING)
        if live and isinstance(message, Pong):
            expected_checks[PONG_RECEIVED] = {"pass_count": 1, "fail_count": 0}
        if state is ProtocolState.PLAYING and message == GameEvent(
            EVENT_SNAKE_UPDATE, {"event": EVENT_SNAKE_UPDATE}
        ):
            expected_checks[GAME_UPDATE_RECEIVED] = {"pass_count": 1, "fail_count": 0}
        assert sink.summary() == expected_checks

        arms_move = live and message == GameEvent(EVENT_START_GAME, {"event": EVENT_START_GAME})
        assert player._move_timer_armed is arms_move
        assert player.state is state

        await player.close()
        await asyncio.sleep(0)


class TestClosedIsTerminal:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(5))
    async def test_random_events_after_close(self, seed):
        transport = MockTransport()
        sink = AssertionSink()
        player = VirtualPlayer(_identity(), _config(player_lifetime_seconds=0.1), transport, sink)
        await player.run()

        channel = transport.channels[0]
        sent_before = list(channel.sent)
        summary_before = sink.summary()
        pings_before, moves_before = player.pings_sent, player.moves_sent

        rng = random.Random(seed)
        raw_pool = ["p", b"p", START_GAME, SNAKE_UPDATE, '{"event":', "junk", '{"event":"gameover"}']
        actions = [
            lambda: player.handle_raw(rng.choice(raw_pool)),
            lambda: player.dispatch(Pong()),
            lambda: player.dispatch(GameEvent(EVENT_START_GAME, {})),
            lambda: player.dispatch(GameEvent(EVENT_SNAKE_UPDATE, {})),
            lambda: player._send_ping(),
            lambda: player._send_move(),
            lambda: player._send_start(),
            lambda: player.close(),
        ]
        for _ in range(200):
            await rng.choice(actions)()

        # Longer than every interval: no timer may fire.
        await asyncio.sleep(0.1)

        assert player.state is ProtocolState.CLOSED
        assert channel.sent == sent_before
        assert sink.summary() == summary_before
        assert sink.errors() == {}
        assert (player.pings_sent, player.moves_sent) == (pings_before, moves_before)
        assert not player._timers
