from __future__ import annotations

import asyncio
import dataclasses
import random
import signal
import time

from snakeload.core.assertions import SESSION_HEALTHY, AssertionSink
from snakeload.core.identity import IdentityFactory
from snakeload.core.metrics import MetricsCollector
from snakeload.core.models import Mode, RunConfig, RunResult, TerminationReason
from snakeload.core.player import VirtualPlayer
from snakeload.core.ramp import Hold, RampScheduler, SpawnPlayer
from snakeload.core.stages import validate_stages
from snakeload.core.transport import AiohttpTransport, Transport
from snakeload.exceptions import ConfigurationError
from snakeload.fixtures.game_server import GameFixtureServer
from snakeload.logger import Logger, session_logger

# How long force-closed players get to unwind before their tasks are cancelled.
_FORCE_CLOSE_GRACE_SECONDS = 5.0


def validate_run_config(config: RunConfig) -> None:
    """Reject malformed configuration before any player is spawned."""

    validate_stages(config.stages)
    profiles = config.resolved_profiles()
    if any(p.ping_enabled for p in profiles) and config.ping_interval_seconds <= 0:
        raise ConfigurationError("INVALID_INTERVAL", "ping_interval_seconds must be > 0")
    if any(p.move_enabled for p in profiles) and config.move_interval_seconds <= 0:
        raise ConfigurationError("INVALID_INTERVAL", "move_interval_seconds must be > 0")
    if sum(p.weight for p in profiles) <= 0:
        raise ConfigurationError("INVALID_MIX", "profile weights must sum to > 0")
    if config.settle_delay_seconds < 0 or config.graceful_stop_seconds < 0:
        raise ConfigurationError("INVALID_DURATION", "settle delay and graceful stop must be >= 0")
    if config.deadline_seconds is not None and config.deadline_seconds < 0:
        raise ConfigurationError("INVALID_DURATION", "deadline_seconds must be >= 0")
    if config.connect_timeout_seconds <= 0:
        raise ConfigurationError("INVALID_DURATION", "connect_timeout_seconds must be > 0")
    if config.player_lifetime_seconds is not None and config.player_lifetime_seconds <= 0:
        raise ConfigurationError("INVALID_DURATION", "player_lifetime_seconds must be > 0")


class LoadEngine:
    """Runs the ramp plan and owns the pool of virtual players.

    The coordinating coroutine only walks the plan and starts player tasks;
    it never waits on player I/O. Player failures stay inside the player and
    surface as check outcomes.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        transport: Transport | None = None,
        sink: AssertionSink | None = None,
        metrics: MetricsCollector | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._config = config
        self._logger = logger or session_logger
        self._transport = transport
        self._sink = sink or AssertionSink(logger=self._logger)
        self._metrics = metrics or MetricsCollector(logger=self._logger)
        self._stop_event: asyncio.Event | None = None
        self._players: dict[str, VirtualPlayer] = {}

    @property
    def sink(self) -> AssertionSink:
        return self._sink

    @property
    def active_players(self) -> int:
        return sum(1 for p in self._players.values() if not p.is_closed)

    def stop(self) -> None:
        """Stop scheduling and close every player (same path as SIGINT)."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> RunResult:
        validate_run_config(self._config)

        config = self._config
        rng = random.Random(config.seed)
        identities = IdentityFactory(colours=config.colours, rng=random.Random(rng.getrandbits(64)))
        scheduler = RampScheduler(config.stages, identities)

        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._players = {}

        fixture_server: GameFixtureServer | None = None
        if config.mode == Mode.FIXTURE:
            fixture_server = GameFixtureServer(logger=self._logger)
            await fixture_server.start()
            config = dataclasses.replace(config, target_url=fixture_server.player_url_template)

        transport = self._transport
        owns_transport = transport is None
        if transport is None:
            transport = AiohttpTransport(logger=self._logger)

        tasks: set[asyncio.Task[None]] = set()
        spawned = 0
        termination = TerminationReason.COMPLETED

        started = time.monotonic()
        deadline_at = started + config.effective_deadline_seconds

        self._logger.info(
            "run.start",
            event="run.start",
            mode=config.mode.value,
            stages=len(config.stages),
            planned_players=scheduler.planned_spawn_count(),
            total_stage_seconds=config.total_stage_seconds,
            deadline_seconds=config.effective_deadline_seconds,
            target_url=config.target_url,
            profiles=",".join(p.name for p in config.resolved_profiles()),
        )

        def _spawn(event: SpawnPlayer) -> None:
            nonlocal spawned
            player = VirtualPlayer(
                event.identity,
                config,
                transport,
                self._sink,
                profile=self._choose_profile(config, rng),
                metrics=self._metrics,
                rng=random.Random(rng.getrandbits(64)),
                logger=self._logger,
            )
            self._players[event.identity.id] = player
            task = asyncio.create_task(self._run_player(player), name=f"player-{event.identity.id}")
            tasks.add(task)
            spawned += 1

        def _handle_signal(signum: int, _frame) -> None:  # pragma: no cover
            self._logger.warning("run.signal", event="run.signal", signum=signum)
            stop_event.set()

        try:
            with _SignalHandlers(_handle_signal):
                interrupted = await self._schedule(
                    scheduler,
                    _spawn,
                    started=started,
                    deadline_at=deadline_at,
                    stop_event=stop_event,
                )
                if interrupted is not None:
                    termination = interrupted

                if not await self._wait_for_players(tasks, deadline_at, stop_event):
                    if termination is TerminationReason.COMPLETED:
                        termination = (
                            TerminationReason.INTERRUPTED
                            if stop_event.is_set()
                            else TerminationReason.DEADLINE
                        )
                    await self._force_close(tasks)
        finally:
            if any(not t.done() for t in tasks):
                await self._force_close(tasks)
            if owns_transport:
                await transport.aclose()
            if fixture_server is not None:
                await fixture_server.stop()
            self._stop_event = None

        ended = time.monotonic()
        result = RunResult(
            started_at_monotonic=started,
            ended_at_monotonic=ended,
            players_spawned=spawned,
            termination=termination,
            assertions=self._sink.summary(),
            errors=self._sink.errors(),
            metrics_report=await self._metrics.build_report(),
        )

        self._logger.info(
            "run.end",
            event="run.end",
            termination=termination.value,
            players_spawned=spawned,
            duration_seconds=round(result.duration_seconds, 3),
            checks=",".join(
                f"{label}={c['pass_count']}/{c['pass_count'] + c['fail_count']}"
                for label, c in sorted(result.assertions.items())
            ),
        )
        return result

    async def _schedule(
        self,
        scheduler: RampScheduler,
        spawn,
        *,
        started: float,
        deadline_at: float,
        stop_event: asyncio.Event,
    ) -> TerminationReason | None:
        """Walk the plan. Returns a termination reason if the plan was cut short."""

        current_stage = -1
        for event in scheduler.plan():
            if event.stage_index != current_stage:
                current_stage = event.stage_index
                stage = scheduler.stages[current_stage]
                self._logger.info(
                    "run.stage",
                    event="run.stage",
                    stage_index=current_stage,
                    target=stage.target,
                    duration_seconds=stage.duration_seconds,
                    active_players=self.active_players,
                )

            offset = event.until_seconds if isinstance(event, Hold) else event.at_seconds
            wake_at = started + offset
            await _wait_until(min(wake_at, deadline_at), stop_event)

            if stop_event.is_set():
                return TerminationReason.INTERRUPTED
            if wake_at > deadline_at:
                self._logger.warning(
                    "run.deadline_during_ramp",
                    event="run.deadline_during_ramp",
                    stage_index=current_stage,
                )
                return TerminationReason.DEADLINE
            if isinstance(event, SpawnPlayer):
                spawn(event)
        return None

    async def _wait_for_players(
        self,
        tasks: set[asyncio.Task[None]],
        deadline_at: float,
        stop_event: asyncio.Event,
    ) -> bool:
        """Wait for every player to close. False if the deadline or a stop came first."""

        pending = {t for t in tasks if not t.done()}
        if not pending:
            return True
        if stop_event.is_set():
            return False

        remaining = deadline_at - time.monotonic()
        if remaining <= 0:
            return False

        stop_waiter = asyncio.create_task(stop_event.wait())
        all_done = asyncio.ensure_future(asyncio.wait(pending))
        try:
            done, _ = await asyncio.wait(
                {stop_waiter, all_done},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_waiter.cancel()
            if not all_done.done():
                all_done.cancel()
        return all_done in done

    async def _force_close(self, tasks: set[asyncio.Task[None]]) -> None:
        open_players = [p for p in self._players.values() if not p.is_closed]
        self._logger.warning(
            "run.force_close",
            event="run.force_close",
            open_players=len(open_players),
        )
        await asyncio.gather(*(p.close() for p in open_players), return_exceptions=True)

        pending = {t for t in tasks if not t.done()}
        if not pending:
            return
        _, still_pending = await asyncio.wait(pending, timeout=_FORCE_CLOSE_GRACE_SECONDS)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.wait(still_pending)

    async def _run_player(self, player: VirtualPlayer) -> None:
        try:
            await player.run()
        except Exception as exc:
            self._logger.error(
                "run.player_crashed",
                event="run.player_crashed",
                player_id=player.identity.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await player.close()
            await self._sink.check(SESSION_HEALTHY, False)

    @staticmethod
    def _choose_profile(config: RunConfig, rng: random.Random):
        profiles = config.resolved_profiles()
        if len(profiles) == 1:
            return profiles[0]
        return rng.choices(profiles, weights=[p.weight for p in profiles], k=1)[0]


async def _wait_until(when: float, stop_event: asyncio.Event) -> None:
    delay = when - time.monotonic()
    if delay <= 0 or stop_event.is_set():
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


class _SignalHandlers:
    def __init__(self, handler) -> None:
        self._handler = handler
        self._previous: dict[int, object] = {}

    def __enter__(self):
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous[signum] = signal.signal(signum, self._handler)
            except (ValueError, OSError):
                # Not the main thread, or the platform forbids it.
                pass
        return self

    def __exit__(self, exc_type, exc, tb):
        for signum, previous in self._previous.items():
            try:
                signal.signal(signum, previous)  # type: ignore[arg-type]
            except (ValueError, OSError):
                pass
        return False
