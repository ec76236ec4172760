"""Ramp scenario: the classic "ramp to N players, ping and move every second" run.

Usage from CLI::

    python -m snakeload.run --mode fixture --stage 10s:100

Usage as library::

    from snakeload.scenarios.ramp import build_ramp_config, run_ramp_scenario

    result = await run_ramp_scenario(stages=((10.0, 100),), mode=Mode.FIXTURE)
"""

from __future__ import annotations

from typing import Iterable

from snakeload.core.engine import LoadEngine
from snakeload.core.models import (
    DEFAULT_TARGET_URL,
    Mode,
    RunConfig,
    RunResult,
    Stage,
)
from snakeload.core.stages import build_stage
from snakeload.logger import Logger


def build_ramp_config(
    *,
    stages: Iterable[tuple[float | str, int]] = ((10.0, 100),),
    mode: Mode = Mode.FIXTURE,
    target_url: str = DEFAULT_TARGET_URL,
    ping_interval_seconds: float = 1.0,
    move_interval_seconds: float = 1.0,
    settle_delay_seconds: float = 1.0,
    graceful_stop_seconds: float = 30.0,
    deadline_seconds: float | None = None,
    player_lifetime_seconds: float | None = None,
    seed: int | None = None,
) -> RunConfig:
    """Build a ``RunConfig`` for a ramp run.

    ``stages`` is a sequence of ``(duration, target)`` pairs; durations may be
    seconds or strings such as ``"10s"``. Fixture mode is the default so the
    scenario is safe to run in CI; pass ``mode=Mode.LIVE`` and ``target_url``
    for a real server.
    """
    built: list[Stage] = [
        build_stage(duration, target, source=f"#{index}")
        for index, (duration, target) in enumerate(stages)
    ]
    return RunConfig(
        stages=tuple(built),
        mode=mode,
        target_url=target_url,
        ping_interval_seconds=ping_interval_seconds,
        move_interval_seconds=move_interval_seconds,
        settle_delay_seconds=settle_delay_seconds,
        graceful_stop_seconds=graceful_stop_seconds,
        deadline_seconds=deadline_seconds,
        player_lifetime_seconds=player_lifetime_seconds,
        seed=seed,
    )


async def run_ramp_scenario(*, logger: Logger | None = None, **kwargs) -> RunResult:
    """Run a ramp scenario and return the result.

    Keyword arguments are those of ``build_ramp_config``.
    """
    config = build_ramp_config(**kwargs)
    engine = LoadEngine(config, logger=logger)
    return await engine.run()
