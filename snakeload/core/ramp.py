"""Ramp scheduler: turns ramp stages into a time-ordered spawn plan.

Offsets are seconds from run start. Within a stage the missing players are
spread evenly over the stage duration, the first one spawning as soon as the
stage begins, so the stage target is reached before the stage ends. Ramping
down never stops players; they finish on their own.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence, Union

from snakeload.core.identity import IdentityFactory
from snakeload.core.models import PlayerIdentity, Stage
from snakeload.core.stages import validate_stages
from snakeload.exceptions import ConfigurationError


@dataclass(frozen=True)
class SpawnPlayer:
    at_seconds: float
    identity: PlayerIdentity
    stage_index: int


@dataclass(frozen=True)
class Hold:
    """No spawn: the plan only advances the clock to ``until_seconds``."""

    at_seconds: float
    until_seconds: float
    stage_index: int


PlanEvent = Union[SpawnPlayer, Hold]


def stage_spawn_offsets(duration_seconds: float, delta: int) -> list[float]:
    """Offsets (relative to stage start) for ``delta`` new players."""

    if delta <= 0:
        return []
    cadence = duration_seconds / max(1, delta)
    return [i * cadence for i in range(delta)]


class RampScheduler:
    def __init__(self, stages: Iterable[Stage], identities: IdentityFactory | None = None) -> None:
        self._stages: Sequence[Stage] = validate_stages(stages)
        self._identities = identities or IdentityFactory()
        available = self._identities.capacity - self._identities.issued_count
        if self.planned_spawn_count() > available:
            raise ConfigurationError(
                "IDENTITY_SPACE_EXHAUSTED",
                "ramp plan needs more players than there are free player ids",
                {"planned": self.planned_spawn_count(), "available": available},
            )

    @property
    def stages(self) -> Sequence[Stage]:
        return self._stages

    @property
    def total_seconds(self) -> float:
        return sum(stage.duration_seconds for stage in self._stages)

    def planned_spawn_count(self) -> int:
        """Spawns the whole plan authorizes: the highest stage target."""
        return max(stage.target for stage in self._stages)

    def plan(self) -> Iterator[PlanEvent]:
        """Lazily yield the plan. Identities are minted as spawns are produced."""

        stage_start = 0.0
        authorized = 0
        for index, stage in enumerate(self._stages):
            delta = stage.target - authorized
            last_at = stage_start
            for offset in stage_spawn_offsets(stage.duration_seconds, delta):
                authorized += 1
                last_at = stage_start + offset
                yield SpawnPlayer(
                    at_seconds=last_at,
                    identity=self._identities.next_identity(),
                    stage_index=index,
                )
            stage_end = stage_start + stage.duration_seconds
            yield Hold(at_seconds=last_at, until_seconds=stage_end, stage_index=index)
            stage_start = stage_end
