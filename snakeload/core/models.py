from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


DEFAULT_TARGET_URL = "ws://127.0.0.1:4002/ws?playerId={player_id}"


class Mode(str, Enum):
    """Run mode.

    live: connect to the server at ``target_url``
    fixture: start the local fixture game server and connect to it (CI-safe)
    """

    LIVE = "live"
    FIXTURE = "fixture"


class ProtocolState(str, Enum):
    """Per-player protocol state. ``CLOSED`` is terminal."""

    CONNECTING = "connecting"
    AWAITING_ACK = "awaiting_ack"
    PLAYING = "playing"
    CLOSED = "closed"


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"

    @property
    def code(self) -> str:
        """Single-character wire code."""
        return self.value[0]

    @classmethod
    def from_code(cls, code: str) -> "Direction":
        for direction in cls:
            if direction.code == code:
                return direction
        raise ValueError(f"unknown direction code: {code!r}")


class MoveDirectionMode(str, Enum):
    """How the wire direction of a move command is chosen.

    random: send the direction drawn by the movement policy
    fixed: always send ``fixed_move_direction`` (log still shows the drawn one)
    """

    RANDOM = "random"
    FIXED = "fixed"


class TerminationReason(str, Enum):
    COMPLETED = "completed"
    DEADLINE = "deadline"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class Stage:
    """One ramp window: reach ``target`` concurrent players over ``duration_seconds``."""

    duration_seconds: float
    target: int


@dataclass(frozen=True)
class Colours:
    head: str = "green"
    body: str = "yellow"
    eyes: str = "black"


@dataclass(frozen=True)
class PlayerIdentity:
    id: str
    name: str
    colours: Colours = field(default_factory=Colours)


@dataclass(frozen=True)
class BehaviourProfile:
    """Which periodic actions a virtual player runs.

    Typical profiles: idle (ping only), active (ping + move), move only.
    """

    name: str
    weight: int = 1
    ping_enabled: bool = True
    move_enabled: bool = True


@dataclass(frozen=True)
class AssertionResult:
    label: str
    passed: bool
    timestamp: float


@dataclass(frozen=True)
class RunConfig:
    stages: tuple[Stage, ...]
    mode: Mode = Mode.LIVE
    target_url: str = DEFAULT_TARGET_URL
    ping_interval_seconds: float = 1.0
    move_interval_seconds: float = 1.0
    ping_enabled: bool = True
    move_enabled: bool = True
    settle_delay_seconds: float = 1.0
    graceful_stop_seconds: float = 30.0
    deadline_seconds: float | None = None
    connect_timeout_seconds: float = 10.0
    player_lifetime_seconds: float | None = None
    move_direction_mode: MoveDirectionMode = MoveDirectionMode.RANDOM
    fixed_move_direction: Direction = Direction.UP
    colours: Colours = field(default_factory=Colours)
    profiles: tuple[BehaviourProfile, ...] = ()
    # name/value pairs so the frozen config stays hashable
    tags: tuple[tuple[str, str], ...] = ()
    seed: int | None = None

    @property
    def total_stage_seconds(self) -> float:
        return sum(stage.duration_seconds for stage in self.stages)

    @property
    def effective_deadline_seconds(self) -> float:
        """Hard run budget measured from run start."""
        if self.deadline_seconds is not None:
            return self.deadline_seconds
        return self.total_stage_seconds + self.graceful_stop_seconds

    def resolved_profiles(self) -> tuple[BehaviourProfile, ...]:
        if self.profiles:
            return self.profiles
        return (
            BehaviourProfile(
                name="default",
                weight=1,
                ping_enabled=self.ping_enabled,
                move_enabled=self.move_enabled,
            ),
        )


@dataclass
class RunResult:
    started_at_monotonic: float
    ended_at_monotonic: float
    players_spawned: int
    termination: TerminationReason
    assertions: dict[str, dict[str, int]]
    errors: dict[str, int] = field(default_factory=dict)
    metrics_report: dict[str, Any] | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.ended_at_monotonic - self.started_at_monotonic)

    def pass_count(self, label: str) -> int:
        return self.assertions.get(label, {}).get("pass_count", 0)

    def fail_count(self, label: str) -> int:
        return self.assertions.get(label, {}).get("fail_count", 0)

    @property
    def all_checks_passed(self) -> bool:
        return all(counts.get("fail_count", 0) == 0 for counts in self.assertions.values())
