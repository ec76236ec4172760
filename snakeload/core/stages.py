from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from snakeload.core.models import Stage
from snakeload.core.timeparse import parse_duration_to_seconds
from snakeload.exceptions import ConfigurationError


def parse_stage_spec(raw: str) -> Stage:
    """Parse a command-line stage of the form ``<duration>:<target>``, e.g. ``10s:100``."""

    duration_raw, sep, target_raw = raw.strip().rpartition(":")
    if not sep or not duration_raw:
        raise ConfigurationError(
            "INVALID_STAGE",
            f"stage {raw!r} must look like <duration>:<target> (e.g. 10s:100)",
        )
    try:
        target = int(target_raw)
    except ValueError as exc:
        raise ConfigurationError("INVALID_STAGE", f"stage {raw!r} has a non-integer target") from exc
    return build_stage(duration_raw, target, source=raw)


def build_stage(duration: Any, target: Any, *, source: str = "") -> Stage:
    if isinstance(target, bool) or not isinstance(target, int) or target < 0:
        raise ConfigurationError(
            "INVALID_STAGE",
            f"stage target must be a non-negative integer, got {target!r}",
            details={"stage": source} if source else None,
        )
    try:
        duration_seconds = parse_duration_to_seconds(duration)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            "INVALID_STAGE",
            f"stage duration {duration!r} is invalid: {exc}",
            details={"stage": source} if source else None,
        ) from exc
    return Stage(duration_seconds=duration_seconds, target=target)


def validate_stages(stages: Iterable[Stage]) -> tuple[Stage, ...]:
    """Reject configurations that must never reach the scheduler."""

    result = tuple(stages)
    if not result:
        raise ConfigurationError("EMPTY_STAGES", "at least one stage is required")
    for index, stage in enumerate(result):
        if stage.duration_seconds < 0:
            raise ConfigurationError(
                "INVALID_STAGE",
                "stage duration must be >= 0",
                details={"index": index, "duration_seconds": stage.duration_seconds},
            )
        if stage.target < 0:
            raise ConfigurationError(
                "INVALID_STAGE",
                "stage target must be >= 0",
                details={"index": index, "target": stage.target},
            )
    return result


def load_stages_file(path: str) -> tuple[Stage, ...]:
    """Load a ramp profile.

    Expected shape (same as the ``stages`` option of a k6 script)::

      {
        "stages": [
          {"duration": "10s", "target": 100},
          {"duration": "30s", "target": 100},
          {"duration": "10s", "target": 0}
        ]
      }
    """

    data = json.loads(Path(path).read_text(encoding="utf-8"))

    raw_stages = data.get("stages") if isinstance(data, dict) else None
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ConfigurationError("EMPTY_STAGES", "stages file must contain a non-empty 'stages' list")

    stages: list[Stage] = []
    for index, raw in enumerate(raw_stages):
        if not isinstance(raw, dict):
            raise ConfigurationError("INVALID_STAGE", f"stage #{index} must be an object")
        if "duration" not in raw or "target" not in raw:
            raise ConfigurationError("INVALID_STAGE", f"stage #{index} needs 'duration' and 'target'")
        stages.append(build_stage(raw["duration"], raw["target"], source=f"#{index}"))

    return validate_stages(stages)
