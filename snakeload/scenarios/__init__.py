"""Pre-built load scenarios."""

from __future__ import annotations

__all__ = ["build_ramp_config", "run_ramp_scenario"]

from snakeload.scenarios.ramp import build_ramp_config, run_ramp_scenario
