from __future__ import annotations

from typing import Any

from snakeload.core.models import RunConfig, RunResult


def _pass_rate_pct(passed: int, failed: int) -> float | None:
    total = passed + failed
    if total == 0:
        return None
    return round(passed / total * 100, 2)


def build_run_report(config: RunConfig, result: RunResult) -> dict[str, Any]:
    config_payload = {
        "mode": config.mode.value,
        "target_url": config.target_url,
        "stages": [
            {"duration_seconds": s.duration_seconds, "target": s.target} for s in config.stages
        ],
        "ping_interval_seconds": config.ping_interval_seconds,
        "move_interval_seconds": config.move_interval_seconds,
        "settle_delay_seconds": config.settle_delay_seconds,
        "deadline_seconds": config.effective_deadline_seconds,
        "connect_timeout_seconds": config.connect_timeout_seconds,
        "player_lifetime_seconds": config.player_lifetime_seconds,
        "move_direction_mode": config.move_direction_mode.value,
        "profiles": {
            p.name: {"weight": p.weight, "ping": p.ping_enabled, "move": p.move_enabled}
            for p in config.resolved_profiles()
        },
        "tags": dict(config.tags),
        "seed": config.seed,
    }
    checks = {
        label: {
            "pass_count": counts["pass_count"],
            "fail_count": counts["fail_count"],
            "pass_rate_pct": _pass_rate_pct(counts["pass_count"], counts["fail_count"]),
        }
        for label, counts in sorted(result.assertions.items())
    }
    return {
        "config": config_payload,
        "result": {
            "duration_seconds": result.duration_seconds,
            "players_spawned": result.players_spawned,
            "termination": result.termination.value,
            "all_checks_passed": result.all_checks_passed,
        },
        "checks": checks,
        "errors": dict(result.errors),
        "metrics": result.metrics_report,
    }
