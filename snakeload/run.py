from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path

from snakeload.api.report import build_run_report
from snakeload.core.engine import LoadEngine
from snakeload.core.mix import load_mix_file
from snakeload.core.models import (
    DEFAULT_TARGET_URL,
    Direction,
    Mode,
    MoveDirectionMode,
    RunConfig,
)
from snakeload.core.stages import load_stages_file, parse_stage_spec
from snakeload.core.timeparse import parse_duration_to_seconds
from snakeload.exceptions import ConfigurationError
from snakeload.logger import ConsoleLogger, session_logger as logger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="snake game WebSocket load harness")
    parser.add_argument(
        "--stage",
        dest="stages",
        action="append",
        default=[],
        help="Ramp stage <duration>:<target>, e.g. 10s:100. Repeat for multi-stage ramps.",
    )
    parser.add_argument(
        "--stages-file",
        type=str,
        default=None,
        help='Path to a stages JSON file ({"stages": [{"duration": "10s", "target": 100}]})',
    )
    parser.add_argument(
        "--url",
        type=str,
        default=os.environ.get("SNAKELOAD_TARGET_URL", DEFAULT_TARGET_URL),
        help="Target WebSocket URL; {player_id} is substituted per player (mode=live)",
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=[m.value for m in Mode],
        default=Mode.LIVE.value,
        help="live: connect to --url. fixture: run against a local fixture game server.",
    )
    parser.add_argument("--ping-interval", type=str, default="1s", help="Ping period per player")
    parser.add_argument("--move-interval", type=str, default="1s", help="Move period per player")
    parser.add_argument("--no-ping", action="store_true", help="Disable the periodic ping")
    parser.add_argument("--no-move", action="store_true", help="Disable the periodic move")
    parser.add_argument(
        "--settle-delay",
        type=str,
        default="1s",
        help="Delay between join and the start request",
    )
    parser.add_argument(
        "--graceful-stop",
        type=str,
        default="30s",
        help="Grace period after the last stage before players are force-closed",
    )
    parser.add_argument(
        "--deadline",
        type=str,
        default=None,
        help="Hard run deadline from start (overrides stages + graceful stop)",
    )
    parser.add_argument("--connect-timeout", type=str, default="10s", help="Per-player connect timeout")
    parser.add_argument(
        "--player-lifetime",
        type=str,
        default=None,
        help="Close each player after this long (default: players live until the run ends)",
    )
    parser.add_argument(
        "--move-direction-mode",
        type=str,
        choices=[m.value for m in MoveDirectionMode],
        default=MoveDirectionMode.RANDOM.value,
        help="random: send the drawn direction. fixed: always send --fixed-direction.",
    )
    parser.add_argument(
        "--fixed-direction",
        type=str,
        choices=[d.value for d in Direction],
        default=Direction.UP.value,
        help="Direction sent when --move-direction-mode=fixed",
    )
    parser.add_argument(
        "--mix-file",
        type=str,
        default=None,
        help="Path to a behaviour-profile mix JSON file",
    )
    parser.add_argument(
        "--tag",
        dest="tags",
        action="append",
        default=[],
        help="Connection tag name=value, sent as an X-Load-Tag-<name> header. Repeatable.",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for identities and move policy")
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write summary report JSON to this path",
    )
    parser.add_argument(
        "--fail-on-check-failure",
        action="store_true",
        help="Exit 1 when any check recorded a failure",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Console log level",
    )
    return parser


def _duration(raw: str | None, flag: str) -> float | None:
    if raw is None:
        return None
    try:
        return parse_duration_to_seconds(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            "INVALID_DURATION",
            f"{flag} {raw!r} is invalid: {exc}",
            details={"flag": flag},
        ) from exc


def _parse_tags(raw_tags: list[str]) -> dict[str, str]:
    tags: dict[str, str] = {}
    for raw in raw_tags:
        name, sep, value = raw.partition("=")
        if not sep or not name.strip():
            raise ConfigurationError("INVALID_TAG", f"tag {raw!r} must look like name=value")
        tags[name.strip()] = value.strip()
    return tags


def build_config(args: argparse.Namespace) -> RunConfig:
    """Turn parsed arguments into a ``RunConfig``.

    Raises:
        ConfigurationError: any flag or referenced file is malformed.
    """
    if args.stages_file and args.stages:
        raise ConfigurationError("CONFLICTING_STAGES", "use either --stage or --stages-file, not both")
    if args.stages_file:
        stages = load_stages_file(args.stages_file)
    else:
        stages = tuple(parse_stage_spec(raw) for raw in args.stages)

    profiles = load_mix_file(args.mix_file) if args.mix_file else ()

    return RunConfig(
        stages=stages,
        mode=Mode(args.mode),
        target_url=args.url.strip(),
        ping_interval_seconds=_duration(args.ping_interval, "--ping-interval"),
        move_interval_seconds=_duration(args.move_interval, "--move-interval"),
        ping_enabled=not args.no_ping,
        move_enabled=not args.no_move,
        settle_delay_seconds=_duration(args.settle_delay, "--settle-delay"),
        graceful_stop_seconds=_duration(args.graceful_stop, "--graceful-stop"),
        deadline_seconds=_duration(args.deadline, "--deadline"),
        connect_timeout_seconds=_duration(args.connect_timeout, "--connect-timeout"),
        player_lifetime_seconds=_duration(args.player_lifetime, "--player-lifetime"),
        move_direction_mode=MoveDirectionMode(args.move_direction_mode),
        fixed_move_direction=Direction(args.fixed_direction),
        profiles=profiles,
        tags=tuple(_parse_tags(args.tags).items()),
        seed=args.seed,
    )


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if isinstance(logger, ConsoleLogger):
        logger.set_level(getattr(logging, args.log_level.upper()))

    if not args.stages and not args.stages_file:
        logger.error(
            "run.missing_stages",
            event="run.missing_stages",
            recovery="Provide --stage <duration>:<target> or --stages-file",
        )
        return 2

    try:
        config = build_config(args)
    except (OSError, json.JSONDecodeError) as exc:
        logger.error(
            "run.config_file_unreadable",
            event="run.config_file_unreadable",
            error_type=type(exc).__name__,
            error=str(exc),
            recovery="Check --stages-file / --mix-file paths and JSON syntax",
        )
        return 2
    except ConfigurationError as exc:
        logger.error(
            "run.invalid_config",
            event="run.invalid_config",
            code=exc.code,
            error=exc.message,
            details=exc.details or None,
            recovery="Fix the flag or file named in the error and re-run",
        )
        return 2

    engine = LoadEngine(config, logger=logger)
    try:
        result = asyncio.run(engine.run())
    except ConfigurationError as exc:
        logger.error(
            "run.invalid_config",
            event="run.invalid_config",
            code=exc.code,
            error=exc.message,
            details=exc.details or None,
            recovery="Fix the flag or file named in the error and re-run",
        )
        return 2

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        payload = build_run_report(config, result)
        output_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

        logger.info(
            "run.report_written",
            event="run.report_written",
            path=str(output_path),
        )

    if args.fail_on_check_failure and not result.all_checks_passed:
        logger.warning(
            "run.checks_failed",
            event="run.checks_failed",
            checks=json.dumps(result.assertions, sort_keys=True),
        )
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
