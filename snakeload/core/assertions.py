"""Named pass/fail checks aggregated across all virtual players."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from snakeload.core.models import AssertionResult
from snakeload.logger import Logger, session_logger

CONNECTION_ESTABLISHED = "connection_established"
GAME_UPDATE_RECEIVED = "game_update_received"
PONG_RECEIVED = "pong_received"
SESSION_HEALTHY = "session_healthy"


@dataclass
class _LabelCounts:
    passed: int = 0
    failed: int = 0


class AssertionSink:
    """The one shared mutable resource of a run.

    Every player task writes here; counts per label are exact however many
    tasks record concurrently.
    """

    def __init__(self, *, logger: Logger | None = None) -> None:
        self._logger = logger or session_logger
        self._lock = asyncio.Lock()
        self._counts: dict[str, _LabelCounts] = {}
        self._errors: dict[str, int] = {}

    async def record(self, result: AssertionResult) -> None:
        async with self._lock:
            counts = self._counts.get(result.label)
            if counts is None:
                counts = _LabelCounts()
                self._counts[result.label] = counts
            if result.passed:
                counts.passed += 1
            else:
                counts.failed += 1

        if not result.passed:
            self._logger.debug("check.failed", event="check.failed", label=result.label)

    async def check(self, label: str, passed: bool) -> AssertionResult:
        """Build a timestamped result and record it."""
        result = AssertionResult(label=label, passed=bool(passed), timestamp=time.time())
        await self.record(result)
        return result

    async def record_error(self, error_type: str) -> None:
        """Tally an error that is not itself a check (e.g. a dropped message)."""
        async with self._lock:
            self._errors[error_type] = self._errors.get(error_type, 0) + 1

    def summary(self) -> dict[str, dict[str, int]]:
        return {
            label: {"pass_count": c.passed, "fail_count": c.failed}
            for label, c in self._counts.items()
        }

    def errors(self) -> dict[str, int]:
        return dict(self._errors)
