from __future__ import annotations

import math
import re


_PART_RE = re.compile(r"(?P<value>\d+(?:\.\d+)?)(?P<unit>ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration_to_seconds(raw: str | int | float) -> float:
    """Parse durations like '500ms', '10s', '5m', '1h' or '1m30s' into seconds.

    Bare numbers (or numeric strings) are taken as seconds.
    """
    if isinstance(raw, bool):
        raise ValueError("duration must be a number or a <number><unit> string")
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw) or raw < 0:
            raise ValueError("duration must be a finite non-negative number")
        return float(raw)
    if not isinstance(raw, str):
        raise ValueError("duration must be a number or a <number><unit> string")

    text = raw.strip()
    if not text:
        raise ValueError("duration must not be empty")

    try:
        value = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(value) or value < 0:
            raise ValueError("duration must be a finite non-negative number")
        return value

    total = 0.0
    pos = 0
    for match in _PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group("value")) * _UNIT_SECONDS[match.group("unit")]
        pos = match.end()

    if pos == 0 or pos != len(text):
        raise ValueError("duration must match <number><unit>[...] where unit is ms|s|m|h")

    return total
