from __future__ import annotations

import json
from pathlib import Path

from snakeload.core.models import BehaviourProfile
from snakeload.exceptions import ConfigurationError


def load_mix_file(path: str) -> tuple[BehaviourProfile, ...]:
    """Load a behaviour-profile mix.

    Expected shape:
      {
        "profiles": {
          "idle":      {"weight": 1, "ping": true,  "move": false},
          "active":    {"weight": 3, "ping": true,  "move": true},
          "move_only": {"weight": 1, "ping": false, "move": true}
        }
      }

    Each spawned player picks a profile with probability proportional to its
    weight. Profiles with weight 0 are skipped.
    """

    data = json.loads(Path(path).read_text(encoding="utf-8"))

    profiles = data.get("profiles") if isinstance(data, dict) else None
    if not isinstance(profiles, dict) or not profiles:
        raise ConfigurationError("INVALID_MIX", "mix file must contain a non-empty 'profiles' object")

    entries: list[BehaviourProfile] = []
    for name, raw in profiles.items():
        if not isinstance(raw, dict):
            raise ConfigurationError("INVALID_MIX", f"mix entry {name!r} must be an object")

        weight = raw.get("weight", 1)
        ping = raw.get("ping", True)
        move = raw.get("move", True)

        if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
            raise ConfigurationError("INVALID_MIX", f"mix entry {name!r} has invalid weight: {weight!r}")
        if not isinstance(ping, bool) or not isinstance(move, bool):
            raise ConfigurationError("INVALID_MIX", f"mix entry {name!r} ping/move must be booleans")

        if weight == 0:
            continue

        entries.append(BehaviourProfile(name=str(name), weight=weight, ping_enabled=ping, move_enabled=move))

    if not entries:
        raise ConfigurationError("INVALID_MIX", "mix file must include at least one profile with weight > 0")

    return tuple(entries)
