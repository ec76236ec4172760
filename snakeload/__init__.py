"""Load-generation harness for the snake multiplayer game server.

Simulates many concurrent players over WebSocket under a ramp-up profile and
records named pass/fail checks against the server's observed behaviour.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
