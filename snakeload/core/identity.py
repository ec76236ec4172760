from __future__ import annotations

import random

from snakeload.core.models import Colours, PlayerIdentity
from snakeload.exceptions import ConfigurationError

NAME_PREFIX = "test_player"


class IdentityFactory:
    """Mints a fresh, run-unique ``PlayerIdentity`` per spawn.

    Ids are drawn from the factory's own random source so a seeded run
    produces the same ids every time.
    """

    def __init__(
        self,
        *,
        colours: Colours | None = None,
        rng: random.Random | None = None,
        id_digits: int = 8,
    ) -> None:
        if id_digits < 1:
            raise ValueError("id_digits must be >= 1")
        self._colours = colours or Colours()
        self._rng = rng or random.Random()
        self._id_digits = id_digits
        self._issued: set[str] = set()

    @property
    def issued_count(self) -> int:
        return len(self._issued)

    @property
    def capacity(self) -> int:
        """Distinct ids this factory can ever mint."""
        return 10 ** self._id_digits

    def next_identity(self) -> PlayerIdentity:
        player_id = self._next_id()
        return PlayerIdentity(
            id=player_id,
            name=f"{NAME_PREFIX}{player_id}",
            colours=self._colours,
        )

    def _next_id(self) -> str:
        upper = self.capacity
        if len(self._issued) >= upper:
            raise ConfigurationError(
                "IDENTITY_SPACE_EXHAUSTED",
                f"all {upper} player ids of {self._id_digits} digits are already issued",
                {"id_digits": self._id_digits, "issued": len(self._issued)},
            )
        while True:
            candidate = str(self._rng.randrange(upper)).zfill(self._id_digits)
            if candidate not in self._issued:
                self._issued.add(candidate)
                return candidate
