"""
Turn Sequencer: ordered rotation of alive seats for the description phase.

One rotation per cycle: reshuffle() builds a fresh random permutation of the
seats alive at the start of the cycle, advance() walks it one seat at a time
and returns None once every seat has gone.
"""
import random
from typing import Iterable, List, Optional

from pydantic import BaseModel


class TurnSequencer(BaseModel):
    order: List[str] = []
    index: int = 0

    def reshuffle(self, alive_seat_ids: Iterable[str], rng: random.Random) -> List[str]:
        """Start a new rotation over exactly the given seats, in random order."""
        order = list(alive_seat_ids)
        rng.shuffle(order)
        self.order = order
        self.index = 0
        return list(self.order)

    @property
    def current(self) -> Optional[str]:
        if 0 <= self.index < len(self.order):
            return self.order[self.index]
        return None

    @property
    def next_seat(self) -> Optional[str]:
        nxt = self.index + 1
        if nxt < len(self.order):
            return self.order[nxt]
        return None

    @property
    def exhausted(self) -> bool:
        return self.index >= len(self.order)

    def advance(self) -> Optional[str]:
        """Move to the next seat. Returns the new current seat, or None when done."""
        if not self.exhausted:
            self.index += 1
        return self.current

    def seen(self) -> List[str]:
        """Seats whose turn has already come up in this rotation."""
        return list(self.order[: self.index])
