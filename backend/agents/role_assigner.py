"""
Role Assignment: deterministic faction shuffling for a new game.

Responsibilities:
- Shuffle one minority faction among the four seats
- Pick the word pair for the game (majority word, minority word)
- Name the controlled seat with a human-sounding name nobody in the room uses
- Give every seat a fresh opaque id, unrelated to lobby member ids, so ids
  never reveal which seat is controlled

Called once by the game master when a full lobby starts.
"""
import logging
import random
import uuid
from typing import List, Optional, Sequence, Tuple

from models.game import (
    FACTION_DISTRIBUTION, HUMAN_SEATS, WORD_PAIRS, Faction, LobbyMember, Seat,
)

logger = logging.getLogger(__name__)


# Pool of names for the controlled seat
NAME_POOL: List[str] = [
    "Alex", "Sam", "Jordan", "Taylor", "Casey", "Morgan", "Riley", "Quinn",
    "Avery", "Charlie", "Jamie", "Drew", "Blake", "Skyler", "Reese", "Parker",
    "Hayden", "Dakota", "Finley", "Sage", "River", "Phoenix", "Rowan", "Emery",
    "Logan", "Cameron", "Dylan", "Peyton", "Kendall", "Jessie", "Kai", "Ellis",
    "Max", "Leo", "Mia", "Zoe", "Luna", "Chloe", "Emma", "Ava", "Noah", "Liam",
    "Ethan", "Mason", "Lucas", "Oliver", "Aiden", "Elijah", "James", "Ben",
]


def _seat_id(rng: random.Random) -> str:
    """Fresh uuid4-shaped id, unrelated to any lobby id."""
    return str(uuid.UUID(int=rng.getrandbits(128), version=4))


class RoleAssigner:
    """
    Builds the four-seat roster for a game.

    FACTION_DISTRIBUTION fixes the split at three majority seats and one
    minority seat; the controlled seat draws from the same shuffle as the
    humans, so it can land on either side.
    """

    def __init__(self, word_pairs: Optional[Sequence[Tuple[str, str]]] = None):
        self.word_pairs = list(word_pairs or WORD_PAIRS)

    def pick_name(self, taken: Sequence[str], rng: random.Random) -> str:
        taken_lower = {n.strip().lower() for n in taken}
        free = [n for n in NAME_POOL if n.lower() not in taken_lower]
        if not free:
            # Every pooled name is in use; fall back to a numbered handle
            n = 2
            while f"player{n}" in taken_lower:
                n += 1
            return f"Player{n}"
        return rng.choice(free)

    def assign(
        self, room_code: str, humans: Sequence[LobbyMember], rng: random.Random
    ) -> Tuple[List[Seat], Tuple[str, str]]:
        """
        Returns (seats, word_pair). Seats come back in random seat order with
        the controlled seat mixed in among the humans.
        Raises ValueError if the human count is wrong.
        """
        if len(humans) != HUMAN_SEATS:
            raise ValueError(
                f"Need exactly {HUMAN_SEATS} human players, got {len(humans)}"
            )

        factions: List[Faction] = list(FACTION_DISTRIBUTION)
        rng.shuffle(factions)
        majority_word, minority_word = rng.choice(self.word_pairs)

        def _word(faction: Faction) -> str:
            return majority_word if faction == Faction.MAJORITY else minority_word

        seats: List[Seat] = [
            Seat(
                id=_seat_id(rng), member_id=h.id, name=h.name,
                faction=factions[i], word=_word(factions[i]),
            )
            for i, h in enumerate(humans)
        ]
        controlled_name = self.pick_name([h.name for h in humans], rng)
        controlled_faction = factions[HUMAN_SEATS]
        seats.append(Seat(
            id=_seat_id(rng),
            name=controlled_name,
            is_controlled=True,
            faction=controlled_faction,
            word=_word(controlled_faction),
        ))
        rng.shuffle(seats)

        logger.info(
            "[%s] Roles assigned: controlled seat %s is %s with word %r",
            room_code, controlled_name, controlled_faction.value, _word(controlled_faction),
        )
        return seats, (majority_word, minority_word)


# Module-level singleton
role_assigner = RoleAssigner()
