"""
Visibility Filter: what one seat is allowed to see right now.

Rules:
  - own word: always; own faction: only at results / guess / final reveal
  - controlled-seat flag, other seats' factions and words, guesses: final reveal only
  - descriptions: visible to everyone as soon as they are submitted
  - in-progress vote targets: never (only has_voted); resolved rounds: public
  - eliminated status: always
  - guess phase: own guess status and how many guesses are outstanding, never who
"""
from typing import List, Optional

from models.game import (
    REVEAL_PHASES, GameSession, GuessView, Phase, SeatScopedView, SeatView,
)


def build_view(session: GameSession, seat_id: str) -> Optional[SeatScopedView]:
    me = session.seats.get(seat_id)
    if me is None:
        return None

    final = session.phase == Phase.FINAL_REVEAL
    controlled = session.controlled_seat

    seats: List[SeatView] = []
    for sid in session.seat_order:
        seat = session.seats[sid]
        view = SeatView(
            id=seat.id,
            name=seat.name,
            alive=seat.alive,
            description=seat.description if seat.has_described else "",
            has_described=seat.has_described,
            has_voted=seat.has_voted,
        )
        if final:
            view.is_controlled = seat.is_controlled
            view.faction = seat.faction
            view.word = seat.word
        seats.append(view)

    guesses: List[GuessView] = []
    if final and controlled:
        guesses = [
            GuessView(seat_id=sid, guessed_id=gid, correct=gid == controlled.id)
            for sid, gid in session.guesses.items()
        ]

    return SeatScopedView(
        room_code=session.room_code,
        phase=session.phase,
        cycle=session.cycle,
        my_seat_id=me.id,
        my_word=me.word,
        my_faction=me.faction if session.phase in REVEAL_PHASES else None,
        seats=seats,
        turn_order=list(session.turn.order),
        current_turn=session.turn.current if session.phase == Phase.DESCRIPTION else None,
        transcript=list(session.transcript),
        last_result=session.last_result,
        winner=session.winner if session.phase in REVEAL_PHASES else None,
        has_guessed=seat_id in session.guesses,
        # Count only; the pending set is exactly the human seats
        guesses_outstanding=len(session.pending_guessers),
        guesses=guesses,
        controlled_seat_id=controlled.id if final and controlled else None,
    )
