"""
Vote Tally & Outcome Resolver: pure function, no I/O, no randomness.

Given the round's votes, the alive roster and the faction map, decide who (if
anyone) is eliminated and whether the game ends:

  minority eliminated                       → majority wins (terminal)
  majority eliminated, majority ≤ floor     → minority wins (terminal)
  majority eliminated, majority > floor     → new cycle
  tie / no votes                            → new cycle, nobody eliminated

Same inputs always produce the same VoteOutcome.
"""
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from models.game import Faction, OutcomeReason, VoteOutcome


class OutcomeRules(BaseModel):
    # Minority wins once alive majority seats are at or below this count
    majority_floor: int = 1


def tally_votes(votes: Dict[str, str], alive: Iterable[str]) -> Dict[str, int]:
    """Count votes cast by alive seats for alive, non-self targets."""
    alive_set = set(alive)
    tally: Dict[str, int] = {}
    for voter, target in votes.items():
        if voter not in alive_set or target not in alive_set or target == voter:
            continue
        tally[target] = tally.get(target, 0) + 1
    return tally


def resolve_votes(
    votes: Dict[str, str],
    alive: Iterable[str],
    factions: Dict[str, Faction],
    rules: Optional[OutcomeRules] = None,
    cycle: int = 1,
) -> VoteOutcome:
    rules = rules or OutcomeRules()
    alive_set = set(alive)
    counted = {
        voter: target for voter, target in votes.items()
        if voter in alive_set and target in alive_set and target != voter
    }
    tally = tally_votes(counted, alive_set)

    max_votes = max(tally.values(), default=0)
    if max_votes == 0:
        return VoteOutcome(
            tally=tally, votes=counted, reason=OutcomeReason.NO_VOTES, cycle=cycle,
        )

    # Sorted so the tie list does not depend on dict insertion order
    leaders: List[str] = sorted(sid for sid, n in tally.items() if n == max_votes)
    if len(leaders) > 1:
        return VoteOutcome(
            tally=tally, votes=counted, tied=leaders, reason=OutcomeReason.TIE, cycle=cycle,
        )

    eliminated = leaders[0]
    if factions[eliminated] == Faction.MINORITY:
        return VoteOutcome(
            eliminated=eliminated,
            tally=tally,
            votes=counted,
            terminal=True,
            winner=Faction.MAJORITY,
            reason=OutcomeReason.MINORITY_CAUGHT,
            cycle=cycle,
        )

    majority_left = sum(
        1 for sid in alive_set
        if sid != eliminated and factions[sid] == Faction.MAJORITY
    )
    if majority_left <= rules.majority_floor:
        return VoteOutcome(
            eliminated=eliminated,
            tally=tally,
            votes=counted,
            terminal=True,
            winner=Faction.MINORITY,
            reason=OutcomeReason.MAJORITY_DEPLETED,
            cycle=cycle,
        )

    return VoteOutcome(
        eliminated=eliminated,
        tally=tally,
        votes=counted,
        reason=OutcomeReason.MAJORITY_ELIMINATED,
        cycle=cycle,
    )
