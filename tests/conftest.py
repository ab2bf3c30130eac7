"""Shared fixtures: fake participants and a driver that plays a game through the GameMaster."""

import asyncio
import random
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from agents.game_master import GameMaster
from models.game import LobbyMember, MoveKind, ParticipantContext, ParticipantMove, Phase
from services.session_registry import SessionRegistry


class ScriptedParticipant:
    """Answers instantly. vote_for names the seat to vote for (defaults to the first eligible)."""

    def __init__(self, description: str = "kinda warm i guess", message: str = "hmm not sure tbh"):
        self.description = description
        self.message = message
        self.vote_for: Optional[str] = None
        self.calls: List[ParticipantContext] = []

    async def request_move(self, context: ParticipantContext) -> ParticipantMove:
        self.calls.append(context)
        if context.kind == MoveKind.VOTE:
            return ParticipantMove(
                content="gut feeling",
                vote_target=self.vote_for or context.eligible_targets[0],
                thought_process="scripted",
            )
        if context.kind == MoveKind.DISCUSSION:
            return ParticipantMove(content=self.message, thought_process="scripted")
        return ParticipantMove(content=self.description, thought_process="scripted")

    def kinds(self) -> List[MoveKind]:
        return [c.kind for c in self.calls]


class FailingParticipant:
    """Every call raises, as an unreachable text service would."""

    def __init__(self):
        self.calls = 0

    async def request_move(self, context: ParticipantContext) -> ParticipantMove:
        self.calls += 1
        raise RuntimeError("service unavailable")


class SlowParticipant:
    """Never answers within any reasonable timeout."""

    async def request_move(self, context: ParticipantContext) -> ParticipantMove:
        await asyncio.sleep(30)
        return ParticipantMove(content="too late")


class GatedParticipant(ScriptedParticipant):
    """Like ScriptedParticipant, but calls of the gated kinds wait until release()."""

    def __init__(self, gated: Iterable[MoveKind]):
        super().__init__()
        self.gated = set(gated)
        self._gate: Optional[asyncio.Event] = None

    def _event(self) -> asyncio.Event:
        if self._gate is None:
            self._gate = asyncio.Event()
        return self._gate

    def release(self) -> None:
        self._event().set()

    async def request_move(self, context: ParticipantContext) -> ParticipantMove:
        if context.kind in self.gated:
            await self._event().wait()
        return await super().request_move(context)


class GameDriver:
    """Plays the human seats of one room; the controlled seat answers through the participant."""

    def __init__(self, gm: GameMaster, code: str, participant):
        self.gm = gm
        self.code = code
        self.participant = participant

    @property
    def session(self):
        return self.gm.get_session(self.code)

    def seat_by(self, predicate: Callable) -> str:
        for sid in self.session.seat_order:
            if predicate(self.session.seats[sid]):
                return sid
        raise LookupError("no matching seat")

    @property
    def controlled_id(self) -> str:
        return self.session.controlled_seat.id

    @property
    def minority_id(self) -> str:
        return self.seat_by(lambda s: s.faction.value == "minority")

    def humans(self, alive_only: bool = True) -> List[str]:
        return [
            sid for sid in self.session.human_seat_ids
            if not alive_only or self.session.seats[sid].alive
        ]

    async def describe_all(self, text: str = "something you drink") -> None:
        while self.session.phase == Phase.DESCRIPTION:
            current = self.session.turn.current
            if self.session.seats[current].is_controlled:
                await self.gm.wait_idle(self.code)
            else:
                result = await self.gm.submit_description(self.code, current, text)
                assert result, result.reason

    def everyone_votes(self, target: str, fallback: str) -> Dict[str, str]:
        """Every alive seat votes for target; target itself votes for fallback."""
        return {
            sid: (fallback if sid == target else target)
            for sid in self.session.alive_in_order()
        }

    async def vote_round(self, target_for: Dict[str, str]) -> None:
        """
        Describe, open voting and cast every alive seat's vote.
        target_for maps voter seat id -> target seat id, controlled seat included.
        """
        await self.describe_all()
        ai = self.session.controlled_seat
        if ai.alive:
            self.participant.vote_for = self.session.seats[target_for[ai.id]].name
        if self.session.phase == Phase.DISCUSSION:
            result = await self.gm.advance_phase(self.code)
            assert result, result.reason
        for sid in self.humans():
            result = await self.gm.submit_vote(self.code, sid, target_for[sid])
            assert result, result.reason
        await self.gm.wait_idle(self.code)


@pytest.fixture
def humans() -> List[LobbyMember]:
    return [LobbyMember(name="Ana"), LobbyMember(name="Ben"), LobbyMember(name="Cleo")]


@pytest.fixture
def make_game(humans):
    """
    Returns an async factory: await make_game(participant, **gm_kwargs) -> GameDriver.
    Must be awaited inside a running event loop.
    """
    async def _make(participant=None, seed: int = 7, **kwargs) -> GameDriver:
        participant = participant or ScriptedParticipant()
        kwargs.setdefault("discussion_seconds", 0)
        kwargs.setdefault("participant_timeout", 1.0)
        gm = GameMaster(
            registry=SessionRegistry(rng=random.Random(seed)),
            participant=participant,
            rng=random.Random(seed),
            **kwargs,
        )
        result = await gm.create_session("ROOM01", humans)
        assert result, result.reason
        return GameDriver(gm, "ROOM01", participant)
    return _make
