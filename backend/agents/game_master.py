"""
Game Master Agent: pure deterministic Python, no LLM.

Responsibilities:
- Phase transitions (Description → Discussion → Voting → Results → Guess → Final Reveal)
- Turn validation for descriptions, votes and guesses
- Driving the controlled seat through the participant adapter, with fallback
- Vote resolution and the new-cycle loop on non-terminal outcomes

All game rules are implemented here. Nothing is hallucinated.

Every operation runs under a per-room asyncio.Lock and either applies fully or
returns a rejected ActionResult without touching the session. The controlled
seat's move is the one suspension point: the lock is released while the
adapter call runs and the result is applied only if the session, phase and
cycle it was requested for are still current.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from config import settings
from models.game import (
    HUMAN_SEATS, ActionResult, ChatMessage, Faction, GameEvent, GameSession,
    LeaveResult, LobbyMember, MoveKind, ParticipantContext, ParticipantMove,
    Phase, RejectReason, RoomStatus, Seat, SeatScopedView, Stance, StartResult,
)
from agents.participant_agent import ParticipantAdapter, fallback_move, parse_seat_name
from agents.role_assigner import RoleAssigner, role_assigner
from agents.vote_resolver import OutcomeRules, resolve_votes
from services.phase_timer import PhaseTimer
from services.session_registry import SessionRegistry
from services.visibility import build_view

logger = logging.getLogger(__name__)

Listener = Callable[[str, List[GameEvent]], Awaitable[None]]


class GameMaster:
    """
    Owns every live GameSession, keyed by room code.
    Listeners registered with add_listener() receive each batch of events an
    accepted action produced, after the room lock has been released.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        participant: ParticipantAdapter,
        timer: Optional[PhaseTimer] = None,
        rng: Optional[random.Random] = None,
        rules: Optional[OutcomeRules] = None,
        assigner: Optional[RoleAssigner] = None,
        archive: Optional[Any] = None,
        discussion_seconds: Optional[float] = None,
        participant_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.participant = participant
        self.timer = timer or PhaseTimer()
        self.rng = rng or random.Random()
        self.rules = rules or OutcomeRules(majority_floor=settings.minority_win_majority_floor)
        self.assigner = assigner or role_assigner
        self.archive = archive
        self.discussion_seconds = (
            settings.discussion_seconds if discussion_seconds is None else discussion_seconds
        )
        self.participant_timeout = (
            settings.participant_timeout_seconds if participant_timeout is None else participant_timeout
        )

        self._sessions: Dict[str, GameSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._participant_tasks: Dict[str, Set[asyncio.Task]] = {}
        self._outbox: Dict[str, List[GameEvent]] = {}
        self._listeners: List[Listener] = []

    # ── Plumbing ───────────────────────────────────────────────────────────────

    def _lock(self, room_code: str) -> asyncio.Lock:
        if room_code not in self._locks:
            self._locks[room_code] = asyncio.Lock()
        return self._locks[room_code]

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _record(
        self,
        session: GameSession,
        event_type: str,
        actor: Optional[str] = None,
        target: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        visible: bool = True,
    ) -> GameEvent:
        event = GameEvent(
            type=event_type,
            cycle=session.cycle,
            phase=session.phase,
            actor=actor,
            target=target,
            data=data or {},
            visible_in_game=visible,
        )
        session.events.append(event)
        self._outbox.setdefault(session.room_code, []).append(event)
        return event

    async def _flush(self, room_code: str) -> None:
        events = self._outbox.pop(room_code, [])
        if not events:
            return
        for listener in list(self._listeners):
            try:
                await listener(room_code, events)
            except Exception:
                logger.exception("[%s] Game event listener failed", room_code)

    @staticmethod
    def _check_text(text: Optional[str]) -> Optional[RejectReason]:
        text = (text or "").strip()
        if not text:
            return RejectReason.EMPTY_TEXT
        if len(text) > settings.max_text_length:
            return RejectReason.TEXT_TOO_LONG
        return None

    def _human_seat(
        self, session: GameSession, seat_id: str, must_be_alive: bool = True
    ) -> Tuple[Optional[Seat], Optional[RejectReason]]:
        seat = session.seats.get(seat_id)
        if seat is None:
            return None, RejectReason.SEAT_NOT_FOUND
        if seat.is_controlled:
            return None, RejectReason.CONTROLLED_SEAT
        if must_be_alive and not seat.alive:
            return None, RejectReason.SEAT_ELIMINATED
        return seat, None

    # ── Queries ────────────────────────────────────────────────────────────────

    def get_session(self, room_code: str) -> Optional[GameSession]:
        return self._sessions.get(self.registry.normalize(room_code))

    async def get_view(self, room_code: str, seat_id: str) -> Optional[SeatScopedView]:
        session = self.get_session(room_code)
        if session is None:
            return None
        return build_view(session, seat_id)

    def seat_for(self, room_code: str, member_id: Optional[str]) -> Optional[str]:
        """Seat id held by a lobby member in this room's game, if any."""
        session = self.get_session(room_code)
        if session is None or member_id is None:
            return None
        return session.member_seats.get(member_id)

    def public_events(self, room_code: str) -> List[GameEvent]:
        """In-game visible events; the full log once the final reveal is reached."""
        session = self.get_session(room_code)
        if session is None:
            return []
        if session.phase == Phase.FINAL_REVEAL:
            return list(session.events)
        return [e for e in session.events if e.visible_in_game]

    # ── Lobby → game ───────────────────────────────────────────────────────────

    async def start_game(self, room_code: str, requester_id: str) -> StartResult:
        """Host-only start of a full lobby room."""
        code = self.registry.normalize(room_code)
        room = self.registry.get_room(code)
        if room is None:
            return StartResult.reject(RejectReason.ROOM_NOT_FOUND)
        if room.host_id != requester_id:
            return StartResult.reject(RejectReason.NOT_HOST)
        if room.status != RoomStatus.LOBBY:
            return StartResult.reject(RejectReason.GAME_IN_PROGRESS)
        if not room.is_full:
            return StartResult.reject(RejectReason.NOT_ENOUGH_PLAYERS)

        # Flip status first so a concurrent join or start sees the room as taken
        self.registry.set_status(code, RoomStatus.IN_PROGRESS)
        result = await self.create_session(code, list(room.members))
        if not result and result.reason != RejectReason.GAME_IN_PROGRESS:
            self.registry.set_status(code, RoomStatus.LOBBY)
        return result

    async def create_session(
        self, room_code: str, humans: Sequence[LobbyMember]
    ) -> StartResult:
        """
        Build the four-seat roster and the first turn order.
        Phase starts at description, cycle 1.
        """
        code = self.registry.normalize(room_code)
        async with self._lock(code):
            if code in self._sessions:
                return StartResult.reject(RejectReason.GAME_IN_PROGRESS)
            if len(humans) != HUMAN_SEATS:
                return StartResult.reject(RejectReason.NOT_ENOUGH_PLAYERS)

            seats, word_pair = self.assigner.assign(code, humans, self.rng)
            session = GameSession(
                room_code=code,
                seats={s.id: s for s in seats},
                seat_order=[s.id for s in seats],
                alive_seat_ids={s.id for s in seats},
                member_seats={s.member_id: s.id for s in seats if s.member_id},
                word_pair=word_pair,
            )
            session.turn.reshuffle(session.alive_in_order(), self.rng)
            self._sessions[code] = session

            self._record(session, "game_started", data={
                "seat_order": list(session.seat_order),
                "turn_order": list(session.turn.order),
            })
            self._record(session, "roles_assigned", data={
                "factions": {sid: s.faction.value for sid, s in session.seats.items()},
                "controlled_seat_id": session.controlled_seat.id,
                "word_pair": list(word_pair),
            }, visible=False)
            logger.info("[%s] Game started, turn order: %s", code, session.turn.order)
            self._maybe_prompt_description(session)

        await self._flush(code)
        return StartResult(ok=True, phase=session.phase, session=session)

    async def leave(self, member_id: str) -> LeaveResult:
        """Remove a member from the registry; tear the game down once the room empties."""
        result = self.registry.leave(member_id)
        if result.room_closed and result.room:
            await self.teardown(result.room.code)
        return result

    # ── Description ────────────────────────────────────────────────────────────

    async def submit_description(
        self, room_code: str, seat_id: str, text: str
    ) -> ActionResult:
        code = self.registry.normalize(room_code)
        async with self._lock(code):
            session = self._sessions.get(code)
            if session is None:
                return ActionResult.reject(RejectReason.ROOM_NOT_FOUND)
            if session.phase != Phase.DESCRIPTION:
                return ActionResult.reject(RejectReason.WRONG_PHASE)
            seat, reason = self._human_seat(session, seat_id)
            if reason:
                return ActionResult.reject(reason)
            if session.turn.current != seat.id:
                return ActionResult.reject(RejectReason.NOT_YOUR_TURN)
            reason = self._check_text(text)
            if reason:
                return ActionResult.reject(reason)

            self._apply_description(session, seat, text.strip())
            phase = session.phase

        await self._flush(code)
        return ActionResult.accept(phase)

    def _apply_description(self, session: GameSession, seat: Seat, text: str) -> None:
        seat.description = text
        seat.has_described = True
        self._record(session, "description", actor=seat.id, data={"text": text})
        logger.info("[%s] %s described (cycle %d)", session.room_code, seat.name, session.cycle)

        if session.turn.advance() is None:
            self._enter_discussion(session)
        else:
            self._maybe_prompt_description(session)

    def _maybe_prompt_description(self, session: GameSession) -> None:
        current = session.turn.current
        if current and session.seats[current].is_controlled:
            self._request_participant(session, MoveKind.DESCRIPTION)

    # ── Discussion ─────────────────────────────────────────────────────────────

    def _enter_discussion(self, session: GameSession) -> None:
        session.phase = Phase.DISCUSSION
        self._record(session, "phase_changed", data={"phase": Phase.DISCUSSION.value})
        logger.info("[%s] Phase: description → discussion (cycle %d)", session.room_code, session.cycle)

        if self.discussion_seconds > 0:
            cycle = session.cycle
            self.timer.schedule(
                session.room_code,
                self.discussion_seconds,
                lambda: self._discussion_timeout(session, cycle),
            )

        controlled = session.controlled_seat
        if settings.participant_discussion and controlled and controlled.alive:
            self._request_participant(session, MoveKind.DISCUSSION)

    async def _discussion_timeout(self, session: GameSession, cycle: int) -> None:
        code = session.room_code
        async with self._lock(code):
            if (
                self._sessions.get(code) is not session
                or session.phase != Phase.DISCUSSION
                or session.cycle != cycle
            ):
                return
            logger.info("[%s] Discussion timer expired", code)
            self._enter_voting(session)
        await self._flush(code)

    async def submit_discussion_message(
        self, room_code: str, seat_id: str, text: str
    ) -> ActionResult:
        code = self.registry.normalize(room_code)
        async with self._lock(code):
            session = self._sessions.get(code)
            if session is None:
                return ActionResult.reject(RejectReason.ROOM_NOT_FOUND)
            if session.phase != Phase.DISCUSSION:
                return ActionResult.reject(RejectReason.WRONG_PHASE)
            seat, reason = self._human_seat(session, seat_id)
            if reason:
                return ActionResult.reject(reason)
            reason = self._check_text(text)
            if reason:
                return ActionResult.reject(reason)

            self._apply_message(session, seat, text.strip())
            phase = session.phase

        await self._flush(code)
        return ActionResult.accept(phase)

    def _apply_message(self, session: GameSession, seat: Seat, text: str) -> None:
        msg = ChatMessage(seat_id=seat.id, speaker=seat.name, text=text, cycle=session.cycle)
        session.transcript.append(msg)
        self._record(session, "message", actor=seat.id, data={"text": text, "message_id": msg.id})

    # ── Explicit advance ───────────────────────────────────────────────────────

    async def advance_phase(
        self, room_code: str, seat_id: Optional[str] = None
    ) -> ActionResult:
        """
        Move-on trigger: discussion → voting, terminal results → guess.
        When seat_id is given it must name a human seat of the game.
        """
        code = self.registry.normalize(room_code)
        async with self._lock(code):
            session = self._sessions.get(code)
            if session is None:
                return ActionResult.reject(RejectReason.ROOM_NOT_FOUND)
            if seat_id is not None:
                _, reason = self._human_seat(session, seat_id, must_be_alive=False)
                if reason:
                    return ActionResult.reject(reason)

            if session.phase == Phase.DISCUSSION:
                self._enter_voting(session)
            elif (
                session.phase == Phase.RESULTS
                and session.last_result is not None
                and session.last_result.terminal
            ):
                self._enter_guess(session)
            else:
                return ActionResult.reject(RejectReason.WRONG_PHASE)
            phase = session.phase

        await self._flush(code)
        return ActionResult.accept(phase)

    # ── Voting ─────────────────────────────────────────────────────────────────

    def _enter_voting(self, session: GameSession) -> None:
        self.timer.cancel(session.room_code)
        for sid in session.alive_seat_ids:
            seat = session.seats[sid]
            seat.vote_target = None
            seat.has_voted = False
        session.phase = Phase.VOTING
        self._record(session, "phase_changed", data={"phase": Phase.VOTING.value})
        logger.info("[%s] Phase: discussion → voting (cycle %d)", session.room_code, session.cycle)

        controlled = session.controlled_seat
        if controlled and controlled.alive:
            self._request_participant(session, MoveKind.VOTE)

    async def submit_vote(
        self, room_code: str, seat_id: str, target_id: str
    ) -> ActionResult:
        code = self.registry.normalize(room_code)
        async with self._lock(code):
            session = self._sessions.get(code)
            if session is None:
                return ActionResult.reject(RejectReason.ROOM_NOT_FOUND)
            if session.phase != Phase.VOTING:
                return ActionResult.reject(RejectReason.WRONG_PHASE)
            voter, reason = self._human_seat(session, seat_id)
            if reason:
                return ActionResult.reject(reason)
            if voter.has_voted:
                return ActionResult.reject(RejectReason.ALREADY_SUBMITTED)
            if target_id == voter.id:
                return ActionResult.reject(RejectReason.SELF_TARGET)
            if target_id not in session.alive_seat_ids:
                return ActionResult.reject(RejectReason.TARGET_NOT_ALIVE)

            self._apply_vote(session, voter, target_id)
            phase = session.phase

        await self._flush(code)
        return ActionResult.accept(phase)

    def _apply_vote(self, session: GameSession, voter: Seat, target_id: str) -> None:
        voter.vote_target = target_id
        voter.has_voted = True
        # Target stays hidden until the round resolves
        self._record(session, "vote_cast", actor=voter.id)
        self._record(session, "vote_target", actor=voter.id, target=target_id, visible=False)

        if all(session.seats[sid].has_voted for sid in session.alive_seat_ids):
            self._resolve_round(session)

    def _resolve_round(self, session: GameSession) -> None:
        votes = {
            sid: session.seats[sid].vote_target
            for sid in session.alive_seat_ids
            if session.seats[sid].vote_target
        }
        outcome = resolve_votes(
            votes, session.alive_seat_ids, session.factions(), self.rules, cycle=session.cycle,
        )
        session.last_result = outcome
        session.phase = Phase.RESULTS

        if outcome.eliminated:
            session.seats[outcome.eliminated].alive = False
            session.alive_seat_ids.discard(outcome.eliminated)

        self._record(
            session, "round_resolved", target=outcome.eliminated,
            data=outcome.model_dump(mode="json"),
        )
        logger.info(
            "[%s] Round resolved: %s (eliminated=%s, terminal=%s)",
            session.room_code, outcome.reason.value, outcome.eliminated, outcome.terminal,
        )

        if outcome.terminal:
            session.winner = outcome.winner
            self._record(session, "game_over", data={"winner": outcome.winner.value})
        else:
            self._start_new_cycle(session)

    def _start_new_cycle(self, session: GameSession) -> None:
        for seat in session.seats.values():
            seat.reset_round()
        session.cycle += 1
        session.turn.reshuffle(session.alive_in_order(), self.rng)
        session.phase = Phase.DESCRIPTION
        self._record(session, "cycle_started", data={"turn_order": list(session.turn.order)})
        logger.info("[%s] Cycle %d started with %d seats", session.room_code, session.cycle, len(session.turn.order))
        self._maybe_prompt_description(session)

    # ── Guess / final reveal ───────────────────────────────────────────────────

    def _enter_guess(self, session: GameSession) -> None:
        session.phase = Phase.GUESS
        session.pending_guessers = set(session.human_seat_ids)
        self._record(session, "phase_changed", data={"phase": Phase.GUESS.value})
        logger.info("[%s] Phase: results → guess", session.room_code)

    async def submit_participant_guess(
        self, room_code: str, seat_id: str, guessed_seat_id: str
    ) -> ActionResult:
        """Every human seat, eliminated or not, names the seat it thinks is controlled."""
        code = self.registry.normalize(room_code)
        async with self._lock(code):
            session = self._sessions.get(code)
            if session is None:
                return ActionResult.reject(RejectReason.ROOM_NOT_FOUND)
            if session.phase != Phase.GUESS:
                return ActionResult.reject(RejectReason.WRONG_PHASE)
            seat, reason = self._human_seat(session, seat_id, must_be_alive=False)
            if reason:
                return ActionResult.reject(reason)
            if seat.id in session.guesses:
                return ActionResult.reject(RejectReason.ALREADY_SUBMITTED)
            if guessed_seat_id == seat.id:
                return ActionResult.reject(RejectReason.SELF_TARGET)
            if guessed_seat_id not in session.seats:
                return ActionResult.reject(RejectReason.SEAT_NOT_FOUND)

            session.guesses[seat.id] = guessed_seat_id
            session.pending_guessers.discard(seat.id)
            # No actor: guessers are human seats by definition
            self._record(session, "guess_submitted", data={
                "outstanding": len(session.pending_guessers),
            })
            self._record(session, "guess_target", actor=seat.id, target=guessed_seat_id, visible=False)
            if not session.pending_guessers:
                self._finish(session)
            phase = session.phase

        await self._flush(code)
        return ActionResult.accept(phase)

    def _finish(self, session: GameSession) -> None:
        controlled = session.controlled_seat
        session.phase = Phase.FINAL_REVEAL
        correct = {sid: gid == controlled.id for sid, gid in session.guesses.items()}
        self._record(session, "final_reveal", data={
            "controlled_seat_id": controlled.id,
            "winner": session.winner.value if session.winner else None,
            "correct_guesses": correct,
        })
        logger.info(
            "[%s] Final reveal: %d/%d guessed the controlled seat",
            session.room_code, sum(correct.values()), len(correct),
        )
        self.registry.set_status(session.room_code, RoomStatus.FINISHED)
        if self.archive is not None:
            self.archive.archive(session)

    # ── Controlled seat ────────────────────────────────────────────────────────

    def _context(self, session: GameSession, kind: MoveKind) -> ParticipantContext:
        seat = session.controlled_seat
        described = [
            session.seats[sid] for sid in session.turn.order if session.seats[sid].has_described
        ]
        return ParticipantContext(
            room_code=session.room_code,
            kind=kind,
            name=seat.name,
            word=seat.word,
            stance=Stance.SEEK_OUTLIER if seat.faction == Faction.MAJORITY else Stance.BLEND_IN,
            other_names=[session.seats[sid].name for sid in session.seat_order if sid != seat.id],
            descriptions=[{"name": s.name, "description": s.description} for s in described],
            transcript=[
                {"name": m.speaker, "text": m.text}
                for m in session.transcript if m.cycle == session.cycle
            ],
            eligible_targets=[
                session.seats[sid].name for sid in session.alive_in_order() if sid != seat.id
            ],
            cycle=session.cycle,
        )

    def _request_participant(self, session: GameSession, kind: MoveKind) -> None:
        session.awaiting_participant = kind
        context = self._context(session, kind)
        token = (session.cycle, session.phase)
        code = session.room_code
        task = asyncio.create_task(
            self._run_participant(session, context, token),
            name=f"participant-{code}-{kind.value}",
        )
        tasks = self._participant_tasks.setdefault(code, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _run_participant(
        self, session: GameSession, context: ParticipantContext, token: Tuple[int, Phase]
    ) -> None:
        code = session.room_code
        move: Optional[ParticipantMove] = None
        try:
            move = await asyncio.wait_for(
                self.participant.request_move(context), timeout=self.participant_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("[%s] Participant %s timed out", code, context.kind.value)
        except Exception as exc:
            logger.error("[%s] Participant %s failed: %s", code, context.kind.value, exc)

        async with self._lock(code):
            if self._sessions.get(code) is not session or (session.cycle, session.phase) != token:
                logger.info("[%s] Discarding stale participant %s", code, context.kind.value)
                return
            if session.awaiting_participant == context.kind:
                session.awaiting_participant = None

            move, fell_back = self._settle_move(context, move)
            seat = session.controlled_seat
            self._record(session, "participant_move", actor=seat.id, data={
                "kind": context.kind.value,
                "fallback": fell_back,
                "thought_process": move.thought_process,
            }, visible=False)

            if context.kind == MoveKind.DESCRIPTION:
                if session.turn.current == seat.id:
                    self._apply_description(session, seat, move.content)
            elif context.kind == MoveKind.DISCUSSION:
                self._apply_message(session, seat, move.content)
            elif not seat.has_voted:
                target_id = next(
                    sid for sid in session.alive_seat_ids
                    if session.seats[sid].name == move.vote_target
                )
                self._apply_vote(session, seat, target_id)

        await self._flush(code)

    def _settle_move(
        self, context: ParticipantContext, move: Optional[ParticipantMove]
    ) -> Tuple[ParticipantMove, bool]:
        """Return a usable move, substituting the fallback when needed."""
        if move is not None:
            if context.kind == MoveKind.VOTE:
                target = parse_seat_name(move.vote_target, context.eligible_targets)
                if target:
                    return move.model_copy(update={"vote_target": target}), False
                logger.warning(
                    "[%s] Participant vote target %r not eligible, using fallback",
                    context.room_code, move.vote_target,
                )
            else:
                content = move.content.strip()[:settings.max_text_length]
                if content:
                    return move.model_copy(update={"content": content}), False
                logger.warning("[%s] Participant returned empty %s", context.room_code, context.kind.value)
        return fallback_move(context, self.rng), True

    # ── Teardown ───────────────────────────────────────────────────────────────

    async def teardown(self, room_code: str) -> None:
        """Cancel timers and pending participant calls and discard the session."""
        code = self.registry.normalize(room_code)
        self.timer.cancel(code)
        for task in self._participant_tasks.pop(code, set()):
            task.cancel()
        self._locks.pop(code, None)
        self._outbox.pop(code, None)
        session = self._sessions.pop(code, None)
        forget = getattr(self.participant, "forget", None)
        if forget:
            forget(code)
        if session:
            logger.info("[%s] Game session torn down", code)

    async def wait_idle(self, room_code: str) -> None:
        """Await outstanding participant calls, including ones they trigger."""
        code = self.registry.normalize(room_code)
        while True:
            pending = [t for t in self._participant_tasks.get(code, set()) if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
