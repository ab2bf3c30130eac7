"""Tests for the GameMaster state machine, driven end to end with asyncio.run."""

import asyncio

import pytest

from agents.participant_agent import FALLBACK_CHAT_LINES, FALLBACK_DESCRIPTIONS, GENERIC_DESCRIPTIONS
from models.game import Faction, MoveKind, OutcomeReason, Phase, RejectReason
from conftest import FailingParticipant, GatedParticipant, ScriptedParticipant, SlowParticipant


def run(coro):
    return asyncio.run(coro)


def snapshot(session):
    return session.model_dump()


class TestCreateSession:
    def test_roster_and_first_cycle(self, make_game):
        """Four seats, one minority, one controlled, phase description at cycle 1."""
        async def scenario():
            game = await make_game()
            s = game.session
            assert len(s.seats) == 4
            assert sum(1 for seat in s.seats.values() if seat.faction == Faction.MINORITY) == 1
            assert sum(1 for seat in s.seats.values() if seat.is_controlled) == 1
            assert s.phase == Phase.DESCRIPTION
            assert s.cycle == 1
            assert sorted(s.turn.order) == sorted(s.seat_order)
            assert s.alive_seat_ids == set(s.seat_order)
            majority_word, minority_word = s.word_pair
            for seat in s.seats.values():
                expected = minority_word if seat.faction == Faction.MINORITY else majority_word
                assert seat.word == expected
        run(scenario())

    def test_second_session_for_same_room_is_rejected(self, make_game, humans):
        async def scenario():
            game = await make_game()
            result = await game.gm.create_session(game.code, humans)
            assert not result
            assert result.reason == RejectReason.GAME_IN_PROGRESS
        run(scenario())

    def test_wrong_human_count_is_rejected(self, make_game, humans):
        async def scenario():
            game = await make_game()
            result = await game.gm.create_session("OTHER1", humans[:2])
            assert result.reason == RejectReason.NOT_ENOUGH_PLAYERS
            assert game.gm.get_session("OTHER1") is None
        run(scenario())


class TestDescriptions:
    def test_only_current_seat_may_describe(self, make_game):
        """Out-of-turn, controlled-seat and bad-text submissions are rejected without mutation."""
        async def scenario():
            game = await make_game()
            if game.session.seats[game.session.turn.current].is_controlled:
                await game.gm.wait_idle(game.code)
            current = game.session.turn.current
            other = next(sid for sid in game.humans() if sid != current)
            before = snapshot(game.session)

            checks = [
                (other, "hello", RejectReason.NOT_YOUR_TURN),
                (game.controlled_id, "hello", RejectReason.CONTROLLED_SEAT),
                ("nobody", "hello", RejectReason.SEAT_NOT_FOUND),
                (current, "   ", RejectReason.EMPTY_TEXT),
                (current, "x" * 1000, RejectReason.TEXT_TOO_LONG),
            ]
            for seat_id, text, reason in checks:
                result = await game.gm.submit_description(game.code, seat_id, text)
                assert result.reason == reason
            assert snapshot(game.session) == before
        run(scenario())

    def test_unknown_room(self, make_game):
        async def scenario():
            game = await make_game()
            result = await game.gm.submit_description("NOPE99", game.humans()[0], "hi")
            assert result.reason == RejectReason.ROOM_NOT_FOUND
        run(scenario())

    def test_full_rotation_reaches_discussion(self, make_game):
        """Every seat describes once, the controlled seat through the participant."""
        async def scenario():
            game = await make_game()
            await game.describe_all()
            s = game.session
            assert s.phase == Phase.DISCUSSION
            assert all(seat.has_described for seat in s.seats.values())
            assert s.controlled_seat.description == "kinda warm i guess"
            assert game.participant.kinds().count(MoveKind.DESCRIPTION) == 1
        run(scenario())

    def test_participant_sees_descriptions_so_far(self, make_game):
        async def scenario():
            game = await make_game()
            await game.describe_all()
            ctx = next(c for c in game.participant.calls if c.kind == MoveKind.DESCRIPTION)
            position = game.session.turn.order.index(game.controlled_id)
            assert len(ctx.descriptions) == position
            assert game.session.controlled_seat.name not in ctx.other_names
        run(scenario())


class TestDiscussion:
    def test_controlled_seat_speaks_once(self, make_game):
        async def scenario():
            game = await make_game()
            await game.describe_all()
            await game.gm.wait_idle(game.code)
            lines = [m for m in game.session.transcript if m.seat_id == game.controlled_id]
            assert [m.text for m in lines] == ["hmm not sure tbh"]
        run(scenario())

    def test_human_messages(self, make_game):
        async def scenario():
            game = await make_game()
            human = game.humans()[0]
            result = await game.gm.submit_discussion_message(game.code, human, "who said warm?")
            assert result.reason == RejectReason.WRONG_PHASE

            await game.describe_all()
            result = await game.gm.submit_discussion_message(game.code, human, "who said warm?")
            assert result
            assert game.session.transcript[-1].text == "who said warm?"
            result = await game.gm.submit_discussion_message(game.code, game.controlled_id, "hi")
            assert result.reason == RejectReason.CONTROLLED_SEAT
        run(scenario())

    def test_advance_only_from_discussion_or_terminal_results(self, make_game):
        async def scenario():
            game = await make_game()
            result = await game.gm.advance_phase(game.code)
            assert result.reason == RejectReason.WRONG_PHASE
            await game.describe_all()
            result = await game.gm.advance_phase(game.code, game.humans()[0])
            assert result
            assert result.phase == Phase.VOTING
            result = await game.gm.advance_phase(game.code)
            assert result.reason == RejectReason.WRONG_PHASE
        run(scenario())

    def test_discussion_timer_opens_voting(self, make_game):
        async def scenario():
            game = await make_game(discussion_seconds=0.1)
            await game.describe_all()
            await asyncio.sleep(0.4)
            assert game.session.phase == Phase.VOTING
        run(scenario())

    def test_manual_advance_cancels_timer(self, make_game):
        async def scenario():
            game = await make_game(discussion_seconds=30)
            await game.describe_all()
            await game.gm.advance_phase(game.code)
            assert not game.gm.timer.pending(game.code)
        run(scenario())


class TestVoting:
    def test_vote_rejections(self, make_game):
        async def scenario():
            game = await make_game()
            await game.describe_all()
            voter, target = game.humans()[:2]
            result = await game.gm.submit_vote(game.code, voter, target)
            assert result.reason == RejectReason.WRONG_PHASE

            await game.gm.advance_phase(game.code)
            await game.gm.wait_idle(game.code)
            before = snapshot(game.session)
            assert (await game.gm.submit_vote(game.code, voter, voter)).reason == RejectReason.SELF_TARGET
            assert (await game.gm.submit_vote(game.code, voter, "ghost")).reason == RejectReason.TARGET_NOT_ALIVE
            assert (await game.gm.submit_vote(game.code, game.controlled_id, voter)).reason == RejectReason.CONTROLLED_SEAT
            assert snapshot(game.session) == before

            assert await game.gm.submit_vote(game.code, voter, target)
            again = await game.gm.submit_vote(game.code, voter, game.controlled_id)
            assert again.reason == RejectReason.ALREADY_SUBMITTED
            assert game.session.seats[voter].vote_target == target
        run(scenario())

    def test_minority_caught_ends_game(self, make_game):
        async def scenario():
            game = await make_game()
            minority = game.minority_id
            fallback = next(sid for sid in game.session.seat_order if sid != minority)
            await game.vote_round(game.everyone_votes(minority, fallback))

            s = game.session
            assert s.phase == Phase.RESULTS
            assert s.last_result.eliminated == minority
            assert s.last_result.terminal
            assert s.last_result.reason == OutcomeReason.MINORITY_CAUGHT
            assert s.winner == Faction.MAJORITY
            assert not s.seats[minority].alive
        run(scenario())

    def test_majority_elimination_starts_new_cycle(self, make_game):
        async def scenario():
            game = await make_game()
            victim = game.seat_by(lambda seat: seat.faction == Faction.MAJORITY)
            fallback = next(sid for sid in game.session.seat_order if sid != victim)
            await game.describe_all()
            await game.vote_round(game.everyone_votes(victim, fallback))

            s = game.session
            assert s.cycle == 2
            assert s.last_result.eliminated == victim
            assert not s.last_result.terminal
            assert victim not in s.alive_seat_ids
            assert sorted(s.turn.order) == sorted(s.alive_seat_ids)
            assert len(s.turn.order) == 3
            described = {sid for sid, seat in s.seats.items() if seat.has_described}
            assert described == set(s.turn.seen())
            assert not any(seat.has_voted for seat in s.seats.values())
        run(scenario())

    def test_second_majority_elimination_hands_minority_the_win(self, make_game):
        async def scenario():
            game = await make_game()
            for _ in range(2):
                victim = game.seat_by(
                    lambda seat: seat.faction == Faction.MAJORITY and seat.alive
                )
                fallback = next(sid for sid in game.session.alive_in_order() if sid != victim)
                await game.vote_round(game.everyone_votes(victim, fallback))

            s = game.session
            assert s.phase == Phase.RESULTS
            assert s.last_result.terminal
            assert s.last_result.reason == OutcomeReason.MAJORITY_DEPLETED
            assert s.winner == Faction.MINORITY
            assert len(s.alive_seat_ids) == 2
        run(scenario())

    def test_tie_keeps_roster_and_resets_round(self, make_game):
        async def scenario():
            game = await make_game()
            a, b, c, d = game.session.seat_order
            await game.vote_round({a: b, b: a, c: a, d: b})

            s = game.session
            assert s.cycle == 2
            assert s.last_result.eliminated is None
            assert s.last_result.tied == sorted([a, b])
            assert s.alive_seat_ids == {a, b, c, d}
            assert not any(seat.has_voted or seat.vote_target for seat in s.seats.values())
        run(scenario())

    def test_floor_zero_keeps_playing(self, make_game):
        """With the floor lowered, two majority eliminations are not terminal."""
        from agents.vote_resolver import OutcomeRules

        async def scenario():
            game = await make_game(rules=OutcomeRules(majority_floor=0))
            for _ in range(2):
                victim = game.seat_by(
                    lambda seat: seat.faction == Faction.MAJORITY and seat.alive
                )
                fallback = next(sid for sid in game.session.alive_in_order() if sid != victim)
                await game.vote_round(game.everyone_votes(victim, fallback))
            assert game.session.cycle == 3
            assert not game.session.last_result.terminal
        run(scenario())


class TestGuessPhase:
    async def _to_guess(self, game):
        minority = game.minority_id
        fallback = next(sid for sid in game.session.seat_order if sid != minority)
        await game.vote_round(game.everyone_votes(minority, fallback))
        result = await game.gm.advance_phase(game.code)
        assert result.phase == Phase.GUESS

    def test_every_human_is_pending(self, make_game):
        async def scenario():
            game = await make_game()
            await self._to_guess(game)
            assert game.session.pending_guessers == set(game.humans(alive_only=False))
        run(scenario())

    def test_final_reveal_needs_all_guesses(self, make_game):
        async def scenario():
            game = await make_game()
            await self._to_guess(game)
            humans = game.humans(alive_only=False)
            ai = game.controlled_id

            for sid in humans[:-1]:
                assert await game.gm.submit_participant_guess(game.code, sid, ai)
                assert game.session.phase == Phase.GUESS
            last = humans[-1]
            wrong = next(sid for sid in humans if sid != last)
            result = await game.gm.submit_participant_guess(game.code, last, wrong)
            assert result.phase == Phase.FINAL_REVEAL
            assert set(game.session.guesses) == set(humans)

            view = await game.gm.get_view(game.code, last)
            correct = {g.seat_id: g.correct for g in view.guesses}
            assert correct[last] is False
            assert all(correct[sid] for sid in humans[:-1])
        run(scenario())

    def test_guess_rejections(self, make_game):
        async def scenario():
            game = await make_game()
            human = game.humans()[0]
            early = await game.gm.submit_participant_guess(game.code, human, game.controlled_id)
            assert early.reason == RejectReason.WRONG_PHASE

            await self._to_guess(game)
            gm, code = game.gm, game.code
            assert (await gm.submit_participant_guess(code, human, human)).reason == RejectReason.SELF_TARGET
            assert (await gm.submit_participant_guess(code, game.controlled_id, human)).reason == RejectReason.CONTROLLED_SEAT
            assert (await gm.submit_participant_guess(code, human, "ghost")).reason == RejectReason.SEAT_NOT_FOUND
            assert await gm.submit_participant_guess(code, human, game.controlled_id)
            again = await gm.submit_participant_guess(code, human, game.controlled_id)
            assert again.reason == RejectReason.ALREADY_SUBMITTED
        run(scenario())

    def test_eliminated_human_still_guesses(self, make_game):
        async def scenario():
            game = await make_game()
            minority = game.minority_id
            await self._to_guess(game)
            if game.session.seats[minority].is_controlled:
                pytest.skip("controlled seat drew the minority word")
            assert minority in game.session.pending_guessers
            assert await game.gm.submit_participant_guess(game.code, minority, game.controlled_id)
        run(scenario())

    def test_guess_progress_is_a_count(self, make_game):
        """Views and public events report how many guesses remain, never which seats owe one."""
        async def scenario():
            game = await make_game()
            await self._to_guess(game)
            humans = game.humans(alive_only=False)

            view = await game.gm.get_view(game.code, humans[0])
            assert view.guesses_outstanding == 3
            assert "pending_guessers" not in view.model_dump()

            assert await game.gm.submit_participant_guess(game.code, humans[0], game.controlled_id)
            for sid in humans:
                view = await game.gm.get_view(game.code, sid)
                assert view.guesses_outstanding == 2
                assert view.has_guessed == (sid == humans[0])
                assert view.guesses == []

            submitted = [e for e in game.gm.public_events(game.code) if e.type == "guess_submitted"]
            assert len(submitted) == 1
            assert submitted[0].actor is None
        run(scenario())


class TestParticipantFallback:
    def test_failing_service_still_describes_and_votes(self, make_game):
        async def scenario():
            participant = FailingParticipant()
            game = await make_game(participant)
            await game.describe_all()
            ai = game.session.controlled_seat
            pool = FALLBACK_DESCRIPTIONS.get(ai.word, GENERIC_DESCRIPTIONS)
            assert ai.description in pool

            await game.gm.wait_idle(game.code)
            ai_lines = [m.text for m in game.session.transcript if m.seat_id == ai.id]
            assert ai_lines and ai_lines[0] in FALLBACK_CHAT_LINES

            await game.gm.advance_phase(game.code)
            await game.gm.wait_idle(game.code)
            assert ai.has_voted
            assert ai.vote_target in game.session.alive_seat_ids
            assert ai.vote_target != ai.id

            moves = [e for e in game.session.events if e.type == "participant_move"]
            assert moves and all(e.data["fallback"] for e in moves)
            assert not any(e.visible_in_game for e in moves)
        run(scenario())

    def test_timeout_falls_back(self, make_game):
        async def scenario():
            game = await make_game(SlowParticipant(), participant_timeout=0.05)
            await game.describe_all()
            assert game.session.phase == Phase.DISCUSSION
            assert game.session.controlled_seat.has_described
        run(scenario())

    def test_ineligible_vote_target_falls_back(self, make_game):
        async def scenario():
            participant = ScriptedParticipant()
            game = await make_game(participant)
            await game.describe_all()
            participant.vote_for = game.session.controlled_seat.name
            await game.gm.advance_phase(game.code)
            await game.gm.wait_idle(game.code)
            ai = game.session.controlled_seat
            assert ai.has_voted
            assert ai.vote_target != ai.id
        run(scenario())

    def test_empty_content_falls_back(self, make_game):
        async def scenario():
            game = await make_game(ScriptedParticipant(description="   "))
            await game.describe_all()
            assert game.session.controlled_seat.description.strip()
        run(scenario())


class TestStaleParticipantResults:
    def test_teardown_discards_pending_move(self, make_game):
        async def scenario():
            participant = GatedParticipant({MoveKind.DESCRIPTION})
            game = await make_game(participant)
            session = game.session
            while not session.seats[session.turn.current].is_controlled:
                assert await game.gm.submit_description(game.code, session.turn.current, "hot")
            assert session.awaiting_participant == MoveKind.DESCRIPTION

            await game.gm.teardown(game.code)
            assert game.gm.get_session(game.code) is None
            participant.release()
            await asyncio.sleep(0.05)
            assert not session.controlled_seat.has_described
        run(scenario())

    def test_late_discussion_line_after_voting_opened_is_dropped(self, make_game):
        async def scenario():
            participant = GatedParticipant({MoveKind.DISCUSSION})
            game = await make_game(participant)
            await game.describe_all()
            await game.gm.advance_phase(game.code)
            participant.release()
            await game.gm.wait_idle(game.code)
            assert not [m for m in game.session.transcript if m.seat_id == game.controlled_id]
            assert game.session.controlled_seat.has_voted
        run(scenario())


class TestLobbyIntegration:
    def test_start_game_rules(self, make_game):
        async def scenario():
            game = await make_game()
            registry = game.gm.registry
            created = registry.create_room("Host")
            code, host = created.room.code, created.member.id

            assert (await game.gm.start_game("ZZZZZZ", host)).reason == RejectReason.ROOM_NOT_FOUND
            assert (await game.gm.start_game(code, host)).reason == RejectReason.NOT_ENOUGH_PLAYERS
            guest = registry.join_room(code, "Guest").member
            registry.join_room(code, "Third")
            assert (await game.gm.start_game(code, guest.id)).reason == RejectReason.NOT_HOST

            result = await game.gm.start_game(code.lower(), host)
            assert result
            assert registry.get_room(code).status.value == "in_progress"
            assert registry.join_room(code, "Late").reason == RejectReason.GAME_IN_PROGRESS
            assert (await game.gm.start_game(code, host)).reason == RejectReason.GAME_IN_PROGRESS
        run(scenario())

    def test_room_emptying_tears_down_game(self, make_game):
        async def scenario():
            game = await make_game()
            registry = game.gm.registry
            created = registry.create_room("Host")
            code = created.room.code
            members = [created.member, registry.join_room(code, "B").member, registry.join_room(code, "C").member]
            assert await game.gm.start_game(code, created.member.id)

            for m in members:
                await game.gm.leave(m.id)
            assert registry.get_room(code) is None
            assert game.gm.get_session(code) is None
        run(scenario())

    def test_teardown_releases_room_lock(self, make_game):
        async def scenario():
            game = await make_game()
            assert game.code in game.gm._locks
            await game.gm.teardown(game.code)
            assert game.code not in game.gm._locks
            assert game.gm.get_session(game.code) is None
        run(scenario())

    def test_seat_ids_are_not_member_ids(self, make_game):
        async def scenario():
            game = await make_game()
            registry = game.gm.registry
            created = registry.create_room("Host")
            code = created.room.code
            members = [created.member, registry.join_room(code, "B").member, registry.join_room(code, "C").member]
            assert await game.gm.start_game(code, created.member.id)

            session = game.gm.get_session(code)
            member_ids = {m.id for m in members}
            assert not member_ids & set(session.seats)
            for m in members:
                seat_id = game.gm.seat_for(code, m.id)
                assert session.seats[seat_id].name == m.name
                assert not session.seats[seat_id].is_controlled
            assert game.gm.seat_for(code, "ghost") is None
            assert game.gm.seat_for("ZZZZZZ", created.member.id) is None
            assert session.controlled_seat.member_id is None
        run(scenario())

    def test_listeners_receive_events(self, make_game):
        async def scenario():
            game = await make_game()
            seen = []

            async def listener(room_code, events):
                seen.extend((room_code, e.type) for e in events)

            game.gm.add_listener(listener)
            await game.describe_all()
            assert (game.code, "description") in seen
            assert (game.code, "phase_changed") in seen
        run(scenario())

    def test_public_events_hide_secrets_until_reveal(self, make_game):
        async def scenario():
            game = await make_game()
            types = {e.type for e in game.gm.public_events(game.code)}
            assert "game_started" in types
            assert "roles_assigned" not in types
        run(scenario())


class TestControlledSeatStaysHidden:
    def test_no_view_singles_out_controlled_seat(self, make_game, humans):
        """Every human view before the reveal, in every phase, treats all four seats alike."""
        async def scenario():
            game = await make_game()
            seen = []

            async def collect(room_code, events):
                session = game.session
                if session is None or session.phase == Phase.FINAL_REVEAL:
                    return
                for sid in session.human_seat_ids:
                    seen.append((session.phase, await game.gm.get_view(room_code, sid)))

            game.gm.add_listener(collect)
            minority = game.minority_id
            fallback = next(sid for sid in game.session.seat_order if sid != minority)
            await game.vote_round(game.everyone_votes(minority, fallback))
            assert await game.gm.advance_phase(game.code)
            for sid in game.humans(alive_only=False):
                assert await game.gm.submit_participant_guess(game.code, sid, game.controlled_id)
            assert game.session.phase == Phase.FINAL_REVEAL
            return seen, set(game.session.seat_order)

        seen, all_seats = run(scenario())
        member_ids = {h.id for h in humans}
        phases = {phase for phase, _ in seen}
        assert {Phase.DESCRIPTION, Phase.DISCUSSION, Phase.VOTING, Phase.RESULTS, Phase.GUESS} <= phases
        for phase, view in seen:
            assert view.controlled_seat_id is None, phase
            assert all(s.is_controlled is None for s in view.seats), phase
            assert view.guesses == [], phase
            assert "pending_guessers" not in view.model_dump(), phase
            assert {s.id for s in view.seats} == all_seats
            # Lobby ids are public; seat ids must not overlap them
            assert not member_ids & all_seats
