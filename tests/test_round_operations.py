"""
Round Processor tests: submissions, resolution, termination and the
generator fallback path, against a real SQLite database.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from arena.database.models import (
    DuelRound, DuelStatus, ParticipantOutcome, RoundKind, RoundStatus, utc_now
)
from arena.services.outcome_generator import GenerationResult
from arena.utils.exceptions import (
    DataIntegrityError, DuplicateActionError, InvalidArgumentError,
    InvalidStateError, UnauthorizedError
)
from arena.utils.outcome_sanitizer import GeneratedOutcome
from fakes import scripted_round


class TestSubmitAction:

    async def test_first_action_leaves_round_open(self, engine, open_duel, wizards):
        duel = await open_duel()
        merlin, morgana = wizards

        submission = await engine.rounds.submit_action(duel.id, merlin.id, "  Fireball!  ", "alice")
        assert submission.action.description == "Fireball!"
        assert not submission.round_ready
        assert submission.resolution is None

        duel = await engine.duels.get_duel(duel.id)
        assert duel.pending_action_wizard_ids == [morgana.id]

    async def test_second_action_for_same_wizard_rejected(self, engine, open_duel, wizards):
        duel = await open_duel()
        await engine.rounds.submit_action(duel.id, wizards[0].id, "Fireball!", "alice")
        with pytest.raises(DuplicateActionError):
            await engine.rounds.submit_action(duel.id, wizards[0].id, "Another fireball!", "alice")

    async def test_blank_action_rejected(self, engine, open_duel, wizards):
        duel = await open_duel()
        with pytest.raises(InvalidArgumentError):
            await engine.rounds.submit_action(duel.id, wizards[0].id, "   ", "alice")

    async def test_cannot_cast_for_someone_elses_wizard(self, engine, open_duel, wizards):
        duel = await open_duel()
        with pytest.raises(UnauthorizedError):
            await engine.rounds.submit_action(duel.id, wizards[1].id, "Steal!", "alice")

    async def test_cannot_cast_with_wizard_outside_duel(self, engine, open_duel):
        duel = await open_duel()
        outsider = await engine.wizards.create_wizard("alice", "Gandalf")
        with pytest.raises(UnauthorizedError):
            await engine.rounds.submit_action(duel.id, outsider.id, "Gatecrash!", "alice")

    async def test_cannot_cast_before_duel_starts(self, engine, wizards):
        duel = await engine.duels.create_duel(3, [wizards[0].id], "alice")
        with pytest.raises(InvalidStateError):
            await engine.rounds.submit_action(duel.id, wizards[0].id, "Too early!", "alice")

    async def test_round_not_accepting_spells(self, engine, open_duel, wizards):
        duel = await open_duel()
        current = await engine.rounds.get_current_round(duel.id)
        async with engine.db.transaction() as session:
            await session.execute(
                update(DuelRound).where(DuelRound.id == current.id).values(status=RoundStatus.PROCESSING)
            )
        with pytest.raises(InvalidStateError, match="not accepting spells"):
            await engine.rounds.submit_action(duel.id, wizards[0].id, "Fireball!", "alice")

    async def test_concurrent_submissions_resolve_once(self, engine, generator, open_duel, wizards):
        duel = await open_duel()
        merlin, morgana = wizards

        first, second = await asyncio.gather(
            engine.rounds.submit_action(duel.id, merlin.id, "Fireball!", "alice"),
            engine.rounds.submit_action(duel.id, morgana.id, "Ice wall!", "bob"),
        )
        resolutions = [s.resolution for s in (first, second) if s.resolution]
        assert len(resolutions) == 1
        assert len(generator.contexts) == 1
        assert generator.contexts[0].actions == {merlin.id: "Fireball!", morgana.id: "Ice wall!"}

        duel = await engine.duels.get_duel(duel.id)
        assert duel.current_round_number == 2


class TestResolution:

    async def test_scenario_budget_winner_decided_by_score(self, engine, generator, open_duel, cast_both, wizards):
        merlin, morgana = wizards
        duel = await open_duel(round_budget=3)
        generator.push(*[scripted_round([15, 5], [-30, -5])] * 3)

        for _ in range(3):
            submission = await cast_both(duel.id)

        resolution = submission.resolution
        assert resolution.duel_completed
        assert resolution.winners == [merlin.id]
        assert resolution.losers == [morgana.id]

        duel = await engine.duels.get_duel(duel.id)
        assert duel.status == DuelStatus.COMPLETED
        assert duel.scores == {merlin.id: 45, morgana.id: 15}
        assert duel.vitality == {merlin.id: 10, morgana.id: 85}
        assert duel.winners == [merlin.id]
        assert duel.get_participant(merlin.id).outcome == ParticipantOutcome.WON

    async def test_conclusion_round_follows_last_round(self, engine, generator, open_duel, cast_both, wizards):
        duel = await open_duel(round_budget=1)
        resolution = (await cast_both(duel.id)).resolution

        rounds = await engine.rounds.get_rounds(duel.id)
        assert [r.round_number for r in rounds] == [0, 1, 2]
        conclusion = rounds[-1]
        assert conclusion.kind == RoundKind.CONCLUSION
        assert conclusion.id == resolution.conclusion_round_id
        assert conclusion.narrative == "The duel is over."
        assert len(generator.conclusions) == 1

    async def test_scenario_incapacitation_ends_early(self, engine, generator, open_duel, cast_both, wizards):
        merlin, morgana = wizards
        duel = await open_duel(round_budget=5)
        generator.push(scripted_round([3, 12], [0, -50]), scripted_round([3, 12], [0, -60]))

        first = (await cast_both(duel.id)).resolution
        assert not first.duel_completed
        assert first.next_round_number == 2

        second = (await cast_both(duel.id)).resolution
        assert second.duel_completed
        assert second.round_number == 2
        assert second.losers == [morgana.id]
        assert second.winners == [merlin.id]

        duel = await engine.duels.get_duel(duel.id)
        assert duel.vitality[morgana.id] == 0
        assert duel.current_round_number == 2

    async def test_scenario_generator_failure_falls_back(self, engine, generator, open_duel, cast_both):
        duel = await open_duel()
        generator.push(RuntimeError("model unavailable"))

        resolution = (await cast_both(duel.id)).resolution
        assert resolution.used_fallback
        resolved = resolution.round
        assert resolved.status == RoundStatus.COMPLETED
        assert resolved.used_fallback
        assert "Merlin" in resolved.narrative and "Morgana" in resolved.narrative

    async def test_invalid_generator_output_falls_back(self, engine, generator, open_duel, cast_both):
        duel = await open_duel()
        generator.push(GenerationResult.ok(GeneratedOutcome(
            narrative="Chaos.", points_awarded={}, health_change={}
        )))
        resolution = (await cast_both(duel.id)).resolution
        assert resolution.used_fallback
        assert all(2 <= p <= 7 for p in resolution.round.points_awarded.values())

    async def test_failed_result_falls_back(self, engine, generator, open_duel, cast_both):
        duel = await open_duel()
        generator.push(GenerationResult.failed("rate limited"))
        resolution = (await cast_both(duel.id)).resolution
        assert resolution.used_fallback

    async def test_out_of_range_numbers_are_sanitized(self, engine, generator, open_duel, cast_both, wizards):
        merlin, morgana = wizards
        duel = await open_duel()
        generator.push(scripted_round([99, -7], [40, -75]))

        resolved = (await cast_both(duel.id)).resolution.round
        assert resolved.points_awarded == {merlin.id: 20, morgana.id: 0}
        # Full vitality cannot rise; -75 clamps to -50
        assert resolved.health_changes == {merlin.id: 0, morgana.id: -50}

        duel = await engine.duels.get_duel(duel.id)
        assert all(0 <= v <= 100 for v in duel.vitality.values())

    async def test_luck_rolls_are_recorded(self, engine, generator, open_duel, cast_both):
        duel = await open_duel()
        resolved = (await cast_both(duel.id)).resolution.round
        assert all(1 <= roll <= 20 for roll in resolved.luck_rolls.values())
        assert all(w.luck_roll is not None for w in generator.contexts[0].wizards)

    async def test_prior_rounds_reach_the_generator(self, engine, generator, open_duel, cast_both):
        duel = await open_duel()
        await cast_both(duel.id)
        await cast_both(duel.id)
        assert [r.round_number for r in generator.contexts[1].previous_rounds] == [1]
        assert generator.contexts[1].previous_rounds[0].result_summary == "Round 1 is decided."

    async def test_forced_resolution_with_partial_actions(self, engine, generator, open_duel, wizards):
        merlin, morgana = wizards
        duel = await open_duel()
        await engine.rounds.submit_action(duel.id, merlin.id, "Fireball!", "alice")
        current = await engine.rounds.get_current_round(duel.id)

        resolution = await engine.rounds.resolve_round(duel.id, current.id)
        assert resolution.round.status == RoundStatus.COMPLETED
        assert generator.contexts[0].acted_wizard_ids == [merlin.id]
        assert generator.contexts[0].held_back_wizard_ids == [morgana.id]

    async def test_forced_resolution_with_no_actions_uses_hesitation(self, engine, generator, open_duel):
        duel = await open_duel()
        generator.push(RuntimeError("offline"))
        current = await engine.rounds.get_current_round(duel.id)

        resolution = await engine.rounds.resolve_round(duel.id, current.id)
        assert "hesitating" in resolution.round.narrative

    async def test_completed_round_cannot_be_resolved_again(self, engine, open_duel, cast_both):
        duel = await open_duel()
        resolution = (await cast_both(duel.id)).resolution
        with pytest.raises(InvalidStateError):
            await engine.rounds.resolve_round(duel.id, resolution.round_id)

    async def test_deleted_wizard_is_a_data_integrity_error(self, engine, open_duel, wizards):
        duel = await open_duel()
        await engine.wizards.delete_wizard(wizards[1].id, "bob")
        current = await engine.rounds.get_current_round(duel.id)

        with pytest.raises(DataIntegrityError):
            await engine.rounds.resolve_round(duel.id, current.id)

    async def test_stalled_rounds_listed_after_timeout(self, engine, open_duel):
        duel = await open_duel()
        current = await engine.rounds.get_current_round(duel.id)

        assert await engine.rounds.list_stalled_rounds(utc_now() - timedelta(minutes=5)) == []
        stalled = await engine.rounds.list_stalled_rounds(utc_now() + timedelta(seconds=1))
        assert stalled == [(duel.id, current.id)]


class TestCounters:

    async def test_multiplayer_result_updates_wins_and_losses(self, engine, generator, open_duel, cast_both, wizards):
        duel = await open_duel(round_budget=1)
        generator.push(scripted_round([12, 4], [-5, -5]))
        await cast_both(duel.id)

        merlin = await engine.wizards.get_wizard(wizards[0].id)
        morgana = await engine.wizards.get_wizard(wizards[1].id)
        assert (merlin.wins, merlin.losses) == (1, 0)
        assert (morgana.wins, morgana.losses) == (0, 1)
        assert merlin.campaign_wins == 0

        stats = await engine.wizards.get_player_duel_stats("alice")
        assert stats['wins'] == 1

    async def test_draw_leaves_counters_alone(self, engine, generator, open_duel, cast_both, wizards):
        duel = await open_duel(round_budget=1)
        generator.push(scripted_round([8, 8], [-5, -5]))
        resolution = (await cast_both(duel.id)).resolution

        assert sorted(resolution.winners) == sorted(w.id for w in wizards)
        assert resolution.losers == []
        for wizard in wizards:
            refreshed = await engine.wizards.get_wizard(wizard.id)
            assert (refreshed.wins, refreshed.losses) == (0, 0)

    async def test_draw_counts_as_draw_in_player_stats(self, engine, generator, open_duel, cast_both):
        duel = await open_duel(round_budget=1)
        generator.push(scripted_round([8, 8], [-5, -5]))
        await cast_both(duel.id)

        for user_id in ("alice", "bob"):
            stats = await engine.wizards.get_player_duel_stats(user_id)
            assert (stats['wins'], stats['losses'], stats['draws']) == (0, 0, 1)
