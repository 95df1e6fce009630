"""
Duel Lifecycle Manager tests: creation, joining, cancellation and start.
"""

import asyncio

import pytest

from arena.constants import DuelConstants
from arena.database.models import DuelStatus, RoundStatus
from arena.utils.exceptions import (
    DuplicatePlayerError, InvalidArgumentError, InvalidStateError,
    NotFoundError, UnauthorizedError
)


class TestCreateDuel:

    async def test_create_initializes_participants(self, engine, wizards):
        merlin, _ = wizards
        duel = await engine.duels.create_duel(3, [merlin.id], "alice")

        assert duel.status == DuelStatus.WAITING_FOR_PLAYERS
        assert duel.round_budget == 3
        assert duel.scores == {merlin.id: 0}
        assert duel.vitality == {merlin.id: DuelConstants.STARTING_VITALITY}
        assert duel.pending_action_wizard_ids == [merlin.id]
        assert duel.winners is None

    async def test_to_the_death_is_stored_as_no_budget(self, engine, wizards):
        duel = await engine.duels.create_duel("TO_THE_DEATH", [wizards[0].id], "alice")
        assert duel.round_budget is None
        assert duel.fights_to_the_death

    async def test_empty_wizard_list_rejected(self, engine):
        with pytest.raises(InvalidArgumentError):
            await engine.duels.create_duel(3, [], "alice")

    async def test_foreign_wizard_rejected(self, engine, wizards):
        with pytest.raises(UnauthorizedError):
            await engine.duels.create_duel(3, [wizards[1].id], "alice")

    async def test_unknown_wizard_rejected(self, engine):
        with pytest.raises(NotFoundError):
            await engine.duels.create_duel(3, [9999], "alice")

    async def test_shortcodes_are_unique_and_case_insensitive(self, engine, wizards):
        duels = [await engine.duels.create_duel(3, [wizards[0].id], "alice") for _ in range(15)]
        codes = {duel.shortcode for duel in duels}
        assert len(codes) == 15

        found = await engine.duels.get_duel_by_shortcode(duels[3].shortcode.lower())
        assert found.id == duels[3].id

        with pytest.raises(NotFoundError):
            await engine.duels.get_duel_by_shortcode("nope")


class TestJoinDuel:

    async def test_join_adds_second_player(self, engine, wizards):
        merlin, morgana = wizards
        duel = await engine.duels.create_duel(3, [merlin.id], "alice")
        duel = await engine.duels.join_duel(duel.id, [morgana.id], "bob")

        assert duel.wizard_ids == [merlin.id, morgana.id]
        assert duel.user_ids == ["alice", "bob"]
        assert duel.status == DuelStatus.WAITING_FOR_PLAYERS
        assert await engine.duels.list_ready_duels() == [duel.id]

    async def test_same_user_cannot_join_twice(self, engine, wizards):
        merlin, _ = wizards
        spare = await engine.wizards.create_wizard("alice", "Gandalf")
        duel = await engine.duels.create_duel(3, [merlin.id], "alice")
        with pytest.raises(DuplicatePlayerError):
            await engine.duels.join_duel(duel.id, [spare.id], "alice")

    async def test_join_missing_duel(self, engine, wizards):
        with pytest.raises(NotFoundError):
            await engine.duels.join_duel(424242, [wizards[1].id], "bob")

    async def test_join_in_progress_duel_rejected(self, engine, open_duel):
        duel = await open_duel()
        latecomer = await engine.wizards.create_wizard("carol", "Circe")

        with pytest.raises(InvalidStateError) as exc_info:
            await engine.duels.join_duel(duel.id, [latecomer.id], "carol")
        assert exc_info.value.message == "Duel is not accepting new players"


class TestCancelAndStart:

    async def test_cancel_is_terminal(self, engine, open_duel):
        duel = await open_duel()
        cancelled = await engine.duels.cancel_duel(duel.id, user_id="alice")
        assert cancelled.status == DuelStatus.CANCELLED

        with pytest.raises(InvalidStateError, match="already cancelled"):
            await engine.duels.cancel_duel(duel.id)
        with pytest.raises(InvalidStateError):
            await engine.duels.start_duel_after_introduction(duel.id)

    async def test_outsider_cannot_cancel(self, engine, open_duel):
        duel = await open_duel()
        with pytest.raises(UnauthorizedError):
            await engine.duels.cancel_duel(duel.id, user_id="mallory")

    async def test_start_requires_two_wizards(self, engine, wizards):
        duel = await engine.duels.create_duel(3, [wizards[0].id], "alice")
        with pytest.raises(InvalidStateError):
            await engine.duels.start_duel_after_introduction(duel.id)

    async def test_begin_duel_opens_round_one(self, engine, open_duel):
        duel = await open_duel()
        assert duel.status == DuelStatus.IN_PROGRESS
        assert duel.current_round_number == DuelConstants.FIRST_ROUND
        assert len(duel.pending_action_wizard_ids) == 2

        rounds = await engine.rounds.get_rounds(duel.id)
        assert [r.round_number for r in rounds] == [0, 1]
        assert rounds[0].status == RoundStatus.COMPLETED
        assert "Merlin" in rounds[0].narrative
        assert rounds[1].status == RoundStatus.WAITING_FOR_SPELLS

    async def test_concurrent_starts_only_one_wins(self, engine, wizards):
        merlin, morgana = wizards
        duel = await engine.duels.create_duel(3, [merlin.id], "alice")
        await engine.duels.join_duel(duel.id, [morgana.id], "bob")
        await engine.rounds.create_introduction_round(duel.id)

        results = await asyncio.gather(
            engine.duels.start_duel_after_introduction(duel.id),
            engine.duels.start_duel_after_introduction(duel.id),
            return_exceptions=True
        )
        assert sum(1 for r in results if isinstance(r, InvalidStateError)) == 1
        rounds = await engine.rounds.get_rounds(duel.id)
        assert [r.round_number for r in rounds] == [0, 1]


class TestQueries:

    async def test_list_player_and_active_duels(self, engine, open_duel, wizards):
        active = await open_duel()
        waiting = await engine.duels.create_duel(5, [wizards[0].id], "alice")
        await engine.duels.cancel_duel(waiting.id)

        alice_duels = await engine.duels.list_player_duels("alice")
        assert {d.id for d in alice_duels} == {active.id, waiting.id}

        assert [d.id for d in await engine.duels.list_active_duels()] == [active.id]

        stats = await engine.wizards.get_player_duel_stats("alice")
        assert stats == {'total_duels': 2, 'wins': 0, 'losses': 0, 'draws': 0, 'in_progress': 1, 'cancelled': 1}
