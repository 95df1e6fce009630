"""
Campaign Battle Adapter tests: roster seeding, ladder progression, battles
against scripted opponents and the completion relic.
"""

import random

import pytest

from arena.constants import CampaignConstants
from arena.database.models import CampaignBattleStatus, CampaignDifficulty, DuelStatus
from arena.utils.campaign_roster import scripted_spell
from arena.utils.exceptions import (
    AlreadyDefeatedError, AlreadyProcessedError, DuplicateBattleError,
    InvalidArgumentError, NotFoundError, OutOfOrderError, UnauthorizedError
)
from fakes import scripted_round


@pytest.fixture
async def hero(engine):
    return await engine.wizards.create_wizard("alice", "Merlin", "A bearded sage of the old ways.")


class TestRoster:

    async def test_seeded_roster_has_ten_tiered_opponents(self, engine):
        opponents = await engine.campaign.list_opponents()
        assert [o.opponent_number for o in opponents] == list(range(1, 11))
        assert opponents[0].difficulty == CampaignDifficulty.BEGINNER
        assert opponents[0].luck_modifier == -2
        assert opponents[5].luck_modifier == 0
        assert opponents[9].luck_modifier == 2
        assert opponents[9].wizard.name == "Archmage Eternus"
        assert opponents[9].wizard.owner_id == CampaignConstants.SYSTEM_USER_ID

    async def test_seeding_is_idempotent(self, engine):
        assert await engine.campaign.seed_opponents() == []
        assert len(await engine.campaign.list_opponents()) == 10

    async def test_register_rejects_duplicates_and_range(self, engine):
        with pytest.raises(InvalidArgumentError):
            await engine.campaign.register_opponent(3, "Copycat", "", "mimicry", CampaignDifficulty.BEGINNER)
        with pytest.raises(InvalidArgumentError):
            await engine.campaign.register_opponent(11, "Extra", "", "none", CampaignDifficulty.ADVANCED)

    async def test_campaign_luck(self, engine):
        assert await engine.campaign.campaign_luck(1) == 8
        assert await engine.campaign.campaign_luck(10, base_luck=19) == 20
        assert await engine.campaign.campaign_luck(2, base_luck=2) == 1


class TestProgress:

    async def test_initialize_is_idempotent(self, engine, hero):
        first = await engine.campaign.initialize_progress(hero.id, "alice")
        second = await engine.campaign.initialize_progress(hero.id, "alice")
        assert first.id == second.id
        assert second.current_opponent_index == 1
        assert second.defeated_opponents == []

    async def test_initialize_requires_ownership(self, engine, hero):
        with pytest.raises(UnauthorizedError):
            await engine.campaign.initialize_progress(hero.id, "bob")

    async def test_defeat_validation_order(self, engine, hero):
        with pytest.raises(NotFoundError):
            await engine.campaign.defeat_opponent(hero.id, 1)

        await engine.campaign.initialize_progress(hero.id, "alice")
        with pytest.raises(InvalidArgumentError):
            await engine.campaign.defeat_opponent(hero.id, 0)
        with pytest.raises(OutOfOrderError) as exc_info:
            await engine.campaign.defeat_opponent(hero.id, 2)
        assert exc_info.value.current_opponent == 1

        await engine.campaign.defeat_opponent(hero.id, 1)
        with pytest.raises(AlreadyDefeatedError):
            await engine.campaign.defeat_opponent(hero.id, 1)

    async def test_full_ladder_grants_permanent_relic(self, engine, hero):
        await engine.campaign.initialize_progress(hero.id, "alice")
        assert await engine.campaign.effective_luck(hero.id) == 10

        for number in range(1, 10):
            completion = await engine.campaign.defeat_opponent(hero.id, number)
            assert not completion.relic_awarded
        completion = await engine.campaign.defeat_opponent(hero.id, 10)
        assert completion.relic_awarded
        assert completion.campaign_completed

        progress = await engine.campaign.get_progress(hero.id)
        assert progress.has_completion_relic
        assert progress.current_opponent_index == 11
        assert progress.defeated_opponents == list(range(1, 11))
        assert await engine.campaign.effective_luck(hero.id) == 11

        with pytest.raises(AlreadyDefeatedError):
            await engine.campaign.defeat_opponent(hero.id, 10)
        assert (await engine.campaign.get_progress(hero.id)).has_completion_relic


class TestBattles:

    async def test_create_battle_builds_campaign_duel(self, engine, hero):
        result = await engine.campaign.create_campaign_battle(hero.id, 1, "alice")

        duel = await engine.duels.get_duel(result.duel.id)
        assert duel.is_campaign_battle
        assert duel.round_budget == CampaignConstants.BATTLE_ROUND_BUDGET
        assert duel.user_ids == ["alice", CampaignConstants.SYSTEM_USER_ID]
        assert duel.wizard_ids == [hero.id, result.opponent.wizard_id]
        assert result.battle.status == CampaignBattleStatus.IN_PROGRESS

    async def test_duplicate_battle_rejected_until_lost(self, engine, hero):
        first = await engine.campaign.create_campaign_battle(hero.id, 1, "alice")
        with pytest.raises(DuplicateBattleError):
            await engine.campaign.create_campaign_battle(hero.id, 1, "alice")

        await engine.campaign.complete_campaign_battle(first.battle.id, won=False)
        retry = await engine.campaign.create_campaign_battle(hero.id, 1, "alice")
        assert retry.battle.id != first.battle.id

    async def test_out_of_order_battle_rejected(self, engine, hero):
        with pytest.raises(OutOfOrderError):
            await engine.campaign.create_campaign_battle(hero.id, 4, "alice")

    async def test_complete_battle_once(self, engine, hero):
        result = await engine.campaign.create_campaign_battle(hero.id, 1, "alice")
        completion = await engine.campaign.complete_campaign_battle(result.battle.id, won=True)
        assert not completion.relic_awarded
        assert (await engine.campaign.get_progress(hero.id)).current_opponent_index == 2

        with pytest.raises(AlreadyProcessedError):
            await engine.campaign.complete_campaign_battle(result.battle.id, won=True)

    async def test_opponent_acts_automatically(self, engine, generator, hero):
        result = await engine.campaign.start_campaign_battle(hero.id, 1, "alice")
        duel = result.duel
        assert duel.status == DuelStatus.IN_PROGRESS

        refreshed = await engine.duels.get_duel(duel.id)
        assert refreshed.pending_action_wizard_ids == [hero.id]

        current = await engine.rounds.get_current_round(duel.id)
        spell = current.get_action(result.opponent.wizard_id).description
        assert spell == scripted_spell("Pip the Apprentice", result.opponent.spell_style, 1)

        submission = await engine.rounds.submit_action(duel.id, hero.id, "Fireball!", "alice")
        assert submission.round_ready
        assert generator.contexts[0].actions[result.opponent.wizard_id] == spell

    async def test_won_battle_settles_progress_and_campaign_counters(self, engine, generator, hero):
        result = await engine.campaign.start_campaign_battle(hero.id, 1, "alice")
        generator.push(*[scripted_round([15, 2], [0, -5])] * CampaignConstants.BATTLE_ROUND_BUDGET)

        for _ in range(CampaignConstants.BATTLE_ROUND_BUDGET):
            submission = await engine.rounds.submit_action(result.duel.id, hero.id, "Fireball!", "alice")

        assert submission.resolution.duel_completed
        battles = await engine.campaign.list_battles_for_wizard(hero.id)
        assert battles[0].status == CampaignBattleStatus.WON
        assert (await engine.campaign.get_progress(hero.id)).defeated_opponents == [1]

        refreshed = await engine.wizards.get_wizard(hero.id)
        assert (refreshed.campaign_wins, refreshed.wins) == (1, 0)

    async def test_lost_battle_allows_retry(self, engine, generator, hero):
        result = await engine.campaign.start_campaign_battle(hero.id, 1, "alice")
        generator.push(scripted_round([1, 10], [-50, 0]), scripted_round([1, 10], [-50, 0]))

        await engine.rounds.submit_action(result.duel.id, hero.id, "Fizzle", "alice")
        submission = await engine.rounds.submit_action(result.duel.id, hero.id, "Fizzle again", "alice")
        assert submission.resolution.losers == [hero.id]

        battles = await engine.campaign.list_battles_for_wizard(hero.id)
        assert battles[0].status == CampaignBattleStatus.LOST
        assert (await engine.wizards.get_wizard(hero.id)).campaign_losses == 1

        retry = await engine.campaign.create_campaign_battle(hero.id, 1, "alice")
        assert retry.battle.status == CampaignBattleStatus.IN_PROGRESS


class TestRelicLuck:

    async def test_relic_adds_to_round_luck(self, make_engine, generator):
        arena = await make_engine(name="relic.db", generator=generator, rng=random.Random(99))
        hero = await arena.wizards.create_wizard("alice", "Merlin")
        rival = await arena.wizards.create_wizard("bob", "Morgana")
        await arena.campaign.initialize_progress(hero.id, "alice")
        for number in range(1, 11):
            await arena.campaign.defeat_opponent(hero.id, number)

        duel = await arena.duels.create_duel(1, [hero.id], "alice")
        await arena.duels.join_duel(duel.id, [rival.id], "bob")
        await arena.rounds.begin_duel(duel.id)
        await arena.rounds.submit_action(duel.id, hero.id, "Lucky strike", "alice")
        await arena.rounds.submit_action(duel.id, rival.id, "Shield", "bob")

        expected = random.Random(99)
        hero_roll = min(20, expected.randint(1, 20) + 1)
        rival_roll = expected.randint(1, 20)
        luck = {w.wizard_id: w.luck_roll for w in generator.contexts[0].wizards}
        assert luck == {hero.id: hero_roll, rival.id: rival_roll}
