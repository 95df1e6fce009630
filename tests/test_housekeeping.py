"""
Housekeeping service tests: lobby materialization, ready duels and
stalled-round recovery.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

import arena.services.housekeeping as housekeeping_module
from arena.database.models import DuelStatus, RoundStatus, utc_now
from arena.services.housekeeping import HousekeepingService


@pytest.fixture
def service(engine):
    return HousekeepingService(
        engine.db, engine.duels, engine.rounds, engine.lobby,
        interval_seconds=1, round_timeout_seconds=60
    )


async def test_idle_sweep_does_nothing(service):
    report = await service.run_once()
    assert (report.duels_materialized, report.duels_started, report.rounds_resolved, report.errors) == (0, 0, 0, 0)


async def test_matched_pair_is_materialized_and_started(engine, service, wizards):
    merlin, morgana = wizards
    await engine.lobby.join_lobby("alice", merlin.id, 3, match_immediately=False)
    bob = await engine.lobby.join_lobby("bob", morgana.id, 3, match_immediately=False)
    await engine.lobby.try_matchmaking(bob.entry.id)

    report = await service.run_once()
    assert report.duels_materialized == 1
    assert report.duels_started == 1

    duels = await engine.duels.list_active_duels()
    assert len(duels) == 1
    assert duels[0].status == DuelStatus.IN_PROGRESS
    assert await engine.lobby.list_matched_pairs() == []

    again = await service.run_once()
    assert again.duels_materialized == 0
    assert again.duels_started == 0


async def test_ready_duel_is_begun(engine, service, wizards):
    merlin, morgana = wizards
    duel = await engine.duels.create_duel(3, [merlin.id], "alice")
    lonely = await engine.duels.create_duel(3, [merlin.id], "alice")
    await engine.duels.join_duel(duel.id, [morgana.id], "bob")

    report = await service.run_once()
    assert report.duels_started == 1
    assert (await engine.duels.get_duel(duel.id)).status == DuelStatus.IN_PROGRESS
    assert (await engine.duels.get_duel(lonely.id)).status == DuelStatus.WAITING_FOR_PLAYERS


async def test_stalled_round_is_force_resolved(engine, generator, service, open_duel, wizards, monkeypatch):
    merlin, morgana = wizards
    duel = await open_duel()
    await engine.rounds.submit_action(duel.id, merlin.id, "Fireball!", "alice")

    assert (await service.run_once()).rounds_resolved == 0

    later = utc_now() + timedelta(minutes=5)
    monkeypatch.setattr(housekeeping_module, "utc_now", lambda: later)
    report = await service.run_once()
    assert report.rounds_resolved == 1

    rounds = await engine.rounds.get_rounds(duel.id)
    assert rounds[1].status == RoundStatus.COMPLETED
    assert rounds[2].status == RoundStatus.WAITING_FOR_SPELLS
    assert generator.contexts[0].held_back_wizard_ids == [morgana.id]


async def test_start_and_stop(service):
    assert not service.is_running
    service.start()
    assert service.is_running
    await service.stop()
    assert not service.is_running
    await service.stop()


async def test_execute_with_retry_recovers_from_lock_timeouts(service):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
        return "ok"

    assert await service.execute_with_retry(flaky) == "ok"
    assert len(calls) == 3


async def test_execute_with_retry_gives_up(service):
    async def locked():
        raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

    with pytest.raises(OperationalError):
        await service.execute_with_retry(locked, max_retries=2)
