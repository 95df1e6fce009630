"""
Pytest fixtures for the Arena Duel Engine test suite.

Every test gets its own file-backed SQLite database under tmp_path and an
engine wired with a scripted outcome generator, so round results are
chosen by the test rather than by an AI service.
"""

import random

import pytest

from arena.main import ArenaEngine
from fakes import ScriptedGenerator


# =============================================================================
# ENGINE FIXTURES
# =============================================================================


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
async def make_engine(tmp_path):
    """Factory for engines sharing nothing but the test's tmp_path"""
    engines = []

    async def _make(name="arena.db", **kwargs):
        kwargs.setdefault("rng", random.Random(1234))
        arena = ArenaEngine(database_url=f"sqlite:///{tmp_path / name}", **kwargs)
        await arena.initialize()
        engines.append(arena)
        return arena

    yield _make

    for arena in engines:
        await arena.close()


@pytest.fixture
async def engine(make_engine, generator):
    return await make_engine(generator=generator)


# =============================================================================
# DUEL FIXTURES
# =============================================================================


@pytest.fixture
async def wizards(engine):
    """One wizard each for alice and bob"""
    merlin = await engine.wizards.create_wizard("alice", "Merlin", "A bearded sage of the old ways. Loves owls.")
    morgana = await engine.wizards.create_wizard("bob", "Morgana", "A sorceress of shadow and storm.")
    return merlin, morgana


@pytest.fixture
def open_duel(engine, wizards):
    """Async factory: a two-player duel, introduced and in progress"""
    async def _open(round_budget=3):
        merlin, morgana = wizards
        duel = await engine.duels.create_duel(round_budget, [merlin.id], "alice")
        await engine.duels.join_duel(duel.id, [morgana.id], "bob")
        return await engine.rounds.begin_duel(duel.id)
    return _open


@pytest.fixture
def cast_both(engine, wizards):
    """Async helper: both wizards act; returns the submission that resolved the round"""
    async def _cast(duel_id, first="Fireball!", second="Ice wall!"):
        merlin, morgana = wizards
        await engine.rounds.submit_action(duel_id, merlin.id, first, "alice")
        return await engine.rounds.submit_action(duel_id, morgana.id, second, "bob")
    return _cast
