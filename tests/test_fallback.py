"""
Tests for the deterministic fallback narration used when the outcome
generator is unavailable.
"""

from arena.utils.duel_rules import END_BY_ROUND_BUDGET
from arena.utils.fallback import fallback_conclusion, fallback_introduction, fallback_round_outcome
from arena.utils.outcome_sanitizer import validate_outcome_structure
from arena.utils.prompt_context import ConclusionContext, RoundContext, WizardSnapshot

WIZARDS = [
    WizardSnapshot(1, "Merlin", "A bearded sage of the old ways. Loves owls.", seat=1),
    WizardSnapshot(2, "Morgana", "A sorceress of shadow and storm.", seat=2),
]


def _context(actions, round_number=2):
    return RoundContext(duel_id=7, round_number=round_number, round_budget=5, wizards=WIZARDS, actions=actions)


def test_round_outcome_is_deterministic():
    context = _context({1: "Summon a storm of owls", 2: "Raise a wall of night"})
    assert fallback_round_outcome(context) == fallback_round_outcome(context)


def test_round_outcome_mentions_both_wizards_and_descriptions():
    outcome = fallback_round_outcome(_context({1: "Summon a storm of owls", 2: "Raise a wall of night"}))
    assert "Merlin" in outcome.narrative
    assert "Morgana" in outcome.narrative
    assert "A bearded sage of the old ways" in outcome.narrative
    assert validate_outcome_structure(outcome, [1, 2]) is None


def test_round_outcome_stays_in_bounds():
    for round_number in range(1, 30):
        outcome = fallback_round_outcome(_context({1: f"Spell {round_number}", 2: "Shield"}, round_number))
        for wizard_id in (1, 2):
            assert 2 <= outcome.points_awarded[wizard_id] <= 7
            assert -10 <= outcome.health_change[wizard_id] <= 10


def test_held_back_wizard_scores_nothing():
    outcome = fallback_round_outcome(_context({1: "Summon a storm of owls"}))
    assert outcome.points_awarded[2] == 0
    assert -5 <= outcome.health_change[2] <= 0
    assert outcome.points_awarded[1] > 0


def test_zero_actions_narrates_hesitation():
    outcome = fallback_round_outcome(_context({}))
    assert "hesitating" in outcome.narrative
    assert outcome.points_awarded == {1: 0, 2: 0}


def test_introduction_names_both_wizards():
    outcome = fallback_introduction(WIZARDS)
    assert "Merlin" in outcome.narrative and "Morgana" in outcome.narrative


def test_conclusion_names_winner_or_draw():
    won = fallback_conclusion(ConclusionContext(7, 4, WIZARDS, winners=[2], losers=[1], end_reason=END_BY_ROUND_BUDGET))
    assert won.result_summary == "Morgana wins the duel."

    draw = fallback_conclusion(ConclusionContext(7, 4, WIZARDS, winners=[1, 2], losers=[], end_reason=END_BY_ROUND_BUDGET))
    assert "draw" in draw.narrative
