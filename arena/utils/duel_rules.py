"""
Duel rules: round budgets and the termination check.

Pure functions over participant standings so the round processor can apply
them inside its transaction and tests can exercise them without a database.

Termination (checked after every resolved round):
- Incapacitation: any wizard at 0 vitality, or fewer than two wizards still
  standing, ends the duel. Survivors win, the fallen lose.
- Round budget: a numeric budget ends the duel once the current round has
  reached it. Wizards are ranked by score, then vitality; everyone tied at
  the top wins.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from arena.constants import DuelConstants
from arena.utils.exceptions import InvalidArgumentError

RoundBudget = Optional[int]

END_BY_INCAPACITATION = "incapacitation"
END_BY_ROUND_BUDGET = "round_budget"


@dataclass(frozen=True)
class Standing:
    """A wizard's position at the end of a round"""
    wizard_id: int
    score: int
    vitality: int

    @property
    def is_alive(self) -> bool:
        return self.vitality > DuelConstants.MIN_VITALITY


@dataclass
class DuelEnd:
    """Result of a termination check that ended the duel"""
    reason: str
    winners: List[int] = field(default_factory=list)
    losers: List[int] = field(default_factory=list)

    @property
    def is_draw(self) -> bool:
        return not self.losers


def parse_round_budget(value: Union[int, str, None]) -> RoundBudget:
    """
    Normalize a round budget into its stored form.

    Accepts a positive integer (or digit string) for a fixed number of rounds,
    and None or the TO_THE_DEATH sentinel for a fight to incapacitation,
    which is stored as None.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidArgumentError(f"Invalid round budget: {value!r}")
    if isinstance(value, str):
        cleaned = value.strip()
        if cleaned.upper() == DuelConstants.TO_THE_DEATH:
            return None
        if not cleaned.isdigit():
            raise InvalidArgumentError(f"Invalid round budget: {value!r}")
        value = int(cleaned)
    if not isinstance(value, int) or value <= 0:
        raise InvalidArgumentError(
            f"Invalid round budget: {value!r}",
            "❌ Number of rounds must be a positive number or TO_THE_DEATH."
        )
    return value


def describe_round_budget(budget: RoundBudget) -> str:
    if budget is None:
        return DuelConstants.TO_THE_DEATH
    return f"{budget} rounds"


def rank_by_score(standings: Sequence[Standing]) -> DuelEnd:
    """Everyone tied on (score, vitality) at the top wins; the rest lose"""
    ordered = sorted(standings, key=lambda s: (s.score, s.vitality), reverse=True)
    if not ordered:
        return DuelEnd(reason=END_BY_ROUND_BUDGET)
    top = (ordered[0].score, ordered[0].vitality)
    winners = [s.wizard_id for s in ordered if (s.score, s.vitality) == top]
    losers = [s.wizard_id for s in ordered if (s.score, s.vitality) != top]
    return DuelEnd(reason=END_BY_ROUND_BUDGET, winners=winners, losers=losers)


def evaluate_duel_end(
    standings: Sequence[Standing],
    round_budget: RoundBudget,
    round_number: int
) -> Optional[DuelEnd]:
    """
    Decide whether the duel ends after round_number.

    Returns None when the duel continues.
    """
    alive = [s for s in standings if s.is_alive]
    fallen = [s for s in standings if not s.is_alive]

    if fallen or len(alive) < DuelConstants.MIN_DISTINCT_WIZARDS:
        if not alive:
            # Mutual incapacitation: fall back to the scoreboard
            ranked = rank_by_score(standings)
            return DuelEnd(reason=END_BY_INCAPACITATION, winners=ranked.winners, losers=ranked.losers)
        return DuelEnd(
            reason=END_BY_INCAPACITATION,
            winners=[s.wizard_id for s in alive],
            losers=[s.wizard_id for s in fallen]
        )

    if round_budget is not None and round_number >= round_budget:
        return rank_by_score(standings)

    return None
