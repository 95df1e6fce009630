"""
Context handed to the outcome generator, and the prompt text built from it.

The round processor snapshots everything the generator needs while it holds
the duel transaction, then releases it; the generator only ever sees these
immutable snapshots.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from arena.utils.duel_rules import RoundBudget, describe_round_budget

# Only the most recent rounds are summarized for the generator
PREVIOUS_ROUNDS_IN_PROMPT = 3


@dataclass(frozen=True)
class WizardSnapshot:
    wizard_id: int
    name: str
    description: str
    seat: int
    score: int = 0
    vitality: int = 100
    luck_roll: Optional[int] = None


@dataclass(frozen=True)
class RoundSummary:
    round_number: int
    result_summary: str
    points_awarded: Dict[int, int] = field(default_factory=dict)
    health_changes: Dict[int, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RoundContext:
    """Everything known about a round at the moment it is resolved"""
    duel_id: int
    round_number: int
    round_budget: RoundBudget
    wizards: List[WizardSnapshot]
    actions: Dict[int, str]
    previous_rounds: List[RoundSummary] = field(default_factory=list)

    def wizard(self, wizard_id: int) -> Optional[WizardSnapshot]:
        for snapshot in self.wizards:
            if snapshot.wizard_id == wizard_id:
                return snapshot
        return None

    @property
    def acted_wizard_ids(self) -> List[int]:
        return [w.wizard_id for w in self.wizards if w.wizard_id in self.actions]

    @property
    def held_back_wizard_ids(self) -> List[int]:
        return [w.wizard_id for w in self.wizards if w.wizard_id not in self.actions]


@dataclass(frozen=True)
class ConclusionContext:
    duel_id: int
    round_number: int
    wizards: List[WizardSnapshot]
    winners: List[int]
    losers: List[int]
    end_reason: str
    previous_rounds: List[RoundSummary] = field(default_factory=list)

    @property
    def is_draw(self) -> bool:
        return not self.losers


def _wizard_line(snapshot: WizardSnapshot, label: str) -> str:
    line = (
        f"{label}: {snapshot.name} - {snapshot.description}\n"
        f"  Health: {snapshot.vitality}/100, Points: {snapshot.score}"
    )
    if snapshot.luck_roll is not None:
        line += f", Luck roll: {snapshot.luck_roll}/20"
    return line


def _history_lines(previous_rounds: List[RoundSummary]) -> List[str]:
    lines = []
    for summary in previous_rounds[-PREVIOUS_ROUNDS_IN_PROMPT:]:
        lines.append(f"Round {summary.round_number}: {summary.result_summary}")
    return lines


def build_round_prompt(context: RoundContext) -> str:
    """Render a round context as the user prompt for a JSON-mode completion"""
    lines = [
        f"Round {context.round_number} of a magical duel "
        f"({describe_round_budget(context.round_budget)}).",
        "",
    ]
    for index, snapshot in enumerate(context.wizards, start=1):
        lines.append(_wizard_line(snapshot, f"wizard{index}"))
        action = context.actions.get(snapshot.wizard_id)
        if action:
            lines.append(f"  Action: {action}")
        else:
            lines.append("  Action: none (held back this round)")
    history = _history_lines(context.previous_rounds)
    if history:
        lines.append("")
        lines.append("Previous rounds:")
        lines.extend(history)
    lines.extend([
        "",
        "Respond with a JSON object with keys: narration (string), result (one sentence), "
        "illustrationPrompt (string), wizard1 and wizard2 (objects with integer "
        "pointsEarned from 0 to 20 and integer healthChange from -50 to 50).",
    ])
    return "\n".join(lines)


def build_introduction_prompt(wizards: List[WizardSnapshot], round_budget: RoundBudget) -> str:
    lines = [f"Introduce a magical duel ({describe_round_budget(round_budget)}) between:"]
    for index, snapshot in enumerate(wizards, start=1):
        lines.append(f"wizard{index}: {snapshot.name} - {snapshot.description}")
    lines.extend([
        "",
        "Respond with a JSON object with keys: narration (string), result (one sentence), "
        "illustrationPrompt (string).",
    ])
    return "\n".join(lines)


def build_conclusion_prompt(context: ConclusionContext) -> str:
    names = {w.wizard_id: w.name for w in context.wizards}
    winners = ", ".join(names.get(w, f"Wizard {w}") for w in context.winners) or "nobody"
    losers = ", ".join(names.get(w, f"Wizard {w}") for w in context.losers) or "nobody"
    lines = [f"The duel is over after round {context.round_number - 1}."]
    for index, snapshot in enumerate(context.wizards, start=1):
        lines.append(_wizard_line(snapshot, f"wizard{index}"))
    lines.append(f"Victorious: {winners}. Defeated: {losers}.")
    if context.is_draw:
        lines.append("The duel ended in a draw.")
    history = _history_lines(context.previous_rounds)
    if history:
        lines.append("")
        lines.append("How the duel unfolded:")
        lines.extend(history)
    lines.extend([
        "",
        "Respond with a JSON object with keys: narration (string), result (one sentence), "
        "illustrationPrompt (string).",
    ])
    return "\n".join(lines)
