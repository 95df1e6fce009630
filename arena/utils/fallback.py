"""
Deterministic fallback narration.

Used whenever the outcome generator fails or returns something unusable, so
a round always completes. Every function here is pure: the same snapshots,
round number and actions always produce the same outcome. Seeds come from
crc32 rather than hash(), which is salted per process.
"""

import zlib
from typing import List, Optional

from arena.utils.outcome_sanitizer import GeneratedOutcome
from arena.utils.prompt_context import ConclusionContext, RoundContext, WizardSnapshot

MAX_DESCRIPTION_CHARS = 80

ACTION_TEMPLATES = (
    "{name} calls out \"{action}\", the air around them humming with power.",
    "With a sharp gesture, {name} acts: {action}.",
    "{name} steadies their breath and commits: {action}.",
    "Sparks scatter across the arena as {name} moves: {action}.",
)

HELD_BACK_TEMPLATES = (
    "{name} holds back, watching for an opening that never quite comes.",
    "{name} hesitates, gathering strength instead of casting.",
    "{name} keeps their guard up and lets the moment pass.",
)


def _seed(*parts) -> int:
    return zlib.crc32("|".join(str(p) for p in parts).encode("utf-8"))


def _pick(templates, seed: int) -> str:
    return templates[seed % len(templates)]


def short_description(description: str) -> str:
    """First sentence of a description, truncated for inline use"""
    text = (description or "").strip()
    if not text:
        return "a wizard of few words"
    sentence = text.split(". ")[0].rstrip(".")
    if len(sentence) > MAX_DESCRIPTION_CHARS:
        sentence = sentence[:MAX_DESCRIPTION_CHARS - 3].rstrip() + "..."
    return sentence


def _action_phrase(action: str) -> str:
    phrase = " ".join(action.split()).rstrip(".!?")
    return phrase or "a nameless spell"


def _introduce(wizards: List[WizardSnapshot]) -> str:
    parts = [f"{w.name}, {short_description(w.description)}" for w in wizards]
    if len(parts) == 2:
        return f"{parts[0]}, faces {parts[1]}."
    return "Facing one another: " + "; ".join(parts) + "."


def fallback_round_outcome(context: RoundContext) -> GeneratedOutcome:
    """
    Build a complete round outcome without any AI involvement.

    Acting wizards earn 2-7 points and a health swing of -10..+10 derived
    from their action text; wizards who held back earn nothing and lose up
    to 5 health. A round with no actions at all is narrated as mutual
    hesitation.
    """
    sentences = [f"Round {context.round_number}: {_introduce(context.wizards)}"]
    points = {}
    health = {}

    if not context.actions:
        sentences.append(
            "Neither wizard commits to a spell; both circle warily, "
            "hesitating as the arena crackles with unspent magic."
        )

    for snapshot in context.wizards:
        action = context.actions.get(snapshot.wizard_id)
        seed = _seed(context.round_number, snapshot.name, action or "")
        if action:
            template = _pick(ACTION_TEMPLATES, seed)
            sentences.append(template.format(name=snapshot.name, action=_action_phrase(action)))
            points[snapshot.wizard_id] = 2 + seed % 6
            health[snapshot.wizard_id] = (seed // 7) % 21 - 10
        else:
            if context.actions:
                sentences.append(_pick(HELD_BACK_TEMPLATES, seed).format(name=snapshot.name))
            points[snapshot.wizard_id] = 0
            health[snapshot.wizard_id] = -(seed % 6)

    leader = _round_leader(context.wizards, points)
    result = (
        f"{leader.name} edges ahead in round {context.round_number}."
        if leader else f"Round {context.round_number} ends without a clear advantage."
    )
    names = " and ".join(w.name for w in context.wizards)
    return GeneratedOutcome(
        narrative=" ".join(sentences),
        result_summary=result,
        illustration_prompt=f"A magical duel between {names}, round {context.round_number}, fantasy art",
        points_awarded=points,
        health_change=health
    )


def _round_leader(wizards: List[WizardSnapshot], points) -> Optional[WizardSnapshot]:
    best = max((points.get(w.wizard_id, 0) for w in wizards), default=0)
    leaders = [w for w in wizards if points.get(w.wizard_id, 0) == best]
    if best == 0 or len(leaders) != 1:
        return None
    return leaders[0]


def fallback_introduction(wizards: List[WizardSnapshot]) -> GeneratedOutcome:
    names = " and ".join(w.name for w in wizards)
    narrative = (
        f"The arena falls silent. {_introduce(wizards)} "
        f"Spectators lean forward as {names} take their places and the first sparks of magic gather."
    )
    return GeneratedOutcome(
        narrative=narrative,
        result_summary=f"{names} enter the arena.",
        illustration_prompt=f"Two wizards, {names}, facing each other in a magical arena, fantasy art"
    )


def fallback_conclusion(context: ConclusionContext) -> GeneratedOutcome:
    names = {w.wizard_id: w.name for w in context.wizards}
    winners = [names.get(w, f"Wizard {w}") for w in context.winners]
    losers = [names.get(w, f"Wizard {w}") for w in context.losers]

    if context.is_draw:
        everyone = " and ".join(winners)
        narrative = (
            f"The final spell fades and neither side can claim the arena. "
            f"{everyone} stand evenly matched, and the duel ends in a draw."
        )
        result = "The duel ends in a draw."
    else:
        victor = " and ".join(winners) or "No one"
        defeated = " and ".join(losers)
        narrative = (
            f"The last echoes of magic settle over the arena. {victor} stands victorious "
            f"while {defeated} yields, spent and outmatched."
        )
        result = f"{victor} wins the duel."

    return GeneratedOutcome(
        narrative=narrative,
        result_summary=result,
        illustration_prompt=f"{' and '.join(winners) or 'A wizard'} triumphant in a magical arena, fantasy art"
    )
