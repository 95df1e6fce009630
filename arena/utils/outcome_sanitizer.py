"""
Outcome Sanitizer.

Round outcomes come from an untrusted generator (or from the fallback
template) and are forced into safe ranges before they touch duel state:

- points awarded:  floor, then clamp to [0, 20]
- health change:   floor, then clamp to [-50, 50]
- new vitality:    the delta is further limited so vitality stays in [0, 100]
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from arena.constants import DuelConstants, OutcomeConstants


@dataclass
class GeneratedOutcome:
    """Raw outcome as produced by a generator or the fallback, keyed by wizard id"""
    narrative: str
    result_summary: str = ""
    illustration_prompt: str = ""
    points_awarded: Dict[int, Any] = field(default_factory=dict)
    health_change: Dict[int, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WizardOutcome:
    wizard_id: int
    points_awarded: int
    health_change: int
    new_vitality: int


@dataclass
class SanitizedOutcome:
    narrative: str
    result_summary: str
    illustration_prompt: str
    wizard_outcomes: Dict[int, WizardOutcome] = field(default_factory=dict)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def is_number(value: Any) -> bool:
    """True for finite ints/floats; bools and numeric strings are rejected"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _floor_or_zero(value: Any) -> int:
    if not is_number(value):
        return 0
    return int(math.floor(value))


def sanitize_points(value: Any) -> int:
    return clamp(_floor_or_zero(value), OutcomeConstants.MIN_POINTS, OutcomeConstants.MAX_POINTS)


def sanitize_health_change(value: Any) -> int:
    return clamp(
        _floor_or_zero(value),
        OutcomeConstants.MIN_HEALTH_CHANGE,
        OutcomeConstants.MAX_HEALTH_CHANGE
    )


def bound_health_change(current_vitality: int, delta: int) -> int:
    """Limit delta so that current_vitality + delta stays within [0, 100]"""
    current = clamp(current_vitality, DuelConstants.MIN_VITALITY, DuelConstants.MAX_VITALITY)
    return clamp(
        delta,
        DuelConstants.MIN_VITALITY - current,
        DuelConstants.MAX_VITALITY - current
    )


def validate_outcome_structure(outcome: Any, wizard_ids: Iterable[int]) -> Optional[str]:
    """
    Check that an outcome is structurally usable.

    Returns a description of the first problem found, or None if the outcome
    can be sanitized as-is. A structurally invalid outcome is replaced by the
    fallback rather than patched.
    """
    if not isinstance(outcome, GeneratedOutcome):
        return f"unexpected outcome type {type(outcome).__name__}"
    if not isinstance(outcome.narrative, str) or not outcome.narrative.strip():
        return "missing narration"
    if not isinstance(outcome.points_awarded, dict) or not isinstance(outcome.health_change, dict):
        return "missing per-wizard results"
    for wizard_id in wizard_ids:
        if not is_number(outcome.points_awarded.get(wizard_id)):
            return f"pointsEarned for wizard {wizard_id} is not a number"
        if not is_number(outcome.health_change.get(wizard_id)):
            return f"healthChange for wizard {wizard_id} is not a number"
    return None


def _summary_from(narrative: str) -> str:
    first = narrative.strip().split(". ")[0].strip()
    return first if first.endswith(".") else f"{first}."


def sanitize_outcome(outcome: GeneratedOutcome, vitality: Dict[int, int]) -> SanitizedOutcome:
    """
    Clamp every numeric field of an outcome against the current vitality map.

    Wizards absent from the outcome get zero points and no health change.
    """
    results = {}
    for wizard_id, current in vitality.items():
        points = sanitize_points(outcome.points_awarded.get(wizard_id))
        delta = bound_health_change(current, sanitize_health_change(outcome.health_change.get(wizard_id)))
        results[wizard_id] = WizardOutcome(
            wizard_id=wizard_id,
            points_awarded=points,
            health_change=delta,
            new_vitality=clamp(current + delta, DuelConstants.MIN_VITALITY, DuelConstants.MAX_VITALITY)
        )

    narrative = (outcome.narrative or "").strip()
    summary = (outcome.result_summary or "").strip() or _summary_from(narrative)
    return SanitizedOutcome(
        narrative=narrative,
        result_summary=summary,
        illustration_prompt=(outcome.illustration_prompt or "").strip(),
        wizard_outcomes=results
    )
