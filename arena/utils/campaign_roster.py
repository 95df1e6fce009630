"""
Campaign roster and luck helpers.

The campaign is a fixed ladder of ten scripted opponents in three tiers:
- BEGINNER (1-3):      luck modifier -2
- INTERMEDIATE (4-7):  luck modifier  0
- ADVANCED (8-10):     luck modifier +2
"""

import zlib
from dataclasses import dataclass, field
from typing import List

from arena.constants import CampaignConstants, OutcomeConstants
from arena.database.models import CampaignDifficulty

DIFFICULTY_LUCK_MODIFIERS = {
    CampaignDifficulty.BEGINNER: -2,
    CampaignDifficulty.INTERMEDIATE: 0,
    CampaignDifficulty.ADVANCED: 2,
}


@dataclass(frozen=True)
class CampaignOpponentProfile:
    opponent_number: int
    name: str
    description: str
    spell_style: str
    difficulty: CampaignDifficulty
    personality_traits: List[str] = field(default_factory=list)

    @property
    def luck_modifier(self) -> int:
        return DIFFICULTY_LUCK_MODIFIERS[self.difficulty]


CAMPAIGN_ROSTER = (
    CampaignOpponentProfile(
        1, "Pip the Apprentice",
        "A jittery young apprentice still learning which end of the wand to point.",
        "basic elemental magic", CampaignDifficulty.BEGINNER,
        ["nervous", "eager", "inexperienced"]
    ),
    CampaignOpponentProfile(
        2, "Bumbling Boris",
        "A kind-hearted wizard whose spells backfire more often than they land.",
        "unpredictable mishap magic", CampaignDifficulty.BEGINNER,
        ["clumsy", "well-meaning", "determined"]
    ),
    CampaignOpponentProfile(
        3, "Nervous Nellie",
        "An anxious caster who second-guesses every incantation.",
        "defensive protection magic", CampaignDifficulty.BEGINNER,
        ["anxious", "cautious", "hesitant"]
    ),
    CampaignOpponentProfile(
        4, "Steady Sam",
        "A reliable journeyman who trusts in practiced fundamentals.",
        "traditional combat magic", CampaignDifficulty.INTERMEDIATE,
        ["disciplined", "methodical", "calm"]
    ),
    CampaignOpponentProfile(
        5, "Mystic Marina",
        "A sea-born sorceress who bends tides and frost to her will.",
        "water and ice magic", CampaignDifficulty.INTERMEDIATE,
        ["serene", "adaptable", "patient"]
    ),
    CampaignOpponentProfile(
        6, "Firebrand Felix",
        "A hot-tempered pyromancer who never backs down from a challenge.",
        "fire and heat magic", CampaignDifficulty.INTERMEDIATE,
        ["aggressive", "passionate", "reckless"]
    ),
    CampaignOpponentProfile(
        7, "Scholar Sage",
        "A bookish theorist who has read about every spell you will cast.",
        "arcane theory magic", CampaignDifficulty.INTERMEDIATE,
        ["analytical", "curious", "precise"]
    ),
    CampaignOpponentProfile(
        8, "Shadowweaver Vex",
        "A cunning illusionist who fights from the space between shadows.",
        "shadow and illusion magic", CampaignDifficulty.ADVANCED,
        ["cunning", "deceptive", "patient"]
    ),
    CampaignOpponentProfile(
        9, "Stormcaller Zara",
        "A storm-riding battlemage who answers every spell with thunder.",
        "storm and lightning magic", CampaignDifficulty.ADVANCED,
        ["fierce", "commanding", "relentless"]
    ),
    CampaignOpponentProfile(
        10, "Archmage Eternus",
        "An ancient archmage who has not lost a duel in three centuries.",
        "ancient arcane mastery", CampaignDifficulty.ADVANCED,
        ["wise", "ancient", "unshakable"]
    ),
)

SCRIPTED_SPELL_TEMPLATES = (
    "{name} channels {style} into a focused attack",
    "{name} weaves a {style} spell with practiced precision",
    "{name} calls upon {style} to strike at their opponent",
    "{name} conjures a defensive {style} barrier while preparing a counter-attack",
)


def is_valid_opponent_number(opponent_number: int) -> bool:
    return isinstance(opponent_number, int) and 1 <= opponent_number <= CampaignConstants.ROSTER_SIZE


def clamp_luck(value: int) -> int:
    return max(OutcomeConstants.MIN_LUCK, min(OutcomeConstants.MAX_LUCK, value))


def effective_luck(has_completion_relic: bool, base_luck: int = CampaignConstants.BASE_LUCK) -> int:
    """Base luck plus the permanent relic bonus, capped at 20"""
    return clamp_luck(base_luck + (CampaignConstants.RELIC_LUCK_BONUS if has_completion_relic else 0))


def campaign_luck(base_luck: int, luck_modifier: int) -> int:
    return clamp_luck(base_luck + luck_modifier)


def scripted_spell(name: str, spell_style: str, round_number: int) -> str:
    """Deterministic spell for a scripted opponent, varied by round"""
    index = zlib.crc32(f"{name}|{round_number}".encode("utf-8")) % len(SCRIPTED_SPELL_TEMPLATES)
    return SCRIPTED_SPELL_TEMPLATES[index].format(name=name, style=spell_style)
