"""
Engine-wide constants for the Arena Duel Engine.

This module contains the magic numbers shared by the round processor,
lobby, campaign adapter and credit gate.
"""

class DuelConstants:
    """Constants governing duel state and bookkeeping."""
    
    # Every wizard enters a duel at full vitality
    STARTING_VITALITY = 100
    MIN_VITALITY = 0
    MAX_VITALITY = 100
    
    # Round numbering: 0 is the narrative introduction
    INTRODUCTION_ROUND = 0
    FIRST_ROUND = 1
    
    # Round budget sentinel for "fight to incapacitation"
    TO_THE_DEATH = "TO_THE_DEATH"
    
    # Minimum distinct wizards for a duel to start or resolve
    MIN_DISTINCT_WIZARDS = 2
    
    # Exactly this many distinct players start a waiting duel
    PLAYERS_TO_START = 2

class OutcomeConstants:
    """Bounds applied to every round outcome, AI-produced or not."""
    
    MIN_POINTS = 0
    MAX_POINTS = 20
    
    MIN_HEALTH_CHANGE = -50
    MAX_HEALTH_CHANGE = 50
    
    # d20 luck rolls
    MIN_LUCK = 1
    MAX_LUCK = 20

class ShortcodeConstants:
    """Constants for shareable duel codes."""
    
    ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    LENGTH = 6
    MAX_ATTEMPTS = 10

class CampaignConstants:
    """Constants for single-player campaign battles."""
    
    ROSTER_SIZE = 10
    
    # Campaign battles are always a fixed five rounds
    BATTLE_ROUND_BUDGET = 5
    
    # Scripted opponents are seated under this system user
    SYSTEM_USER_ID = "campaign"
    
    # Luck scoring (effective luck, not the per-round roll)
    BASE_LUCK = 10
    RELIC_LUCK_BONUS = 1

class CreditConstants:
    """Constants for the per-duel image credit."""
    
    CREDITS_PER_DUEL = 1
    TEXT_ONLY_INSUFFICIENT_CREDITS = "insufficient_credits"
