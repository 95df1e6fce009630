"""
Arena Duel Engine.

Turn-based, AI-narrated wizard duels: lifecycle, round resolution,
matchmaking, campaign progression and the per-duel credit gate.
"""

__version__ = "0.1.0"
