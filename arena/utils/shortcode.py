"""
Shareable duel codes.

Six characters from A-Z0-9, drawn with the secrets module. Uniqueness is
checked by the caller against the duels table (plus a unique index).
"""

import secrets
from typing import Optional

from arena.constants import ShortcodeConstants

def generate_shortcode(length: int = ShortcodeConstants.LENGTH) -> str:
    """Generate a random shortcode; collisions are the caller's problem"""
    return ''.join(secrets.choice(ShortcodeConstants.ALPHABET) for _ in range(length))

def normalize_shortcode(code: Optional[str]) -> Optional[str]:
    """
    Upper-case and strip a user-entered code.
    
    Returns None when the result cannot be a valid shortcode, so lookups
    can short-circuit without touching the database.
    """
    if not code:
        return None
    cleaned = code.strip().upper()
    if not is_valid_shortcode(cleaned):
        return None
    return cleaned

def is_valid_shortcode(code: str) -> bool:
    return (
        len(code) == ShortcodeConstants.LENGTH
        and all(char in ShortcodeConstants.ALPHABET for char in code)
    )
