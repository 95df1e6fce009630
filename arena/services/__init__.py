"""
Services package for the Arena Duel Engine.

External collaborators (outcome generator, illustrator, credit ledger) and
the housekeeping scheduler.
"""

from .base import BaseService
from .credit_ledger import CreditLedger, SqlCreditLedger
from .illustrator import Illustrator, IllustrationError, OpenAIIllustrator
from .outcome_generator import (
    OutcomeGenerator, GenerationResult, FallbackOutcomeGenerator, OpenAIOutcomeGenerator
)

__all__ = [
    'BaseService',
    'CreditLedger', 'SqlCreditLedger',
    'Illustrator', 'IllustrationError', 'OpenAIIllustrator',
    'OutcomeGenerator', 'GenerationResult', 'FallbackOutcomeGenerator', 'OpenAIOutcomeGenerator',
]
