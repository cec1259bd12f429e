"""Core bingo rules: number bands, cards, call order, patterns and evaluation.

The caller engine lives in ``bingo_hall.core.engine``; it depends on the
store records and is imported from there directly.
"""

from .cards import generate_card, generate_cards
from .evaluator import Evaluation, evaluate, first_win
from .patterns import DEFAULT_PATTERNS, Pattern, PatternCatalog
from .ranges import NumberRange, letter_for, partition_range
from .sequence import CallCursor, generate_call_sequence

__all__ = [
    "NumberRange",
    "partition_range",
    "letter_for",
    "generate_card",
    "generate_cards",
    "generate_call_sequence",
    "CallCursor",
    "Pattern",
    "PatternCatalog",
    "DEFAULT_PATTERNS",
    "Evaluation",
    "evaluate",
    "first_win",
]
