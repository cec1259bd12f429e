"""Exception hierarchy for the bingo hall core."""

from __future__ import annotations


class BingoHallError(Exception):
    """Base exception for all bingo_hall errors."""


class InvalidConfiguration(BingoHallError, ValueError):
    """Raised for settings the core cannot work with.

    Non-positive number ranges, malformed card grids, pattern cells outside
    the card and unknown pattern ids all end up here.
    """


class InvalidPattern(BingoHallError, ValueError):
    """Raised when a pattern mask does not have the 5x5 card shape."""


class InvalidTransition(BingoHallError, ValueError):
    """Raised when an operator action is not allowed in the current game state."""

    def __init__(self, action: str, state: str):
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} a game in state '{state}'")


class ExhaustedSequence(BingoHallError):
    """Raised by the call cursor once every number has been called."""

    def __init__(self, length: int):
        self.length = length
        super().__init__(f"All {length} numbers have been called")


class PersistenceError(BingoHallError):
    """Raised by game stores when a read or write cannot be completed."""
