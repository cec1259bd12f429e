"""Call order generation and the cursor that walks it."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

from ..errors import ExhaustedSequence, InvalidConfiguration
from ..rng import RandomSource, create_rng
from .ranges import partition_range

CallSequence = Tuple[int, ...]


def generate_call_sequence(
    number_range: int, rng: Optional[RandomSource] = None
) -> CallSequence:
    """Uniform random permutation of 1..``number_range`` (Fisher-Yates)."""
    partition_range(number_range)  # validates N
    rng = rng or create_rng("py_random")
    numbers = list(range(1, number_range + 1))
    for i in range(len(numbers) - 1, 0, -1):
        j = rng.randint(0, i)
        numbers[i], numbers[j] = numbers[j], numbers[i]
    return tuple(numbers)


def is_permutation(sequence: Sequence[int], number_range: int) -> bool:
    return len(sequence) == number_range and sorted(sequence) == list(
        range(1, number_range + 1)
    )


def restore_call_sequence(stored: Iterable[int], number_range: int) -> CallSequence:
    """Validate a persisted call order before it is reused after a reload."""
    partition_range(number_range)
    sequence = tuple(int(x) for x in stored)
    if not is_permutation(sequence, number_range):
        raise InvalidConfiguration(
            f"stored call sequence is not a permutation of 1..{number_range}"
        )
    return sequence


class CallCursor:
    """Position inside a call sequence.

    Not thread-safe on its own; the caller engine serializes access.
    """

    def __init__(self, sequence: CallSequence, index: int = 0):
        if not 0 <= index <= len(sequence):
            raise InvalidConfiguration(
                f"call index {index} outside 0..{len(sequence)}"
            )
        self.sequence = sequence
        self.index = index

    @property
    def exhausted(self) -> bool:
        return self.index >= len(self.sequence)

    @property
    def remaining(self) -> int:
        return len(self.sequence) - self.index

    def called(self) -> List[int]:
        return list(self.sequence[: self.index])

    def advance(self) -> Tuple[int, int]:
        """Return (index, number) for the next call and move past it."""
        if self.exhausted:
            raise ExhaustedSequence(len(self.sequence))
        idx = self.index
        self.index += 1
        return idx, self.sequence[idx]

    def rewind(self) -> None:
        if self.index == 0:
            raise InvalidConfiguration("nothing to rewind")
        self.index -= 1
