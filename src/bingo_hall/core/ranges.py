"""Letter bands (B/I/N/G/O) over the configured number range."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from ..errors import InvalidConfiguration

LETTERS = ("B", "I", "N", "G", "O")
SUPPORTED_RANGES = (75, 90, 100, 200)


@dataclass(frozen=True)
class NumberRange:
    min: int
    max: int
    letter: str

    @property
    def size(self) -> int:
        return max(0, self.max - self.min + 1)

    def __contains__(self, number: object) -> bool:
        return isinstance(number, int) and self.min <= number <= self.max


def _check_range(number_range: int) -> None:
    if isinstance(number_range, bool) or not isinstance(number_range, int):
        raise InvalidConfiguration(f"number range must be an integer, got {number_range!r}")
    if number_range <= 0:
        raise InvalidConfiguration(f"number range must be positive, got {number_range}")


@lru_cache(maxsize=32)
def partition_range(number_range: int) -> Tuple[NumberRange, ...]:
    """Split [1, N] into five contiguous bands.

    - bands B..G each hold ``N // 5`` numbers
    - O absorbs the remainder, so it is wider when N is not divisible by 5
    - for N < 5 the first four bands are empty (min > max)
    """
    _check_range(number_range)
    band = number_range // 5
    bands = [
        NumberRange(min=k * band + 1, max=(k + 1) * band, letter=LETTERS[k])
        for k in range(4)
    ]
    bands.append(NumberRange(min=4 * band + 1, max=number_range, letter=LETTERS[4]))
    return tuple(bands)


def letter_for(number: int, number_range: int) -> str:
    for band in partition_range(number_range):
        if number in band:
            return band.letter
    raise InvalidConfiguration(f"{number} is outside the range 1..{number_range}")
