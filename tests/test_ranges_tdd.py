from __future__ import annotations

import pytest
from hypothesis import given, strategies as st

from bingo_hall.core.ranges import letter_for, partition_range
from bingo_hall.errors import InvalidConfiguration


def test_standard_75_bands():
    bands = partition_range(75)
    assert [(b.letter, b.min, b.max) for b in bands] == [
        ("B", 1, 15),
        ("I", 16, 30),
        ("N", 31, 45),
        ("G", 46, 60),
        ("O", 61, 75),
    ]


def test_remainder_goes_to_o():
    bands = partition_range(77)
    assert [b.size for b in bands] == [15, 15, 15, 15, 17]
    assert bands[-1].min == 61 and bands[-1].max == 77


def test_small_range_leaves_lower_bands_empty():
    bands = partition_range(3)
    assert [b.size for b in bands[:4]] == [0, 0, 0, 0]
    assert (bands[4].min, bands[4].max) == (1, 3)


@given(n=st.integers(min_value=1, max_value=500))
def test_bands_are_contiguous_and_cover_the_range(n):
    bands = partition_range(n)
    assert len(bands) == 5
    assert bands[0].min == 1
    assert bands[-1].max == n
    for prev, nxt in zip(bands, bands[1:]):
        assert nxt.min == prev.max + 1
    assert sum(b.size for b in bands) == n


@pytest.mark.parametrize("n", [0, -5])
def test_non_positive_range_rejected(n):
    with pytest.raises(InvalidConfiguration):
        partition_range(n)


def test_invalid_range_is_also_a_value_error():
    with pytest.raises(ValueError):
        partition_range(0)


def test_letter_lookup():
    assert letter_for(1, 75) == "B"
    assert letter_for(31, 75) == "N"
    assert letter_for(75, 75) == "O"
    assert letter_for(90, 90) == "O"
    with pytest.raises(InvalidConfiguration):
        letter_for(76, 75)
