"""Deterministic 5x5 card derivation."""

from __future__ import annotations

import hashlib
import json
from typing import Dict, Iterable, List, Sequence, Tuple

from ..errors import InvalidConfiguration
from ..rng import create_rng, derive_seed
from .ranges import NumberRange, partition_range

GRID_SIZE = 5
CENTER = (2, 2)
FREE_SPACE = 0
CARD_LAYOUTS = ("modulo", "shuffled")

CardGrid = Tuple[Tuple[int, ...], ...]


def _check_card_id(card_id: int) -> None:
    if isinstance(card_id, bool) or not isinstance(card_id, int) or card_id < 1:
        raise InvalidConfiguration(f"card id must be a positive integer, got {card_id!r}")


def _modulo_columns(card_id: int, bands: Sequence[NumberRange]) -> List[List[int]]:
    # Two rows repeat a number when the band size divides their offset gap
    # (5, 10, 15 or 20): rows 0/3 and 1/4 for N=75, rows 0/4 for N=100.
    # Printed cards depend on this placement, see column_duplicates().
    columns: List[List[int]] = []
    for c, band in enumerate(bands):
        columns.append(
            [band.min + ((card_id + r * GRID_SIZE + c) % band.size) for r in range(GRID_SIZE)]
        )
    return columns


def _shuffled_columns(
    card_id: int, bands: Sequence[NumberRange], seed: int, rng_engine: str
) -> List[List[int]]:
    rng = create_rng(rng_engine, derive_seed(seed, card_id, "card_layout"))
    columns: List[List[int]] = []
    for c, band in enumerate(bands):
        needed = GRID_SIZE - 1 if c == CENTER[1] else GRID_SIZE
        if band.size < needed:
            raise InvalidConfiguration(
                f"band {band.letter} holds {band.size} numbers; shuffled layout needs {needed}"
            )
        picked = rng.sample(range(band.min, band.max + 1), needed)
        if c == CENTER[1]:
            picked.insert(CENTER[0], FREE_SPACE)
        columns.append(picked)
    return columns


def generate_card(
    card_id: int,
    number_range: int,
    *,
    layout: str = "modulo",
    seed: int = 0,
    rng_engine: str = "py_random",
) -> CardGrid:
    """Derive the grid of ``card_id`` for numbers 1..``number_range``.

    The result is a pure function of its arguments. ``layout="modulo"`` is
    the hall's historical placement; ``layout="shuffled"`` picks distinct
    numbers per column from an RNG seeded by ``seed`` and the card id.
    """
    _check_card_id(card_id)
    bands = partition_range(number_range)
    empty = [b.letter for b in bands if b.size == 0]
    if empty:
        raise InvalidConfiguration(
            f"number range {number_range} leaves band(s) {', '.join(empty)} empty"
        )

    if layout == "modulo":
        columns = _modulo_columns(card_id, bands)
    elif layout == "shuffled":
        columns = _shuffled_columns(card_id, bands, seed, rng_engine)
    else:
        raise InvalidConfiguration(f"Unknown card layout: {layout}")

    rows: List[Tuple[int, ...]] = []
    for r in range(GRID_SIZE):
        rows.append(
            tuple(
                FREE_SPACE if (r, c) == CENTER else columns[c][r]
                for c in range(GRID_SIZE)
            )
        )
    return tuple(rows)


def generate_cards(
    card_ids: Iterable[int],
    number_range: int,
    *,
    layout: str = "modulo",
    seed: int = 0,
    rng_engine: str = "py_random",
) -> Dict[int, CardGrid]:
    return {
        card_id: generate_card(
            card_id, number_range, layout=layout, seed=seed, rng_engine=rng_engine
        )
        for card_id in card_ids
    }


def validate_grid(grid: Sequence[Sequence[int]]) -> CardGrid:
    """Return ``grid`` as an immutable CardGrid or raise InvalidConfiguration."""
    if len(grid) != GRID_SIZE or any(len(row) != GRID_SIZE for row in grid):
        raise InvalidConfiguration("card grid must be 5x5")
    if grid[CENTER[0]][CENTER[1]] != FREE_SPACE:
        raise InvalidConfiguration("card center must hold the free space (0)")
    return tuple(tuple(int(x) for x in row) for row in grid)


def card_numbers(grid: Sequence[Sequence[int]]) -> List[int]:
    """Numbers printed on the card in row-major order, free space excluded."""
    return [
        x
        for r, row in enumerate(grid)
        for c, x in enumerate(row)
        if (r, c) != CENTER
    ]


def column_duplicates(grid: Sequence[Sequence[int]]) -> List[Tuple[int, int]]:
    """(column, number) pairs that appear more than once in the same column."""
    dupes: List[Tuple[int, int]] = []
    for c in range(GRID_SIZE):
        seen = set()
        for r in range(GRID_SIZE):
            if (r, c) == CENTER:
                continue
            x = grid[r][c]
            if x in seen and (c, x) not in dupes:
                dupes.append((c, x))
            seen.add(x)
    return dupes


def card_hash(grid: Sequence[Sequence[int]]) -> str:
    payload = json.dumps([list(row) for row in grid], ensure_ascii=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


def cards_hash(grids: Iterable[Sequence[Sequence[int]]]) -> str:
    hashes = [card_hash(g) for g in grids]
    payload = json.dumps(hashes, ensure_ascii=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


def band_violations(
    grid: Sequence[Sequence[int]], number_range: int
) -> List[Tuple[int, int]]:
    """Positions whose number falls outside the column band."""
    bands = partition_range(number_range)
    return [
        (r, c)
        for r in range(GRID_SIZE)
        for c in range(GRID_SIZE)
        if (r, c) != CENTER and grid[r][c] not in bands[c]
    ]

