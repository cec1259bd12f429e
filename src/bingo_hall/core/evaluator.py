"""Claim validation: does a card satisfy a pattern for the numbers called so far.

Two modes, selected by the pattern kind:

- mask patterns (Full House, Four Corners, Cross, custom): every masked cell
  must be satisfied;
- line patterns ("Any K Lines"): at least K of the 12 rows, columns and
  diagonals must be complete.

A cell is satisfied when it is the free space or its number has been called.
Everything here is a pure function of (grid, called numbers, pattern) and is
safe to run from any number of threads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from ..errors import InvalidPattern
from .cards import CENTER, GRID_SIZE, validate_grid
from .patterns import KIND_LINES, KIND_MASK, Pattern, Position, normalize_mask


@dataclass(frozen=True)
class Line:
    name: str
    positions: Tuple[Position, ...]


def _build_lines() -> Tuple[Line, ...]:
    # Scan order is the tie-break for which lines get reported:
    # rows 0-4, columns 0-4, then the two diagonals.
    lines: List[Line] = []
    for r in range(GRID_SIZE):
        lines.append(Line(f"row-{r}", tuple((r, c) for c in range(GRID_SIZE))))
    for c in range(GRID_SIZE):
        lines.append(Line(f"column-{c}", tuple((r, c) for r in range(GRID_SIZE))))
    lines.append(Line("diagonal-1", tuple((i, i) for i in range(GRID_SIZE))))
    lines.append(Line("diagonal-2", tuple((i, GRID_SIZE - 1 - i) for i in range(GRID_SIZE))))
    return tuple(lines)


LINES: Tuple[Line, ...] = _build_lines()


@dataclass(frozen=True)
class Evaluation:
    won: bool
    matched_positions: FrozenSet[Position]
    pattern_id: str = ""
    pattern_name: str = ""
    completed_lines: Tuple[str, ...] = field(default=())


def _is_satisfied(grid: Sequence[Sequence[int]], pos: Position, called: AbstractSet[int]) -> bool:
    if pos == CENTER:
        return True
    return grid[pos[0]][pos[1]] in called


def _line_complete(
    grid: Sequence[Sequence[int]], line: Line, called: AbstractSet[int]
) -> bool:
    for pos in line.positions:
        if not _is_satisfied(grid, pos, called):
            return False
    return True


def _complete_lines(grid: Sequence[Sequence[int]], called: AbstractSet[int]) -> List[Line]:
    return [line for line in LINES if _line_complete(grid, line, called)]


def completed_lines(grid: Sequence[Sequence[int]], called: Iterable[int]) -> List[str]:
    """Names of every complete line, in scan order."""
    grid = validate_grid(grid)
    return [line.name for line in _complete_lines(grid, frozenset(called))]


def evaluate_mask(
    grid: Sequence[Sequence[int]], called: Iterable[int], mask: Sequence[Sequence[bool]]
) -> Evaluation:
    grid = validate_grid(grid)
    mask = normalize_mask(mask)
    called_set = frozenset(called)

    required = 0
    matched: List[Position] = []
    # Visit every masked cell; the match count must cover the whole mask.
    for r in range(GRID_SIZE):
        for c in range(GRID_SIZE):
            if not mask[r][c]:
                continue
            required += 1
            if _is_satisfied(grid, (r, c), called_set):
                matched.append((r, c))

    if required == 0:
        raise InvalidPattern("mask selects no cells")
    return Evaluation(won=required == len(matched), matched_positions=frozenset(matched))


def evaluate_lines(
    grid: Sequence[Sequence[int]], called: Iterable[int], k: int
) -> Evaluation:
    if k < 1:
        raise InvalidPattern(f"line count must be positive, got {k}")
    grid = validate_grid(grid)
    complete = _complete_lines(grid, frozenset(called))
    won = len(complete) >= k
    matched: FrozenSet[Position] = frozenset()
    if won:
        matched = frozenset(pos for line in complete[:k] for pos in line.positions)
    return Evaluation(
        won=won,
        matched_positions=matched,
        completed_lines=tuple(line.name for line in complete),
    )


def evaluate(
    grid: Sequence[Sequence[int]], called: Iterable[int], pattern: Pattern
) -> Evaluation:
    """Evaluate one card against one pattern."""
    if pattern.kind == KIND_LINES:
        result = evaluate_lines(grid, called, pattern.lines_required)
    elif pattern.kind == KIND_MASK:
        if pattern.mask is None:
            raise InvalidPattern(f"pattern '{pattern.name}' has no mask")
        result = evaluate_mask(grid, called, pattern.mask)
    else:
        raise InvalidPattern(f"Unknown pattern kind: {pattern.kind}")
    return Evaluation(
        won=result.won,
        matched_positions=result.matched_positions,
        pattern_id=pattern.id,
        pattern_name=pattern.name,
        completed_lines=result.completed_lines,
    )


def evaluate_patterns(
    grid: Sequence[Sequence[int]], called: Iterable[int], patterns: Iterable[Pattern]
) -> List[Evaluation]:
    called_set = frozenset(called)
    return [evaluate(grid, called_set, p) for p in patterns]


def first_win(
    grid: Sequence[Sequence[int]], called: Iterable[int], patterns: Iterable[Pattern]
) -> Optional[Evaluation]:
    """First winning evaluation in pattern order, or None."""
    for result in evaluate_patterns(grid, called, patterns):
        if result.won:
            return result
    return None
