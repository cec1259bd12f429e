"""Audit reports for printed card sets and for the call shuffle."""

from __future__ import annotations

import math
from collections import Counter
from typing import Dict, List, Mapping, Optional, Sequence

from .core.cards import CENTER, FREE_SPACE, GRID_SIZE, band_violations, card_hash, column_duplicates
from .core.ranges import partition_range
from .core.sequence import generate_call_sequence, is_permutation
from .rng import RandomSource, create_rng

Grid = Sequence[Sequence[int]]


def compute_frequencies(cards: Mapping[int, Grid], number_range: int) -> Dict[int, int]:
    counts: Counter[int] = Counter()
    for grid in cards.values():
        for row in grid:
            counts.update(x for x in row if x != FREE_SPACE)
    # every number is listed, unused ones with 0
    for x in range(1, number_range + 1):
        counts.setdefault(x, 0)
    return dict(sorted(counts.items()))


def identical_cards(cards: Mapping[int, Grid]) -> List[List[int]]:
    """Groups of card ids sharing the same grid."""
    by_hash: Dict[str, List[int]] = {}
    for card_id in sorted(cards):
        by_hash.setdefault(card_hash(cards[card_id]), []).append(card_id)
    return [ids for ids in by_hash.values() if len(ids) > 1]


def chi2_wilson_hilferty_pvalue(stat: float, df: int) -> float:
    if df <= 0:
        return 1.0
    # Wilson-Hilferty: the cube root of chi2/df is close to normal
    t = (stat / df) ** (1.0 / 3.0)
    mu = 1.0 - 2.0 / (9.0 * df)
    sigma = math.sqrt(2.0 / (9.0 * df))
    z = (t - mu) / sigma

    def phi(val: float) -> float:
        return 0.5 * (1.0 + math.erf(val / math.sqrt(2.0)))

    p_right = 1.0 - phi(z)
    return max(0.0, min(1.0, p_right))


def uniformity_test(freqs: Mapping[int, int], number_range: int, alpha: float = 0.05) -> Dict[str, object]:
    total = sum(freqs.values())
    if total == 0 or number_range == 0:
        return {"max_minus_min": 0, "chi2": {"stat": 0.0, "df": 0, "p_value": 1.0}, "alpha": alpha}
    expected = total / number_range
    stat = 0.0
    for x in range(1, number_range + 1):
        stat += (freqs.get(x, 0) - expected) ** 2 / expected
    df = max(number_range - 1, 1)
    p = chi2_wilson_hilferty_pvalue(stat, df)
    return {
        "max_minus_min": max(freqs.values()) - min(freqs.values()),
        "chi2": {"stat": round(stat, 6), "df": df, "p_value": round(p, 6)},
        "alpha": alpha,
        "passed": p >= alpha,
        "engine": "wilson_hilferty",
    }


def audit_cards(cards: Mapping[int, Grid], number_range: int) -> Dict[str, object]:
    """Structural checks over a set of generated cards.

    Column duplicates are reported, not treated as failures: the default
    layout is known to repeat a number within a column for some ranges.
    """
    partition_range(number_range)
    band_issues: Dict[str, List[List[int]]] = {}
    center_issues: List[int] = []
    duplicate_issues: Dict[str, List[List[int]]] = {}
    for card_id in sorted(cards):
        grid = cards[card_id]
        if len(grid) != GRID_SIZE or any(len(row) != GRID_SIZE for row in grid):
            center_issues.append(card_id)
            continue
        if grid[CENTER[0]][CENTER[1]] != FREE_SPACE:
            center_issues.append(card_id)
        bad = band_violations(grid, number_range)
        if bad:
            band_issues[str(card_id)] = [list(p) for p in bad]
        dupes = column_duplicates(grid)
        if dupes:
            duplicate_issues[str(card_id)] = [list(p) for p in dupes]

    identical = identical_cards(cards)
    return {
        "number_range": number_range,
        "card_count": len(cards),
        "frequencies": compute_frequencies(cards, number_range),
        "band_violations": band_issues,
        "center_violations": center_issues,
        "column_duplicates": duplicate_issues,
        "identical_cards": identical,
        "ok_bands": not band_issues,
        "ok_center": not center_issues,
        "ok_no_identical_cards": not identical,
    }


def audit_call_sequences(
    number_range: int,
    trials: int,
    rng: Optional[RandomSource] = None,
    *,
    alpha: float = 0.05,
) -> Dict[str, object]:
    """Shuffle ``trials`` times; check each result and the first-call spread."""
    if trials < 1:
        raise ValueError(f"trials must be positive, got {trials}")
    partition_range(number_range)
    rng = rng or create_rng("py_random")
    first_calls: Counter[int] = Counter()
    bad_trials = 0
    for _ in range(trials):
        sequence = generate_call_sequence(number_range, rng)
        if not is_permutation(sequence, number_range):
            bad_trials += 1
        first_calls[sequence[0]] += 1
    freqs = {x: first_calls.get(x, 0) for x in range(1, number_range + 1)}
    return {
        "number_range": number_range,
        "trials": trials,
        "non_permutations": bad_trials,
        "ok_permutations": bad_trials == 0,
        "first_call": uniformity_test(freqs, number_range, alpha),
    }
