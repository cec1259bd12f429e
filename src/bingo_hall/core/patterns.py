"""Winning pattern reference data."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml

from ..errors import InvalidConfiguration, InvalidPattern
from .cards import GRID_SIZE

Mask = Tuple[Tuple[bool, ...], ...]
Position = Tuple[int, int]

KIND_MASK = "mask"
KIND_LINES = "lines"
MAX_LINES = 2 * GRID_SIZE + 2

_ANY_LINES_RE = re.compile(r"^any\s+(\d+)\s+lines?$", re.IGNORECASE)


def normalize_mask(raw: Sequence[Sequence[Any]]) -> Mask:
    """Coerce a nested sequence into a 5x5 boolean mask.

    Accepts booleans and 0/1 integers. Anything else, or any other shape,
    is rejected; cells are never padded or truncated.
    """
    if isinstance(raw, (str, bytes)) or len(raw) != GRID_SIZE:
        raise InvalidPattern(f"pattern mask must have {GRID_SIZE} rows")
    rows: List[Tuple[bool, ...]] = []
    for r, row in enumerate(raw):
        if isinstance(row, (str, bytes)) or len(row) != GRID_SIZE:
            raise InvalidPattern(f"pattern mask row {r} must have {GRID_SIZE} cells")
        cells: List[bool] = []
        for c, cell in enumerate(row):
            if isinstance(cell, bool):
                cells.append(cell)
            elif isinstance(cell, int) and cell in (0, 1):
                cells.append(bool(cell))
            else:
                raise InvalidPattern(f"pattern mask cell ({r},{c}) is not boolean: {cell!r}")
        rows.append(tuple(cells))
    return tuple(rows)


def require_cells(mask: Mask, name: str = "pattern") -> Mask:
    if not any(any(row) for row in mask):
        raise InvalidPattern(f"{name} mask selects no cells")
    return mask


def mask_from_cells(cells: Iterable[Sequence[int]]) -> Mask:
    grid = [[False] * GRID_SIZE for _ in range(GRID_SIZE)]
    for cell in cells:
        if len(cell) != 2:
            raise InvalidConfiguration(f"pattern cell must be [row, col], got {cell!r}")
        r, c = int(cell[0]), int(cell[1])
        if not (0 <= r < GRID_SIZE and 0 <= c < GRID_SIZE):
            raise InvalidConfiguration(f"pattern cell ({r},{c}) is outside the 5x5 card")
        grid[r][c] = True
    return tuple(tuple(row) for row in grid)


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")


@dataclass(frozen=True)
class Pattern:
    id: str
    name: str
    kind: str
    mask: Optional[Mask] = None
    lines_required: int = 0
    description: str = ""
    is_default: bool = False

    @classmethod
    def from_mask(
        cls,
        name: str,
        mask: Sequence[Sequence[Any]],
        *,
        pattern_id: Optional[str] = None,
        description: str = "",
        is_default: bool = False,
    ) -> "Pattern":
        return cls(
            id=pattern_id or _slug(name),
            name=name,
            kind=KIND_MASK,
            mask=require_cells(normalize_mask(mask), name),
            description=description,
            is_default=is_default,
        )

    @classmethod
    def any_lines(
        cls,
        k: int,
        *,
        pattern_id: Optional[str] = None,
        description: str = "",
        is_default: bool = False,
    ) -> "Pattern":
        if not 1 <= k <= MAX_LINES:
            raise InvalidPattern(f"line count must be in 1..{MAX_LINES}, got {k}")
        name = f"Any {k} Line" if k == 1 else f"Any {k} Lines"
        return cls(
            id=pattern_id or _slug(name),
            name=name,
            kind=KIND_LINES,
            lines_required=k,
            description=description,
            is_default=is_default,
        )

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Pattern":
        """Build a pattern from a stored record.

        Records carry ``name`` plus either ``pattern`` (5x5 mask) or ``cells``
        (list of [row, col]). Names like "Any 2 Lines" select the line rule;
        their stored mask is ignored.
        """
        name = str(record.get("name") or "").strip()
        if not name:
            raise InvalidConfiguration("pattern record needs a name")
        pattern_id = record.get("id")
        pattern_id = str(pattern_id) if pattern_id is not None else None
        description = str(record.get("description") or "")
        is_default = bool(record.get("is_default", False))

        m = _ANY_LINES_RE.match(name)
        if m:
            return cls.any_lines(
                int(m.group(1)),
                pattern_id=pattern_id,
                description=description,
                is_default=is_default,
            )
        if "cells" in record:
            mask = mask_from_cells(record["cells"])
        elif "pattern" in record:
            mask = normalize_mask(record["pattern"])
        else:
            raise InvalidConfiguration(f"pattern '{name}' has neither a mask nor cells")
        return cls(
            id=pattern_id or _slug(name),
            name=name,
            kind=KIND_MASK,
            mask=require_cells(mask, name),
            description=description,
            is_default=is_default,
        )

    def required_cells(self) -> List[Position]:
        if self.mask is None:
            return []
        return [
            (r, c)
            for r in range(GRID_SIZE)
            for c in range(GRID_SIZE)
            if self.mask[r][c]
        ]

    def to_record(self) -> Dict[str, Any]:
        blank = [[False] * GRID_SIZE for _ in range(GRID_SIZE)]
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "pattern": [list(row) for row in self.mask] if self.mask else blank,
            "is_default": self.is_default,
        }


_T, _F = True, False

DEFAULT_PATTERNS: Tuple[Pattern, ...] = (
    Pattern.any_lines(
        1, description="Complete any horizontal, vertical, or diagonal line", is_default=True
    ),
    Pattern.any_lines(2, description="Complete any two lines", is_default=True),
    Pattern.from_mask(
        "Full House",
        [
            [_T, _T, _T, _T, _T],
            [_T, _T, _T, _T, _T],
            [_T, _T, _F, _T, _T],
            [_T, _T, _T, _T, _T],
            [_T, _T, _T, _T, _T],
        ],
        description="Mark all numbers on the card",
        is_default=True,
    ),
    Pattern.from_mask(
        "Four Corners",
        [
            [_T, _F, _F, _F, _T],
            [_F, _F, _F, _F, _F],
            [_F, _F, _F, _F, _F],
            [_F, _F, _F, _F, _F],
            [_T, _F, _F, _F, _T],
        ],
        description="Mark all four corner numbers",
        is_default=True,
    ),
    Pattern.from_mask(
        "Cross Pattern",
        [
            [_F, _F, _T, _F, _F],
            [_F, _F, _T, _F, _F],
            [_T, _T, _T, _T, _T],
            [_F, _F, _T, _F, _F],
            [_F, _F, _T, _F, _F],
        ],
        description="Complete a cross shape",
        is_default=True,
    ),
)


class PatternCatalog:
    """Patterns addressable by id or (case-insensitive) name."""

    def __init__(self, patterns: Iterable[Pattern] = DEFAULT_PATTERNS):
        self._by_id: Dict[str, Pattern] = {}
        for pattern in patterns:
            self.register(pattern)

    def register(self, pattern: Pattern) -> Pattern:
        self._by_id[pattern.id] = pattern
        return pattern

    def __iter__(self) -> Iterator[Pattern]:
        # defaults first, like the host's pattern selector
        return iter(sorted(self._by_id.values(), key=lambda p: not p.is_default))

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.find(key) is not None

    def find(self, key: str) -> Optional[Pattern]:
        if key in self._by_id:
            return self._by_id[key]
        folded = key.strip().lower()
        for pattern in self._by_id.values():
            if pattern.name.lower() == folded:
                return pattern
        return None

    def get(self, key: str) -> Pattern:
        pattern = self.find(key)
        if pattern is None:
            raise InvalidConfiguration(f"Unknown pattern: {key}")
        return pattern

    def resolve(self, keys: Iterable[str]) -> List[Pattern]:
        return [self.get(k) for k in keys]

    def load_file(self, path: Path) -> List[Pattern]:
        """Register patterns from a YAML or JSON list of pattern records."""
        if not path.exists():
            raise InvalidConfiguration(f"Pattern file not found: {path}")
        suffix = path.suffix.lower()
        if suffix not in (".yaml", ".yml", ".json"):
            raise InvalidConfiguration(f"Unsupported pattern file extension: {suffix}")
        try:
            text = path.read_text(encoding="utf-8")
            if suffix == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text) or []
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise InvalidConfiguration(f"Cannot read pattern file {path}: {exc}") from exc
        if isinstance(data, Mapping):
            data = data.get("patterns", [])
        if not isinstance(data, list) or not all(isinstance(rec, Mapping) for rec in data):
            raise InvalidConfiguration("pattern file must hold a list of pattern records")
        return [self.register(Pattern.from_record(rec)) for rec in data]
