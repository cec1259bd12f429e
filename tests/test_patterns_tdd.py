from __future__ import annotations

import json
from pathlib import Path

import pytest

from bingo_hall.core.patterns import (
    DEFAULT_PATTERNS,
    KIND_LINES,
    KIND_MASK,
    Pattern,
    PatternCatalog,
    normalize_mask,
)
from bingo_hall.errors import InvalidConfiguration, InvalidPattern

EMPTY = [[0] * 5 for _ in range(5)]


def test_default_catalog():
    assert [p.id for p in DEFAULT_PATTERNS] == [
        "any-1-line",
        "any-2-lines",
        "full-house",
        "four-corners",
        "cross-pattern",
    ]
    full = PatternCatalog().get("full-house")
    assert full.kind == KIND_MASK
    assert len(full.required_cells()) == 24
    assert (2, 2) not in full.required_cells()


def test_lookup_by_name_is_case_insensitive():
    catalog = PatternCatalog()
    assert catalog.get("four corners").id == "four-corners"
    assert "Cross Pattern" in catalog
    assert "Blackout" not in catalog
    with pytest.raises(InvalidConfiguration):
        catalog.get("Blackout")


@pytest.mark.parametrize(
    "mask",
    [
        EMPTY[:4],
        [row[:4] for row in EMPTY],
        [[2, 0, 0, 0, 0]] + EMPTY[1:],
        [["x", 0, 0, 0, 0]] + EMPTY[1:],
        "not a mask",
    ],
)
def test_malformed_masks_rejected(mask):
    with pytest.raises(InvalidPattern):
        normalize_mask(mask)


def test_mask_with_no_cells_rejected():
    with pytest.raises(InvalidPattern):
        Pattern.from_mask("Nothing", EMPTY)


def test_line_count_bounds():
    assert Pattern.any_lines(12).lines_required == 12
    with pytest.raises(InvalidPattern):
        Pattern.any_lines(0)
    with pytest.raises(InvalidPattern):
        Pattern.any_lines(13)


def test_record_with_cells():
    pattern = Pattern.from_record({"name": "Top Row", "cells": [[0, c] for c in range(5)]})
    assert pattern.id == "top-row"
    assert pattern.required_cells() == [(0, c) for c in range(5)]


def test_record_cell_out_of_range():
    with pytest.raises(InvalidConfiguration):
        Pattern.from_record({"name": "Bad", "cells": [[0, 5]]})


def test_record_named_any_lines_uses_line_rule():
    pattern = Pattern.from_record({"name": "Any 3 Lines", "pattern": EMPTY})
    assert pattern.kind == KIND_LINES
    assert pattern.lines_required == 3


def test_record_round_trip_keeps_mask():
    corners = PatternCatalog().get("four-corners")
    again = Pattern.from_record(corners.to_record())
    assert again == corners


def test_load_yaml_file(tmp_path: Path):
    path = tmp_path / "patterns.yaml"
    path.write_text(
        "patterns:\n"
        "  - name: Letter T\n"
        "    cells: [[0,0],[0,1],[0,2],[0,3],[0,4],[1,2],[2,2],[3,2],[4,2]]\n"
        "  - name: Any 4 Lines\n",
        encoding="utf-8",
    )
    catalog = PatternCatalog()
    loaded = catalog.load_file(path)
    assert [p.id for p in loaded] == ["letter-t", "any-4-lines"]
    assert len(catalog) == 7
    # defaults keep their place ahead of custom patterns
    assert [p.id for p in catalog][:5] == [p.id for p in DEFAULT_PATTERNS]


def test_load_json_file(tmp_path: Path):
    path = tmp_path / "patterns.json"
    path.write_text(
        json.dumps([{"id": "x", "name": "Diagonal", "cells": [[i, i] for i in range(5)]}]),
        encoding="utf-8",
    )
    catalog = PatternCatalog([])
    catalog.load_file(path)
    assert catalog.get("x").name == "Diagonal"


def test_load_file_errors(tmp_path: Path):
    catalog = PatternCatalog()
    with pytest.raises(InvalidConfiguration, match="not found"):
        catalog.load_file(tmp_path / "missing.yaml")
    text_file = tmp_path / "patterns.txt"
    text_file.write_text("[]", encoding="utf-8")
    with pytest.raises(InvalidConfiguration, match="extension"):
        catalog.load_file(text_file)
    bad = tmp_path / "patterns.yaml"
    bad.write_text("just text\n", encoding="utf-8")
    with pytest.raises(InvalidConfiguration):
        catalog.load_file(bad)


def test_load_file_rejects_unparseable_content(tmp_path: Path):
    broken = tmp_path / "patterns.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(InvalidConfiguration, match="Cannot read"):
        PatternCatalog().load_file(broken)
    scalars = tmp_path / "scalars.yaml"
    scalars.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(InvalidConfiguration):
        PatternCatalog().load_file(scalars)
