"""Tests for atomic file helpers."""

from __future__ import annotations

import json
from pathlib import Path

from forgeloop.utilities.io import (
    append_jsonl,
    read_json,
    read_jsonl,
    read_yaml,
    write_json_atomic,
    write_yaml_atomic,
)


def test_write_json_atomic_creates_parents(tmp_path: Path) -> None:
    target = tmp_path / "a" / "b" / "state.json"
    write_json_atomic(target, {"x": 1})
    assert json.loads(target.read_text(encoding="utf-8")) == {"x": 1}
    assert not target.with_suffix(".json.tmp").exists()


def test_read_json_default_on_missing_or_corrupt(tmp_path: Path) -> None:
    assert read_json(tmp_path / "missing.json", {"d": True}) == {"d": True}
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert read_json(bad, []) == []


def test_yaml_roundtrip(tmp_path: Path) -> None:
    target = tmp_path / "cp.yml"
    write_yaml_atomic(target, {"step_name": "impl", "iteration": 3})
    assert read_yaml(target, None) == {"step_name": "impl", "iteration": 3}


def test_read_jsonl_skips_torn_lines_and_limits(tmp_path: Path) -> None:
    path = tmp_path / "history.jsonl"
    for i in range(5):
        append_jsonl(path, {"i": i})
    with path.open("a", encoding="utf-8") as handle:
        handle.write('{"i": 5, "trunc')
    assert [row["i"] for row in read_jsonl(path)] == [0, 1, 2, 3, 4]
    assert [row["i"] for row in read_jsonl(path, limit=2)] == [3, 4]


def test_read_jsonl_missing_file(tmp_path: Path) -> None:
    assert read_jsonl(tmp_path / "nope.jsonl") == []
