"""Durable file helpers: atomic replace writes and append-only JSONL."""

from __future__ import annotations

import json
import os
from collections import deque
from pathlib import Path
from typing import Any

import yaml


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _replace_atomic(path: Path, payload: str) -> None:
    ensure_parent(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp, path)


def read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return default


def write_json_atomic(path: Path, data: Any) -> None:
    _replace_atomic(path, json.dumps(data, indent=2, sort_keys=False, default=str) + "\n")


def read_yaml(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return default
    return default if data is None else data


def write_yaml_atomic(path: Path, data: Any) -> None:
    _replace_atomic(path, yaml.safe_dump(data, sort_keys=False, default_flow_style=False))


def append_jsonl(path: Path, item: Any) -> None:
    ensure_parent(path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(item, default=str) + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def read_jsonl(path: Path, *, limit: int | None = None) -> list[Any]:
    """Read JSONL entries, keeping only the last ``limit`` when given.

    Torn trailing lines from an interrupted append are skipped.
    """
    if not path.exists():
        return []
    rows: deque[Any] = deque(maxlen=limit if limit and limit > 0 else None)
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return list(rows)
