"""
Small file helpers shared by the CLI and the report writers.
"""

from __future__ import annotations

import math
import re
from pathlib import Path
from typing import Any

import yaml


def ensure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def read_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def write_yaml(path: Path, data: Any) -> None:
    ensure_directory(path.parent)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, allow_unicode=True, sort_keys=False)


def write_text(path: Path, content: str) -> None:
    ensure_directory(path.parent)
    path.write_text(content, encoding="utf-8")


def sanitize_filename(value: str, *, fallback: str = "student") -> str:
    """
    Strip characters that are not allowed in file names on common platforms.
    """
    cleaned = value.strip()
    cleaned = re.sub(r"[\\/:*?\"<>|]+", "_", cleaned)
    cleaned = cleaned.strip("_ ")
    return cleaned or fallback


def coerce_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def coerce_finite_float(value: Any) -> float | None:
    """Like `coerce_float`, but NaN and infinities count as unparsable."""
    number = coerce_float(value)
    if number is None or not math.isfinite(number):
        return None
    return number
