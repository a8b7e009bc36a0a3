"""Read the key list from one CSV file or a directory of them."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, Iterator, Optional

import structlog

DEFAULT_KEY_COLUMN = "ConferenceId"

logger = structlog.get_logger("cdr_fetcher.inputs")


def list_input_files(path: Path) -> list[Path]:
    if not path.exists():
        raise FileNotFoundError(f"Key list not found: {path}")
    if path.is_dir():
        return sorted(p for p in path.glob("*.csv") if p.is_file())
    return [path]


def iter_file_keys(
    path: Path,
    key_column: str = DEFAULT_KEY_COLUMN,
    has_header: Optional[bool] = None,
) -> Iterator[str]:
    """Yield keys from one file.

    ``has_header=True`` always treats the first row as a header and
    ``has_header=False`` never does. With ``None`` the first row is a header
    only when it contains ``key_column`` (case-insensitive). A header naming
    ``key_column`` selects that column; otherwise the first field is used.
    Blank values are dropped.
    """

    with path.open("r", encoding="utf-8-sig", newline="") as stream:
        reader = csv.reader(stream)
        first = next(reader, None)
        if first is None:
            return
        header = [cell.strip().lower() for cell in first]
        named = key_column.lower() in header
        column = header.index(key_column.lower()) if named and has_header is not False else 0
        if has_header is None and not named:
            logger.info("first_row_used_as_data", file=str(path), key_column=key_column, row=first)
            yield from _pick(first, column)
        elif has_header is False:
            yield from _pick(first, column)
        for row in reader:
            yield from _pick(row, column)


def _pick(row: list[str], column: int) -> Iterator[str]:
    if column < len(row):
        value = row[column].strip()
        if value:
            yield value


def unique(keys: Iterable[str]) -> Iterator[str]:
    seen: set[str] = set()
    for key in keys:
        if key not in seen:
            seen.add(key)
            yield key


def read_keys(
    path: Path,
    key_column: str = DEFAULT_KEY_COLUMN,
    has_header: Optional[bool] = None,
) -> list[str]:
    """Return de-duplicated keys, in first-seen order, from ``path``."""

    files = list_input_files(path)
    return list(
        unique(key for file in files for key in iter_file_keys(file, key_column, has_header))
    )


__all__ = ["DEFAULT_KEY_COLUMN", "iter_file_keys", "list_input_files", "read_keys", "unique"]
