"""File-tree record sink and CSV failure report."""

from __future__ import annotations

import csv
import json
import os
import tempfile
from datetime import date
from pathlib import Path
from threading import Lock
from urllib.parse import quote

from ..assembler import MergedRecord
from ..errors import SinkError
from .base import BaseFailureSink, BaseRecordSink

FAILURE_HEADER = ("key", "error")


def _safe_filename(key: str) -> str:
    """Percent-encode ``key`` so distinct keys never share a file name."""

    encoded = quote(key, safe="")
    if encoded.startswith("."):
        # No hidden files, and no "." or ".." path components.
        encoded = "%2E" + encoded[1:]
    return encoded


class JsonFileSink(BaseRecordSink):
    """Write one pretty-printed JSON document per key under a date partition."""

    def __init__(self, output_dir: Path, partition_format: str = "%Y/%m/%d") -> None:
        self.output_dir = output_dir
        self.partition_format = partition_format

    def path_for(self, key: str, run_date: date) -> Path:
        partition = run_date.strftime(self.partition_format)
        return self.output_dir / partition / f"{_safe_filename(key)}.json"

    def exists(self, key: str, run_date: date) -> bool:
        return self.path_for(key, run_date).is_file()

    def write(self, record: MergedRecord, run_date: date) -> Path:
        path = self.path_for(record.key, run_date)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(record.to_document(), ensure_ascii=False, indent=2)
            # Write beside the target and swap in, so readers never see half a file.
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as stream:
                    stream.write(payload)
                    stream.write("\n")
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise SinkError(f"Could not write {path}: {exc}") from exc
        return path


class CsvFailureReport(BaseFailureSink):
    """Append ``key,error`` rows, writing the header once per file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = Lock()

    def append(self, key: str, reason: str) -> None:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                needs_header = not self.path.exists() or self.path.stat().st_size == 0
                with self.path.open("a", encoding="utf-8", newline="") as stream:
                    writer = csv.writer(stream)
                    if needs_header:
                        writer.writerow(FAILURE_HEADER)
                    writer.writerow((key, " ".join(reason.split())))
            except OSError as exc:
                raise SinkError(f"Could not append to {self.path}: {exc}") from exc

    def read(self) -> list[tuple[str, str]]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8", newline="") as stream:
            rows = list(csv.reader(stream))
        if rows and tuple(rows[0]) == FAILURE_HEADER:
            rows = rows[1:]
        return [(row[0], row[1] if len(row) > 1 else "") for row in rows if row]


__all__ = ["CsvFailureReport", "JsonFileSink"]
