"""Sink contracts for merged records and failure entries."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path

from ..assembler import MergedRecord


class BaseRecordSink(ABC):
    """Where successfully assembled records go, one entry per key and date."""

    @abstractmethod
    def write(self, record: MergedRecord, run_date: date) -> Path:
        """Persist ``record``, replacing any earlier copy for the same key and date."""

    @abstractmethod
    def exists(self, key: str, run_date: date) -> bool:
        """Return whether output for ``key`` on ``run_date`` is already present."""


class BaseFailureSink(ABC):
    """Append-only collector of keys that produced no output."""

    @abstractmethod
    def append(self, key: str, reason: str) -> None:
        """Record a single failed key; safe to call from many threads."""


__all__ = ["BaseFailureSink", "BaseRecordSink"]
