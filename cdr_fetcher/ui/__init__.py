"""User-facing terminal helpers."""

from .progress import ProgressReporter

__all__ = ["ProgressReporter"]
