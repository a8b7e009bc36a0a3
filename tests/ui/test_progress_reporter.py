from __future__ import annotations

import io
from concurrent.futures import ThreadPoolExecutor

import pytest
from rich.console import Console

from cdr_fetcher.ui import ProgressReporter


def test_counters_without_rendering() -> None:
    reporter = ProgressReporter(enabled=False)
    reporter.start(3)
    reporter.advance(key="a", succeeded=True)
    reporter.advance(key="b", failed=True)
    reporter.advance(key="c", succeeded=True, skipped=True)
    reporter.close()

    assert reporter.summary() == {"succeeded": 1, "failed": 1, "skipped": 1}
    assert reporter.state.completed == 3
    assert reporter.state.current_key == "c"


def test_non_terminal_console_disables_rendering() -> None:
    reporter = ProgressReporter(console=Console(file=io.StringIO(), force_terminal=False))
    reporter.start(1)
    assert reporter.enabled is False
    reporter.advance(key="a", succeeded=True)
    assert reporter.summary()["succeeded"] == 1


def test_terminal_rendering_tracks_counts() -> None:
    stream = io.StringIO()
    reporter = ProgressReporter(console=Console(file=stream, force_terminal=True, width=120))
    reporter.start(2)
    try:
        reporter.advance(key="k" * 60, succeeded=True)
        reporter.advance(key="k2", failed=True)
    finally:
        reporter.close()
    assert reporter.summary() == {"succeeded": 1, "failed": 1, "skipped": 0}


def test_concurrent_updates_are_counted() -> None:
    reporter = ProgressReporter(enabled=False)
    reporter.start(100)
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda n: reporter.advance(key=str(n), succeeded=n % 2 == 0, failed=n % 2 == 1), range(100)))
    assert reporter.summary() == {"succeeded": 50, "failed": 50, "skipped": 0}


def test_advance_before_start_is_an_error() -> None:
    with pytest.raises(RuntimeError):
        ProgressReporter(enabled=False).advance(key="a", succeeded=True)


def test_summary_before_start_is_zero() -> None:
    assert ProgressReporter().summary() == {"succeeded": 0, "failed": 0, "skipped": 0}
