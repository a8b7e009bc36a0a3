"""Live run progress: outcome counters plus an optional Rich bar."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from rich.console import Console
from rich.errors import LiveError
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    ProgressColumn,
    SpinnerColumn,
    Task,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.text import Text

_KEY_WIDTH = 40


@dataclass
class ProgressState:
    total: int
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    current_key: str | None = None

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def bump(self, key: str, *, succeeded: bool, failed: bool, skipped: bool) -> None:
        self.current_key = key
        if skipped:
            self.skipped += 1
        elif succeeded:
            self.succeeded += 1
        elif failed:
            self.failed += 1

    def counts(self) -> dict[str, int]:
        return {"succeeded": self.succeeded, "failed": self.failed, "skipped": self.skipped}


class KeysPerSecondColumn(ProgressColumn):
    """Throughput in finished keys per second."""

    def render(self, task: Task) -> Text:
        rate = task.finished_speed or task.speed
        return Text("" if rate is None else f"{rate:.1f} key/s", style="progress.data.speed")


def _shorten(key: str) -> str:
    return key if len(key) <= _KEY_WIDTH else f"{key[:_KEY_WIDTH - 3]}..."


def _build_bar(console: Console) -> Progress:
    return Progress(
        SpinnerColumn(style="cyan"),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=None, complete_style="green", finished_style="green"),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        KeysPerSecondColumn(),
        TextColumn("[green]ok {task.fields[succeeded]}"),
        TextColumn("[red]err {task.fields[failed]}"),
        TextColumn("[yellow]skip {task.fields[skipped]}"),
        TextColumn("[dim]{task.fields[key]}"),
        console=console,
        expand=True,
        transient=True,
        refresh_per_second=8,
    )


class ProgressReporter:
    """Count per-key outcomes and, on a terminal, draw them as a progress bar.

    Counting never depends on rendering, so ``summary()`` is valid for
    ``--quiet`` and piped runs too. ``advance`` may be called from any thread.
    """

    def __init__(self, enabled: bool = True, label: str = "call records", console: Console | None = None) -> None:
        self.enabled = enabled
        self.label = label
        self._console = console
        self._bar: Progress | None = None
        self._task: TaskID | None = None
        self._guard = Lock()
        self.state: ProgressState | None = None

    def start(self, total: int) -> None:
        self.state = ProgressState(total=total)
        if self.enabled:
            self._open_bar(total)

    def _open_bar(self, total: int) -> None:
        console = self._console or Console()
        if not console.is_terminal:
            self.enabled = False
            return
        bar = _build_bar(console)
        try:
            bar.start()
        except LiveError:
            # Another live display already owns this console.
            self.enabled = False
            return
        self._bar = bar
        self._task = bar.add_task(self.label, total=total, succeeded=0, failed=0, skipped=0, key="")

    def advance(
        self,
        *,
        key: str,
        succeeded: bool = False,
        failed: bool = False,
        skipped: bool = False,
    ) -> None:
        with self._guard:
            state = self.state
            if state is None:
                raise RuntimeError("ProgressReporter.start must be called before advance")
            state.bump(key, succeeded=succeeded, failed=failed, skipped=skipped)
            if self._bar is None or self._task is None:
                return
            self._bar.update(self._task, advance=1, key=_shorten(key), **state.counts())

    def close(self) -> None:
        with self._guard:
            bar, self._bar, self._task = self._bar, None, None
        if bar is not None:
            bar.stop()

    def summary(self) -> dict[str, int]:
        if self.state is None:
            return ProgressState(total=0).counts()
        return self.state.counts()


__all__ = ["KeysPerSecondColumn", "ProgressReporter", "ProgressState"]
