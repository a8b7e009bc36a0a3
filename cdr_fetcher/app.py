"""Typer CLI entrypoint for cdr-fetcher."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

import httpx
import typer
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigError, ConfigLocator, ConfigRepository
from .inputs import read_keys
from .logging_conf import available_run_logs, configure_logging, run_log_path, run_logger, tail_log
from .orchestrator import Failure, FetchPipeline, RunSummary
from .ui import ProgressReporter

app = typer.Typer(
    help="Download call records for a list of conference ids.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
config_app = typer.Typer(name="config", help="Inspect or create settings.", no_args_is_help=True)
log_app = typer.Typer(name="log", help="Read run logs.", no_args_is_help=True)
app.add_typer(config_app, name="config")
app.add_typer(log_app, name="log")

console = Console()

# Tests swap this for an httpx.MockTransport.
http_transport: httpx.BaseTransport | None = None


@dataclass
class AppState:
    locator: ConfigLocator
    repository: ConfigRepository
    verbose: bool = False


def build_state(verbose: bool) -> AppState:
    locator = ConfigLocator()
    repository = ConfigRepository(locator)
    configure_logging(verbose=verbose, log_dir=locator.logs_dir)
    return AppState(locator=locator, repository=repository, verbose=verbose)


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _parse_run_date(value: Optional[str]) -> date:
    if not value:
        return datetime.now(timezone.utc).date()
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Expected YYYY-MM-DD, got {value!r}", param_hint="DATE") from exc


def _render_summary(summary: RunSummary) -> Table:
    table = Table(title=f"Run {summary.run_date.isoformat()}", box=box.SIMPLE_HEAD)
    table.add_column("Outcome", style="cyan")
    table.add_column("Keys", justify="right")
    counts = summary.as_dict()
    table.add_row("succeeded", str(counts["succeeded"]), style="green")
    table.add_row("skipped", str(counts["skipped"]), style="yellow")
    table.add_row("failed", str(counts["failed"]), style="red")
    if counts["duplicates"]:
        table.add_row("duplicates dropped", str(counts["duplicates"]), style="dim")
    return table


def _render_failures(summary: RunSummary, limit: int = 20) -> Table:
    table = Table(title="Failed keys", box=box.SIMPLE_HEAD)
    table.add_column("Key", style="red", no_wrap=True)
    table.add_column("Reason", overflow="fold")
    failures = [item for item in summary.items if isinstance(item.outcome, Failure)]
    for item in failures[:limit]:
        table.add_row(item.key, item.outcome.reason)
    if len(failures) > limit:
        table.add_row("…", f"{len(failures) - limit} more in the failure report")
    return table


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
) -> None:
    ctx.obj = build_state(verbose)


@app.command("run", help="Fetch every key in the input list for DATE (default: today, UTC).")
def run(
    ctx: typer.Context,
    run_date: Optional[str] = typer.Argument(None, metavar="DATE", help="Partition date, YYYY-MM-DD."),
    input_path: Optional[Path] = typer.Option(None, "--input", "-i", help="CSV file or directory of CSV files."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, help="Keys fetched at once."),
    skip_existing: Optional[bool] = typer.Option(
        None,
        "--skip-existing/--refetch",
        help="Skip keys whose output file already exists for DATE.",
    ),
    has_header: Optional[bool] = typer.Option(
        None,
        "--header/--no-header",
        help="Treat the first CSV row as a header, or as data. Default: detect by key column name.",
    ),
    quiet: bool = typer.Option(False, "--quiet", help="Only print the summary line."),
) -> None:
    state = _get_state(ctx)
    target_date = _parse_run_date(run_date)
    try:
        config = state.repository.load()
        if concurrency is not None:
            config = config.model_copy(
                update={"run": config.run.model_copy(update={"max_concurrency": concurrency})}
            )
        config.require_identity()
        if has_header is not None:
            config = config.model_copy(
                update={"run": config.run.model_copy(update={"has_header": has_header})}
            )
        keys = read_keys(
            input_path or config.paths.input_path, config.run.key_column, config.run.has_header
        )
    except (ConfigError, FileNotFoundError, OSError) as exc:
        console.print(f"Cannot start run: {exc}", style="red")
        raise typer.Exit(code=1)

    logger = run_logger(target_date, verbose=state.verbose)
    if not keys:
        console.print("The key list is empty; nothing to do.", style="yellow")
        logger.warning("empty_key_list")
        return

    progress = ProgressReporter(enabled=not quiet and sys.stdout.isatty())
    with FetchPipeline(config, transport=http_transport, logger=logger) as pipeline:
        summary = pipeline.run(keys, target_date, skip_existing=skip_existing, progress=progress)

    counts = summary.as_dict()
    if quiet:
        console.print(
            f"{target_date.isoformat()}: {counts['succeeded']} succeeded, "
            f"{counts['skipped']} skipped, {counts['failed']} failed"
        )
        return
    console.print(_render_summary(summary))
    if summary.failed:
        console.print(_render_failures(summary))
        console.print(
            f"Failure report: {config.paths.failure_report_for(target_date)}", style="dim"
        )


@config_app.command("init", help="Write a default settings file.")
def config_init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing settings file."),
) -> None:
    state = _get_state(ctx)
    try:
        path = state.repository.init(force=force)
    except FileExistsError as exc:
        console.print(f"{exc}. Use --force to overwrite.", style="yellow")
        raise typer.Exit(code=1)
    console.print(f"Settings written to {path}.", style="green")


@config_app.command("show", help="Print the effective settings (secret masked).")
def config_show(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    try:
        config = state.repository.load()
    except ConfigError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1)
    console.print(state.locator.settings_path(), style="dim")
    console.print(yaml.safe_dump(config.masked(), allow_unicode=True, sort_keys=False))


@log_app.command("list", help="List per-run log files.")
def log_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    logs = list(available_run_logs(state.locator.logs_dir))
    if not logs:
        console.print("No run logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("Run log", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="Show the tail of a run log, or of the main log.")
def log_show(
    ctx: typer.Context,
    run_date: Optional[str] = typer.Option(None, "--run", help="Run date, YYYY-MM-DD."),
    tail: int = typer.Option(100, "--tail", min=1, help="Number of lines."),
) -> None:
    state = _get_state(ctx)
    if run_date:
        path = run_log_path(_parse_run_date(run_date), state.locator.logs_dir)
    else:
        path = state.locator.logs_dir / "fetcher.log"
    lines = tail_log(path, tail)
    if not lines:
        console.print(f"Nothing logged in {path.name} yet.", style="dim")
        return
    console.print(f"{path.name} · last {len(lines)} lines", style="cyan")
    console.print("".join(lines), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
