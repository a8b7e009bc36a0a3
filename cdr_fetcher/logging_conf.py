"""structlog on top of stdlib handlers, emitting JSON lines.

Everything under the ``cdr_fetcher`` logger goes to ``fetcher.log``; errors are
duplicated into ``error.log``. Each run date also gets ``runs/<date>.log``.
"""

from __future__ import annotations

import logging
import logging.config
import os
from collections import deque
from datetime import date
from pathlib import Path
from typing import Iterable

import structlog

ROOT_LOGGER = "cdr_fetcher"
RUN_LOGGER = f"{ROOT_LOGGER}.run"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_configured_dir: Path | None = None


def current_log_dir() -> Path:
    return _configured_dir or Path.cwd() / "logs"


def _handlers(log_dir: Path, verbose: bool) -> dict[str, dict]:
    def file_handler(name: str, level: str) -> dict:
        return {
            "class": "logging.FileHandler",
            "filename": str(log_dir / name),
            "encoding": "utf-8",
            "level": level,
            "formatter": "json",
        }

    return {
        "stderr": {
            "class": "logging.StreamHandler",
            "level": "DEBUG" if verbose else "WARNING",
            "formatter": "json",
        },
        "fetcher_file": file_handler("fetcher.log", "DEBUG" if verbose else "INFO"),
        "error_file": file_handler("error.log", "ERROR"),
    }


def configure_logging(verbose: bool = False, log_dir: Path | None = None) -> structlog.BoundLogger:
    """Install handlers under ``log_dir`` and return the application logger.

    Repeated calls are no-ops unless they name a different directory.
    """

    global _configured_dir
    if _configured_dir is not None and (log_dir is None or log_dir == _configured_dir):
        return structlog.get_logger(ROOT_LOGGER)

    log_dir = log_dir or current_log_dir()
    (log_dir / "runs").mkdir(parents=True, exist_ok=True)
    handlers = _handlers(log_dir, verbose)
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": "pythonjsonlogger.jsonlogger.JsonFormatter", "fmt": JSON_FORMAT}
            },
            "handlers": handlers,
            "loggers": {
                ROOT_LOGGER: {
                    "handlers": list(handlers),
                    "level": "DEBUG" if verbose else "INFO",
                    "propagate": False,
                }
            },
        }
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured_dir = log_dir
    return structlog.get_logger(ROOT_LOGGER)


def run_log_path(run_date: date, log_dir: Path | None = None) -> Path:
    return (log_dir or current_log_dir()) / "runs" / f"{run_date.isoformat()}.log"


def run_logger(run_date: date, verbose: bool = False) -> structlog.BoundLogger:
    """Logger bound to ``run_date`` whose records also land in that date's file.

    Only one run file is attached at a time; asking for another date swaps it.
    """

    configure_logging(verbose)
    target = run_log_path(run_date)
    target.parent.mkdir(parents=True, exist_ok=True)

    stdlib_logger = logging.getLogger(RUN_LOGGER)
    wanted = os.path.abspath(target)
    for handler in list(stdlib_logger.handlers):
        if isinstance(handler, logging.FileHandler) and handler.baseFilename != wanted:
            stdlib_logger.removeHandler(handler)
            handler.close()
    if not stdlib_logger.handlers:
        run_file = logging.FileHandler(target, encoding="utf-8")
        run_file.setLevel(logging.INFO)
        parent_handlers = logging.getLogger(ROOT_LOGGER).handlers
        if parent_handlers:
            run_file.setFormatter(parent_handlers[0].formatter)
        stdlib_logger.addHandler(run_file)

    return structlog.get_logger(RUN_LOGGER).bind(run_date=run_date.isoformat())


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    if not path.is_file():
        return []
    with path.open(encoding="utf-8", errors="replace") as stream:
        return list(deque(stream, maxlen=line_count))


def available_run_logs(log_dir: Path | None = None) -> Iterable[Path]:
    runs = (log_dir or current_log_dir()) / "runs"
    return sorted(runs.glob("*.log")) if runs.is_dir() else []


__all__ = [
    "ROOT_LOGGER",
    "available_run_logs",
    "configure_logging",
    "current_log_dir",
    "run_log_path",
    "run_logger",
    "tail_log",
]
