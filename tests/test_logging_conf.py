from __future__ import annotations

import logging
from datetime import date

from cdr_fetcher.logging_conf import (
    ROOT_LOGGER,
    available_run_logs,
    configure_logging,
    run_log_path,
    run_logger,
    tail_log,
)


def test_run_logger_writes_to_dated_file(tmp_path) -> None:
    configure_logging(log_dir=tmp_path)
    logger = run_logger(date(2024, 5, 20))
    logger.info("run_started", keys=3)
    for handler in logging.getLogger(f"{ROOT_LOGGER}.run").handlers:
        handler.flush()

    path = run_log_path(date(2024, 5, 20))
    assert path == tmp_path / "runs" / "2024-05-20.log"
    text = path.read_text(encoding="utf-8")
    assert "run_started" in text
    assert "2024-05-20" in text
    assert list(available_run_logs(tmp_path)) == [path]


def test_run_logger_switches_file_per_date(tmp_path) -> None:
    configure_logging(log_dir=tmp_path)
    run_logger(date(2024, 5, 20))
    run_logger(date(2024, 5, 21))

    handlers = [
        h for h in logging.getLogger(f"{ROOT_LOGGER}.run").handlers if isinstance(h, logging.FileHandler)
    ]
    assert [h.baseFilename for h in handlers] == [str(run_log_path(date(2024, 5, 21)))]


def test_tail_log(tmp_path) -> None:
    path = tmp_path / "x.log"
    assert tail_log(path) == []
    path.write_text("".join(f"line {n}\n" for n in range(10)), encoding="utf-8")
    assert tail_log(path, 3) == ["line 7\n", "line 8\n", "line 9\n"]
