from __future__ import annotations

import json

import pytest
import yaml
from typer.testing import CliRunner

from cdr_fetcher.app import app
from cdr_fetcher.config.loader import HOME_ENV, ConfigLocator
from cdr_fetcher.logging_conf import configure_logging

from conftest import AUTHORITY, BASE_URL

runner = CliRunner()


@pytest.fixture
def home(tmp_path, monkeypatch):
    for name in ("CDR_FETCHER_TENANT_ID", "CDR_FETCHER_CLIENT_ID", "CDR_FETCHER_CLIENT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv(HOME_ENV, str(tmp_path))
    locator = ConfigLocator()
    # Configure handlers against the real stderr before the runner swaps it.
    configure_logging(log_dir=locator.logs_dir)
    return locator


@pytest.fixture
def settings(home):
    payload = {
        "identity": {"tenant_id": "tenant-1", "client_id": "client", "client_secret": "s3cret", "authority_host": AUTHORITY},
        "api": {"base_url": BASE_URL},
        "paths": {"input_path": "keys.csv", "failure_report": "failed-{date}.csv"},
        "retry": {"max_attempts": 1, "backoff_base": 0, "jitter": 0, "max_delay": 0},
        "run": {"max_concurrency": 2},
    }
    home.settings_path().write_text(yaml.safe_dump(payload), encoding="utf-8")
    return home


@pytest.fixture
def fake_api(graph, monkeypatch):
    monkeypatch.setattr("cdr_fetcher.app.http_transport", graph.transport())
    return graph


def test_config_init_and_refuse_overwrite(home) -> None:
    result = runner.invoke(app, ["config", "init"])
    assert result.exit_code == 0, result.stdout
    assert home.settings_path().exists()

    again = runner.invoke(app, ["config", "init"])
    assert again.exit_code == 1
    assert "--force" in again.stdout


def test_config_show_masks_secret(settings) -> None:
    result = runner.invoke(app, ["config", "show"])
    assert result.exit_code == 0, result.stdout
    assert "s3cret" not in result.stdout
    assert "***" in result.stdout


def test_run_without_identity_exits(home) -> None:
    result = runner.invoke(app, ["run", "2024-05-20"])
    assert result.exit_code == 1
    assert "Cannot start run" in result.stdout


def test_run_with_bad_date(settings) -> None:
    result = runner.invoke(app, ["run", "20-05-2024"])
    assert result.exit_code != 0


def test_run_with_missing_input(settings) -> None:
    result = runner.invoke(app, ["run", "2024-05-20"])
    assert result.exit_code == 1
    assert "Key list not found" in result.stdout


def test_run_empty_key_list(settings) -> None:
    (settings.project_root / "keys.csv").write_text("ConferenceId\n", encoding="utf-8")
    result = runner.invoke(app, ["run", "2024-05-20"])
    assert result.exit_code == 0
    assert "nothing to do" in result.stdout


def test_run_fetches_and_reports(settings, fake_api) -> None:
    root = settings.project_root
    (root / "keys.csv").write_text("ConferenceId\nA\nB\nA\n", encoding="utf-8")
    fake_api.record("A", {"id": "A"}, participants=[{"id": "p1"}])

    result = runner.invoke(app, ["run", "2024-05-20", "--quiet"])

    assert result.exit_code == 0, result.stdout
    assert "2024-05-20: 1 succeeded, 0 skipped, 1 failed" in result.stdout
    record = json.loads((root / "data" / "output" / "2024" / "05" / "20" / "A.json").read_text(encoding="utf-8"))
    assert record["participants_v2"] == [{"id": "p1"}]
    report = (root / "failed-2024-05-20.csv").read_text(encoding="utf-8").splitlines()
    assert report[0] == "key,error"
    assert report[1].startswith("B,")
    assert (settings.logs_dir / "runs" / "2024-05-20.log").exists()


def test_run_skip_existing_flag(settings, fake_api) -> None:
    root = settings.project_root
    (root / "keys.csv").write_text("A\n", encoding="utf-8")
    fake_api.record("A", {"id": "A"})

    first = runner.invoke(app, ["run", "2024-05-20", "--quiet"])
    second = runner.invoke(app, ["run", "2024-05-20", "--quiet", "--skip-existing"])

    assert "1 succeeded, 0 skipped" in first.stdout
    assert "0 succeeded, 1 skipped" in second.stdout
    assert fake_api.calls_to(f"{BASE_URL}/A") == 1


def test_run_summary_table(settings, fake_api) -> None:
    input_file = settings.project_root / "other.csv"
    input_file.write_text("ConferenceId\nZ\n", encoding="utf-8")

    result = runner.invoke(app, ["run", "2024-05-20", "--input", str(input_file)])

    assert result.exit_code == 0, result.stdout
    assert "Run 2024-05-20" in result.stdout
    assert "Failed keys" in result.stdout
    assert "Failure report" in result.stdout


def test_log_commands(settings) -> None:
    empty = runner.invoke(app, ["log", "list"])
    assert "No run logs yet" in empty.stdout

    (settings.logs_dir / "runs" / "2024-05-20.log").write_text("line-1\nline-2\n", encoding="utf-8")
    listed = runner.invoke(app, ["log", "list"])
    assert "2024-05-20.log" in listed.stdout

    shown = runner.invoke(app, ["log", "show", "--run", "2024-05-20", "--tail", "1"])
    assert "line-2" in shown.stdout
    assert "line-1" not in shown.stdout


def test_run_header_flag_skips_foreign_header(settings, fake_api) -> None:
    root = settings.project_root
    (root / "keys.csv").write_text("Id,Start\nA,09:00\n", encoding="utf-8")
    fake_api.record("A", {"id": "A"})

    result = runner.invoke(app, ["run", "2024-05-20", "--quiet", "--header"])

    assert result.exit_code == 0, result.stdout
    assert "1 succeeded, 0 skipped, 0 failed" in result.stdout
    assert not (root / "failed-2024-05-20.csv").exists()
