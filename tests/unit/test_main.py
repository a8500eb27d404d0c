import json

import pytest

from fieldsync.main import run


@pytest.fixture
def queue_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIELDSYNC_ACTIVE_QUEUE_KEY", "unit.queue.active")
    monkeypatch.setenv("FIELDSYNC_COMPLETED_QUEUE_KEY", "unit.queue.completed")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("FIELDSYNC_STORAGE_DIR", raising=False)


@pytest.mark.unit
def test_cli_returns_non_zero_for_invalid_role(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "bad-role", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR:" in captured.err
    assert "Supported roles" in captured.err


@pytest.mark.unit
def test_cli_dry_run_succeeds_for_valid_role(queue_keys: None) -> None:
    exit_code = run(["--role", "api", "--dry-run-startup"])
    assert exit_code == 0


@pytest.mark.unit
def test_cli_fails_fast_when_queue_keys_are_missing(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv("FIELDSYNC_ACTIVE_QUEUE_KEY", raising=False)
    monkeypatch.setenv("FIELDSYNC_COMPLETED_QUEUE_KEY", "unit.queue.completed")

    exit_code = run(["--role", "worker-scheduler", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR: FIELDSYNC_ACTIVE_QUEUE_KEY is not configured" in captured.err


@pytest.mark.unit
def test_cli_run_once_prints_background_result(queue_keys: None, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "worker-scheduler", "--run-once"])
    captured = capsys.readouterr()

    assert exit_code == 0
    result_line = [line for line in captured.out.splitlines() if '"result"' in line][-1]
    assert json.loads(result_line)["result"] == "NO_DATA"
