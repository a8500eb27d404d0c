import json
import os
import subprocess
import sys

import pytest

ROLES = ["api", "worker-scheduler"]


def _env(**overrides: str) -> dict[str, str]:
    env = {
        key: value
        for key, value in os.environ.items()
        if key not in {"DATABASE_URL", "FIELDSYNC_STORAGE_DIR"}
    }
    env["FIELDSYNC_ACTIVE_QUEUE_KEY"] = "smoke.queue.active"
    env["FIELDSYNC_COMPLETED_QUEUE_KEY"] = "smoke.queue.completed"
    env.update(overrides)
    return env


@pytest.mark.integration
@pytest.mark.parametrize("role", ROLES)
def test_role_starts_in_empty_mode_via_dry_run(role: str) -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "fieldsync.main", "--role", role, "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
        env=_env(),
    )
    assert proc.returncode == 0, proc.stderr


@pytest.mark.integration
def test_missing_queue_key_fails_startup() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "fieldsync.main", "--role", "api", "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
        env=_env(FIELDSYNC_COMPLETED_QUEUE_KEY=""),
    )
    assert proc.returncode == 2
    assert "FIELDSYNC_COMPLETED_QUEUE_KEY" in proc.stderr


@pytest.mark.integration
def test_background_run_once_persists_through_file_storage(tmp_path) -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "fieldsync.main", "--role", "worker-scheduler", "--run-once"],
        capture_output=True,
        text=True,
        check=False,
        env=_env(FIELDSYNC_STORAGE_DIR=str(tmp_path)),
    )
    assert proc.returncode == 0, proc.stderr
    result = json.loads(proc.stdout.strip().splitlines()[-1])
    assert result["role"] == "worker-scheduler"
    assert result["result"] == "NO_DATA"
