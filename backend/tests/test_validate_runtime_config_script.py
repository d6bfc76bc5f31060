from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path


def _parse_json_output(stdout: str) -> dict:
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    return json.loads(lines[-1])


def _run(env_overrides: dict[str, str]) -> tuple[int, dict]:
    repo_root = Path(__file__).resolve().parents[2]
    script_path = repo_root / "backend" / "scripts" / "validate_runtime_config.py"

    env = os.environ.copy()
    env.update(env_overrides)
    completed = subprocess.run(
        [sys.executable, str(script_path)],
        cwd=str(repo_root),
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )
    return completed.returncode, _parse_json_output(completed.stdout)


def test_validate_runtime_config_fails_on_unknown_timezone():
    returncode, payload = _run(
        {
            "APP_ENV": "local",
            "DEBUG": "false",
            "STAGE_TIMEZONE": "Mars/Olympus_Mons",
        }
    )
    assert returncode == 1
    assert payload["status"] == "failed"
    assert any("STAGE_TIMEZONE" in message for message in payload["failures"])


def test_validate_runtime_config_fails_on_sqlite_in_production():
    returncode, payload = _run(
        {
            "APP_ENV": "production",
            "DEBUG": "false",
            "JWT_SECRET": "non-default-jwt-secret",
            "DATABASE_URL": "sqlite+aiosqlite:///./tafweej.db",
            "STAGE_TIMEZONE": "Asia/Riyadh",
        }
    )
    assert returncode == 1
    assert any("DATABASE_URL" in message for message in payload["failures"])


def test_validate_runtime_config_passes_for_production_settings():
    returncode, payload = _run(
        {
            "APP_ENV": "production",
            "DEBUG": "false",
            "JWT_SECRET": "non-default-jwt-secret",
            "DATABASE_URL": "postgresql+asyncpg://tafweej:secret@db:5432/tafweej",
            "STAGE_TIMEZONE": "Asia/Riyadh",
            "ALLOCATOR_QUEUE_POLICY": "strict_fifo",
        }
    )
    assert returncode == 0
    assert payload["status"] == "success"
    assert payload["failures"] == []
