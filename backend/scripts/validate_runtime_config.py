#!/usr/bin/env python3
"""Validate runtime configuration for pre-production/production deploys.

Examples:
  python backend/scripts/validate_runtime_config.py
  python backend/scripts/validate_runtime_config.py --pretty
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import DEFAULT_JWT_SECRET, get_settings

TICK_SETTINGS = (
    "refill_check_interval_seconds",
    "waiting_stage_interval_seconds",
    "stage_window_interval_seconds",
    "stage_monitor_interval_seconds",
    "consistency_audit_interval_seconds",
)


def _is_local_env(raw_env: str) -> bool:
    env = raw_env.strip().lower()
    return env in {"", "local", "dev", "development", "test"}


def _validate_settings() -> tuple[list[str], dict[str, Any]]:
    settings = get_settings()
    env = settings.app_env.strip().lower()
    local_env = _is_local_env(env)
    failures: list[str] = []

    try:
        ZoneInfo(settings.stage_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        failures.append(f"STAGE_TIMEZONE '{settings.stage_timezone}' is not a known IANA timezone")

    for name in TICK_SETTINGS:
        if getattr(settings, name) <= 0:
            failures.append(f"{name.upper()} must be positive")
    if settings.monitor_warning_hours <= 0:
        failures.append("MONITOR_WARNING_HOURS must be positive")
    if settings.monitor_capacity_ceiling <= 0:
        failures.append("MONITOR_CAPACITY_CEILING must be positive")
    if settings.center_feed_channel == settings.alert_feed_channel:
        failures.append("CENTER_FEED_CHANNEL and ALERT_FEED_CHANNEL must differ")

    if not local_env:
        if settings.jwt_secret == DEFAULT_JWT_SECRET:
            failures.append("JWT_SECRET must not use the default value outside local/dev/test")
        if settings.debug:
            failures.append("DEBUG=true is not allowed outside local/dev/test")
        if settings.database_url.startswith("sqlite"):
            failures.append("DATABASE_URL must point at PostgreSQL outside local/dev/test")

    summary = {
        "status": "success" if not failures else "failed",
        "app_env": settings.app_env,
        "local_env": local_env,
        "stage_timezone": settings.stage_timezone,
        "allocator_queue_policy": settings.allocator_queue_policy,
        "failures": failures,
    }
    return failures, summary


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate deployment runtime config")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args()

    try:
        failures, summary = _validate_settings()
    except Exception as exc:  # noqa: BLE001
        summary = {"status": "failed", "error": str(exc)}
        failures = [str(exc)]

    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        print(json.dumps(summary))

    return 0 if not failures else 1


if __name__ == "__main__":
    raise SystemExit(main())
