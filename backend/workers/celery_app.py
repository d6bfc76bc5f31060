"""
Celery Application Configuration
"""

from datetime import timedelta

from celery import Celery

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "tafweej",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.scheduler", "workers.stage_sweeps"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.stage_sweeps.check_empty_centers": {"queue": "capacity"},
        "workers.stage_sweeps.*": {"queue": "stages"},
        "workers.scheduler.*": {"queue": "stages"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Every tick recomputes from stored state, so a missed tick is caught up by the next one.
    beat_schedule={
        # ── Capacity ────────────────────────────────────────────────
        "check-empty-centers": {
            "task": "workers.stage_sweeps.check_empty_centers",
            "schedule": timedelta(seconds=settings.refill_check_interval_seconds),
            "options": {"queue": "capacity"},
        },
        # ── Stage Admission ────────────────────────────────────────
        "dispatch-waiting-groups": {
            "task": "workers.scheduler.dispatch_waiting_groups",
            "schedule": timedelta(seconds=settings.waiting_stage_interval_seconds),
            "kwargs": {"task_name": "workers.stage_sweeps.evaluate_group_queue"},
            "options": {"queue": "stages"},
        },
        "sweep-stage-windows": {
            "task": "workers.stage_sweeps.sweep_stage_windows",
            "schedule": timedelta(seconds=settings.stage_window_interval_seconds),
            "options": {"queue": "stages"},
        },
        # ── Alert & Monitoring ─────────────────────────────────────
        "run-stage-monitor": {
            "task": "workers.stage_sweeps.run_stage_monitor",
            "schedule": timedelta(seconds=settings.stage_monitor_interval_seconds),
            "options": {"queue": "stages"},
        },
        "audit-stage-consistency": {
            "task": "workers.stage_sweeps.audit_stage_consistency",
            "schedule": timedelta(seconds=settings.consistency_audit_interval_seconds),
            "options": {"queue": "stages"},
        },
    },
)
