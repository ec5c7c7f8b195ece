"""
Collection Workflow Platform
Scheduler Service.

Lightweight periodic sweep runner.

Architecture:
    - ``register_job`` decorator: sweep functions register themselves by name
    - ScheduledJob rows persist the enabled flag, interval and run history
    - ``run_job`` executes one sweep inside the app context (manual trigger
      API, ``flask run-job <name>`` CLI, and the background loop)
    - ``start`` runs a daemon thread that fires enabled sweeps whose interval
      has elapsed; only when ``SCHEDULER_ENABLED`` is true

Sweeps are safe to run concurrently from several processes: every entity
they touch is claimed with a lease or a compare-and-swap UPDATE.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob
from app.utils.helpers import as_utc

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_default_intervals: dict[str, int] = {}


def register_job(name: str, interval_seconds: int = 3600):
    """Decorator to register a sweep function.

    Usage:
        @register_job("reminder_dispatch", interval_seconds=60)
        def dispatch_reminders(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        _default_intervals[name] = interval_seconds
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Sweep runner.

    Manages job persistence and execution. Jobs are executed within the
    Flask app context and receive the app as their only argument.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))
        if app.config.get("SCHEDULER_ENABLED"):
            cls.start()

    @classmethod
    def _job_record(cls, job_name: str) -> ScheduledJob:
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if record is None:
            fn = _job_registry[job_name]
            record = ScheduledJob(
                job_name=job_name,
                description=(fn.__doc__ or f"Scheduled job: {job_name}").strip().splitlines()[0],
                interval_seconds=_default_intervals.get(job_name),
                status="active",
                is_enabled=True,
            )
            db.session.add(record)
            db.session.flush()
        return record

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                cls._job_record(job_name).record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name, extra={"job_name": job_name})

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "interval_seconds": _default_intervals.get(name),
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        if job_name not in _job_registry:
            return None
        job_record = cls._job_record(job_name)
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()

    # ── Background loop ──────────────────────────────────────────────────

    @classmethod
    def due_jobs(cls, now: datetime | None = None) -> list[str]:
        """Names of enabled jobs whose interval has elapsed since their last run."""
        now = now or datetime.now(timezone.utc)
        due = []
        for name in _job_registry:
            record = ScheduledJob.query.filter_by(job_name=name).first()
            if record is None:
                due.append(name)
                continue
            if not record.is_enabled:
                continue
            interval = timedelta(seconds=record.interval_seconds or _default_intervals.get(name, 3600))
            if record.last_run_at is None or as_utc(record.last_run_at) + interval <= now:
                due.append(name)
        return due

    @classmethod
    def tick(cls) -> list[dict]:
        """Run every due job once."""
        with cls._app.app_context():
            names = cls.due_jobs()
        return [cls.run_job(name) for name in names]

    @classmethod
    def start(cls, poll_seconds: int = 30) -> None:
        if cls._thread is not None and cls._thread.is_alive():
            return
        cls._stop = threading.Event()

        def loop():
            while not cls._stop.wait(poll_seconds):
                try:
                    cls.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")

        cls._thread = threading.Thread(target=loop, name="sweep-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler loop started (poll every %ss)", poll_seconds)

    @classmethod
    def stop(cls) -> None:
        if cls._stop is not None:
            cls._stop.set()
        cls._thread = None
