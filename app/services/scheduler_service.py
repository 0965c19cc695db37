"""
Performance Indicator Platform
Scheduler Service.

Job registry and runner.  No timer lives in this process: an external
scheduler (cron, a Kubernetes CronJob, the ``flask run-job`` CLI command)
calls ``SchedulerService.run_job`` and the outcome is persisted on the
matching ScheduledJob row.

Architecture:
    - Job functions register themselves via the ``register_job`` decorator
    - ScheduledJob rows are created on demand by ``ensure_jobs_registered``
    - Every run is executed inside the Flask app context
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("overdue_sweep")
        def sweep_overdue_indicators(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Registry-backed job runner.

    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the runner to the Flask app."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_config=_get_default_schedule(name),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

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

        cls.ensure_jobs_registered()
        with cls._app.app_context():
            record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if record is not None and not record.is_enabled:
                record.record_run(status="skipped")
                db.session.commit()
                logger.info("Job %s is paused; skipped", job_name)
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

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
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        cls.ensure_jobs_registered()
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(job_name: str) -> dict:
    """Return the suggested cadence for known jobs."""
    defaults = {
        "overdue_sweep": {"hour": "0", "minute": "5", "description": "Daily at 00:05"},
    }
    return defaults.get(job_name, {"hour": "0", "minute": "0",
                                    "description": "Daily at midnight"})
