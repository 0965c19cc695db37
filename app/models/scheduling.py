"""
Performance Indicator Platform
Scheduling & outbound mail models.

Models:
    - ScheduledJob: run history for jobs triggered by the external scheduler
    - EmailLog: outbound email audit trail
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

JOB_STATUSES = {"active", "paused"}
JOB_RUN_STATUSES = {"success", "failed", "skipped"}
EMAIL_STATUSES = {"queued", "sent", "failed"}


class ScheduledJob(db.Model):
    """
    One row per registered job.

    The engine never runs timers itself; an external scheduler calls
    ``SchedulerService.run_job`` and the outcome is recorded here.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="Registered job identifier, e.g. overdue_sweep")
    description = db.Column(db.String(500), default="")
    schedule_config = db.Column(db.JSON, default=dict,
                                comment="Suggested cadence for the external scheduler")
    status = db.Column(db.String(20), default="active", comment="active, paused")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Record a job execution."""
        self.last_run_at = datetime.now(timezone.utc)
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_config": self.schedule_config,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"


class EmailLog(db.Model):
    """
    Outbound email audit log.

    Every email handed to the mailer is logged here, whether or not SMTP is
    configured.
    """

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    recipient_name = db.Column(db.String(150), nullable=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True)
    kind = db.Column(db.String(30), default="system",
                     comment="assignment | rejection | approval | overdue | system")
    status = db.Column(db.String(20), default="queued", comment="queued, sent, failed")
    error_message = db.Column(db.Text, nullable=True)

    indicator_id = db.Column(db.Integer, nullable=True, index=True,
                             comment="Indicator that triggered the email, if any")

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "subject": self.subject,
            "template_name": self.template_name,
            "kind": self.kind,
            "status": self.status,
            "error_message": self.error_message,
            "indicator_id": self.indicator_id,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.recipient_email} [{self.status}]>"
