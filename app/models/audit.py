"""
Performance Indicator Platform
Activity log model.

Models:
    - AuditLog: immutable, append-only trail of lifecycle operations.

The per-indicator audit collections (notes, score history, edit history) live
in ``app.models.indicator``; this table records *who ran which operation*
across the whole platform.
"""

import json
from datetime import UTC, datetime

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"indicator", "evidence", "scheduled_job"}

AUDIT_ACTIONS = {
    "indicator.create",
    "indicator.update",
    "indicator.progress",
    "indicator.submit_evidence",
    "indicator.remove_evidence",
    "indicator.approve",
    "indicator.reject",
    "indicator.score",
    "indicator.overdue",
    "indicator.delete",
}

AUDIT_LEVELS = {"info", "success", "warn"}


class AuditLog(db.Model):
    """
    One row per lifecycle operation.

    ``diff_json`` carries an old→new snapshot for state changes, or free-form
    metadata (evidence counts, storage release failures) for the rest.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(30), nullable=False, comment="indicator | evidence | …")
    entity_id = db.Column(db.String(36), nullable=False)
    entity_label = db.Column(db.String(300), nullable=True, comment="Indicator title snapshot")

    action = db.Column(db.String(60), nullable=False, comment="indicator.approve | indicator.delete | …")
    level = db.Column(db.String(10), nullable=False, default="info")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for system entries (scheduler)",
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_label": self.entity_label,
            "action": self.action,
            "level": self.level,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    entity_label: str | None = None,
    level: str = "info",
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        entity_label=entity_label,
        action=action,
        level=level if level in AUDIT_LEVELS else "info",
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
