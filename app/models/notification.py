"""
Performance Indicator Platform
Notification model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_KINDS = {"system", "assignment", "approval", "rejection", "evidence", "overdue"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. Role broadcasts carry
    ``recipient_role`` instead of a user id.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    recipient_role = db.Column(db.String(30), nullable=True, index=True,
                               comment="Set for role broadcasts, e.g. 'admin'")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    kind = db.Column(db.String(30), default="system")
    metadata_json = db.Column("metadata", db.JSON, default=dict)

    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "recipient_role": self.recipient_role,
            "title": self.title,
            "message": self.message,
            "kind": self.kind,
            "metadata": self.metadata_json or {},
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
