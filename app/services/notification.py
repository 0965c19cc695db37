"""
Performance Indicator Platform
Notification Service.

Database-backed notification sink.  The lifecycle engine calls ``notify`` for
a single user and ``emit_to_role`` for a role broadcast (e.g. "new evidence
awaits review" to every admin).  Delivery beyond the ``notifications`` table
(websockets, push) is out of scope.

Usage:
    from app.services.notification import get_notification_sink

    get_notification_sink().notify(
        target_user_id=7, title="New indicator", message="…", kind="assignment",
    )
"""

from flask import current_app

from app.models import db
from app.models.notification import NOTIFICATION_KINDS, Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify(*, target_user_id, title, message="", kind="system", metadata=None):
        """
        Create a notification for one user.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient_id=target_user_id,
            title=title,
            message=message,
            kind=kind if kind in NOTIFICATION_KINDS else "system",
            metadata_json=metadata or {},
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def emit_to_role(role, payload):
        """
        Broadcast to every user holding *role*.

        Args:
            role: Role value, e.g. "admin".
            payload: dict with ``title`` and optional ``message``, ``kind``
                and ``metadata``.
        """
        kind = payload.get("kind", "system")
        notif = Notification(
            recipient_role=str(getattr(role, "value", role)),
            title=payload.get("title", ""),
            message=payload.get("message", ""),
            kind=kind if kind in NOTIFICATION_KINDS else "system",
            metadata_json=payload.get("metadata") or {},
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(user_id, role=None, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications addressed to a user or to their role, newest first.
        """
        cond = Notification.recipient_id == user_id
        if role:
            cond = cond | (Notification.recipient_role == str(getattr(role, "value", role)))
        q = Notification.query.filter(cond)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total


def get_notification_sink():
    return current_app.extensions["notification_sink"]
