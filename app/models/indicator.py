"""
Performance Indicator Platform
Indicator aggregate — the indicator row plus the collections it owns.

Models:
    - Indicator: aggregate root, optimistic revision counter
    - IndicatorGroupMember: group assignment (indicator ↔ user)
    - Evidence: uploaded artifact (active / rejected / archived)
    - IndicatorNote: append-only remark
    - ScoreHistory: append-only graded score
    - EditHistory: append-only field-level diff
"""

from datetime import date, datetime, timezone

from sqlalchemy import event
from sqlalchemy.orm import validates

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

INDICATOR_STATUSES = (
    "pending",
    "submitted",
    "approved",
    "completed",
    "rejected",
    "overdue",
    "partially_completed",
)

# A completed indicator is a closed record.
SEALED_STATUSES = frozenset({"completed"})

# ``result`` may only be set while the indicator is in one of these states.
RESULT_STATUSES = frozenset({"approved", "completed", "rejected"})

# States the overdue sweep may flip to "overdue".
OVERDUE_ELIGIBLE_STATUSES = frozenset({"pending", "submitted"})

INDICATOR_RESULTS = frozenset({"pass", "fail"})
ASSIGNMENT_TYPES = frozenset({"individual", "group"})

EVIDENCE_STATUSES = frozenset({"active", "rejected", "archived"})
EVIDENCE_RESOURCE_KINDS = frozenset({"raw", "image", "video"})
EVIDENCE_ACCESS_TIERS = frozenset({"authenticated", "upload"})
EVIDENCE_PLACEHOLDER_DESCRIPTION = "No description provided"

# Fields whose changes are written to EditHistory.
TRACKED_FIELDS = (
    "indicator_title",
    "unit_of_measure",
    "start_date",
    "due_date",
    "assigned_to_type",
    "assigned_to",
    "assigned_group",
    "status",
    "next_deadline",
)


def clamp_progress(value) -> int:
    """Round to the nearest integer and clamp into [0, 100]."""
    return max(0, min(100, int(round(float(value)))))


class Indicator(db.Model):
    """
    A trackable performance task assigned to a user or a group.

    Every lifecycle write bumps ``revision`` (SQLAlchemy ``version_id_col``);
    a write based on a stale read fails with ``StaleDataError``.
    """

    __tablename__ = "indicators"
    __table_args__ = (
        db.Index("idx_indicator_assignee_status", "assigned_to", "status"),
        db.Index("idx_indicator_category_due", "category_id", "due_date"),
        db.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_indicator_progress"),
        db.CheckConstraint(
            "status IN ('pending','submitted','approved','completed',"
            "'rejected','overdue','partially_completed')",
            name="ck_indicator_status",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)

    category_id = db.Column(
        db.Integer, db.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True,
    )
    level2_category_id = db.Column(
        db.Integer, db.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True,
    )
    indicator_title = db.Column(
        db.String(300), nullable=False,
        comment="Resolved once from the level-3 category at creation; immutable",
    )
    unit_of_measure = db.Column(db.String(100), nullable=False)

    assigned_to_type = db.Column(db.String(20), nullable=False, default="individual")
    assigned_to = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    start_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    next_deadline = db.Column(db.Date, nullable=True)

    progress = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default="pending", index=True)
    result = db.Column(db.String(10), nullable=True, comment="pass | fail | NULL")
    rejection_count = db.Column(db.Integer, nullable=False, default=0)

    reviewed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    report_data = db.Column(db.JSON, default=dict)
    calendar_event = db.Column(db.JSON, nullable=True)

    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    revision = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": revision}

    # ── Owned collections ────────────────────────────────────────────────
    group_members = db.relationship(
        "IndicatorGroupMember", backref="indicator",
        cascade="all, delete-orphan", order_by="IndicatorGroupMember.id",
    )
    evidence = db.relationship(
        "Evidence", backref="indicator",
        cascade="all, delete-orphan", order_by="Evidence.id",
    )
    notes = db.relationship(
        "IndicatorNote", backref="indicator",
        cascade="all, delete-orphan", order_by="IndicatorNote.id",
    )
    score_history = db.relationship(
        "ScoreHistory", backref="indicator",
        cascade="all, delete-orphan", order_by="ScoreHistory.id",
    )
    edit_history = db.relationship(
        "EditHistory", backref="indicator",
        cascade="all, delete-orphan", order_by="EditHistory.id",
    )

    @validates("progress")
    def _validate_progress(self, key, value):
        return clamp_progress(value if value is not None else 0)

    # ── Derived state ────────────────────────────────────────────────────

    @property
    def assigned_group(self) -> list[int]:
        return [m.user_id for m in self.group_members]

    @property
    def assignee_ids(self) -> list[int]:
        """Distinct target user ids, individual assignee first."""
        ids = []
        if self.assigned_to is not None:
            ids.append(self.assigned_to)
        for uid in self.assigned_group:
            if uid not in ids:
                ids.append(uid)
        return ids

    @property
    def is_sealed(self) -> bool:
        return self.status in SEALED_STATUSES

    @property
    def active_evidence(self) -> list:
        return [e for e in self.evidence if e.status == "active"]

    @property
    def phase(self) -> str:
        if self.status in ("submitted", "approved", "completed", "rejected", "partially_completed"):
            return self.status
        today = date.today()
        if self.status == "overdue" or (self.due_date and today > self.due_date):
            return "overdue"
        if self.start_date and today < self.start_date:
            return "upcoming"
        return "ongoing"

    def field_value(self, field: str):
        """Serializable value of a tracked field, used for history diffs."""
        if field == "assigned_group":
            return sorted(self.assigned_group)
        value = getattr(self, field)
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        return value

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "category_id": self.category_id,
            "level2_category_id": self.level2_category_id,
            "indicator_title": self.indicator_title,
            "unit_of_measure": self.unit_of_measure,
            "assigned_to_type": self.assigned_to_type,
            "assigned_to": self.assigned_to,
            "assigned_group": self.assigned_group,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "next_deadline": self.next_deadline.isoformat() if self.next_deadline else None,
            "progress": self.progress,
            "status": self.status,
            "phase": self.phase,
            "result": self.result,
            "rejection_count": self.rejection_count,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "report_data": self.report_data or {},
            "calendar_event": self.calendar_event,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "revision": self.revision,
        }
        if include_children:
            d["evidence"] = [e.to_dict() for e in self.evidence]
            d["notes"] = [n.to_dict() for n in self.notes]
            d["score_history"] = [s.to_dict() for s in self.score_history]
            d["edit_history"] = [h.to_dict() for h in self.edit_history]
        return d

    def __repr__(self):
        return f"<Indicator {self.id}: {self.indicator_title[:40]} [{self.status}]>"


class IndicatorGroupMember(db.Model):
    """One user of an indicator's assigned group."""

    __tablename__ = "indicator_group_members"
    __table_args__ = (
        db.UniqueConstraint("indicator_id", "user_id", name="uq_indicator_group_member"),
    )

    id = db.Column(db.Integer, primary_key=True)
    indicator_id = db.Column(
        db.Integer, db.ForeignKey("indicators.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )


class Evidence(db.Model):
    """Uploaded artifact submitted as proof of work on an indicator."""

    __tablename__ = "indicator_evidence"

    id = db.Column(db.Integer, primary_key=True)
    indicator_id = db.Column(
        db.Integer, db.ForeignKey("indicators.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    file_name = db.Column(db.String(255), nullable=False)
    file_size = db.Column(db.Integer, nullable=False, default=0)
    mime_type = db.Column(db.String(100), nullable=False, default="application/octet-stream")
    description = db.Column(db.Text, default=EVIDENCE_PLACEHOLDER_DESCRIPTION)

    # Storage reference returned by the blob storage collaborator
    public_id = db.Column(db.String(500), nullable=False)
    resource_kind = db.Column(db.String(10), nullable=False, default="raw", comment="raw | image | video")
    access_tier = db.Column(db.String(20), nullable=False, default="authenticated",
                            comment="authenticated | upload")
    format = db.Column(db.String(20), nullable=False, default="bin")
    secure_url = db.Column(db.String(1000), nullable=True)

    status = db.Column(db.String(20), nullable=False, default="active", comment="active | rejected | archived")
    is_archived = db.Column(db.Boolean, nullable=False, default=False)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_resubmission = db.Column(db.Boolean, nullable=False, default=False)
    resubmission_attempt = db.Column(db.Integer, nullable=False, default=0)

    uploaded_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    uploaded_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "indicator_id": self.indicator_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "description": self.description,
            "public_id": self.public_id,
            "resource_kind": self.resource_kind,
            "access_tier": self.access_tier,
            "format": self.format,
            "secure_url": self.secure_url,
            "status": self.status,
            "is_archived": self.is_archived,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "is_resubmission": self.is_resubmission,
            "resubmission_attempt": self.resubmission_attempt,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }


class IndicatorNote(db.Model):
    """Free-text remark. Never edited or removed."""

    __tablename__ = "indicator_notes"

    id = db.Column(db.Integer, primary_key=True)
    indicator_id = db.Column(
        db.Integer, db.ForeignKey("indicators.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    text = db.Column(db.Text, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "text": self.text,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ScoreHistory(db.Model):
    """Graded score submitted outside the approve/reject path."""

    __tablename__ = "indicator_score_history"

    id = db.Column(db.Integer, primary_key=True)
    indicator_id = db.Column(
        db.Integer, db.ForeignKey("indicators.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    score = db.Column(db.Integer, nullable=False)
    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("score >= 0 AND score <= 100", name="ck_score_range"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "score": self.score,
            "submitted_by": self.submitted_by,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }


class EditHistory(db.Model):
    """One edit call: ``changes`` maps field name to {old, new}."""

    __tablename__ = "indicator_edit_history"

    id = db.Column(db.Integer, primary_key=True)
    indicator_id = db.Column(
        db.Integer, db.ForeignKey("indicators.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    changes = db.Column(db.JSON, nullable=False, default=dict)

    def to_dict(self):
        return {
            "id": self.id,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "changes": self.changes or {},
        }


# ── Append-only guard ────────────────────────────────────────────────────────

def _reject_update(mapper, connection, target):
    raise ValueError(f"{type(target).__name__} rows are append-only")


for _history_model in (IndicatorNote, ScoreHistory, EditHistory):
    event.listen(_history_model, "before_update", _reject_update)
