"""
Performance Indicator Platform
Audit Trail — append-only notes, score history and field-level edit history.

All three collections are owned by an Indicator and only ever grow; the
models refuse UPDATE at flush time.  Functions here append to the session
without committing so the caller's lifecycle operation commits them together
with the state change they describe.

Usage:
    from app.services.audit_trail import diff_fields, record_changes

    before = snapshot(indicator)
    ...mutate...
    record_changes(indicator, editor_id, diff_fields(before, snapshot(indicator)))
"""

from __future__ import annotations

from app.models import db
from app.models.indicator import (
    TRACKED_FIELDS,
    EditHistory,
    Indicator,
    IndicatorNote,
    ScoreHistory,
)

# Fields captured around review and score transitions.
STATE_FIELDS = ("status", "progress", "result")


def snapshot(indicator: Indicator, fields=TRACKED_FIELDS) -> dict:
    """Serializable values of *fields* on *indicator*."""
    return {f: indicator.field_value(f) for f in fields}


def diff_fields(before: dict, after: dict) -> dict:
    """Map each field whose value differs to ``{"old": …, "new": …}``."""
    changes = {}
    for field, new in after.items():
        old = before.get(field)
        if old != new:
            changes[field] = {"old": old, "new": new}
    return changes


def append_note(indicator: Indicator, text: str, author_id: int | None) -> IndicatorNote | None:
    """Append a Note; blank text is ignored."""
    text = (text or "").strip()
    if not text:
        return None
    note = IndicatorNote(text=text, created_by=author_id)
    indicator.notes.append(note)
    return note


def append_score(indicator: Indicator, score: int, submitter_id: int | None) -> ScoreHistory:
    entry = ScoreHistory(score=score, submitted_by=submitter_id)
    indicator.score_history.append(entry)
    return entry


def record_changes(indicator: Indicator, editor_id: int | None, changes: dict) -> EditHistory | None:
    """Append one EditHistory entry aggregating *changes*; no-op when empty."""
    if not changes:
        return None
    entry = EditHistory(updated_by=editor_id, changes=changes)
    indicator.edit_history.append(entry)
    return entry


# ── Queries (insertion order) ────────────────────────────────────────────────

def list_notes(indicator_id: int) -> list[IndicatorNote]:
    return db.session.execute(
        db.select(IndicatorNote)
        .filter_by(indicator_id=indicator_id)
        .order_by(IndicatorNote.id)
    ).scalars().all()


def list_scores(indicator_id: int) -> list[ScoreHistory]:
    return db.session.execute(
        db.select(ScoreHistory)
        .filter_by(indicator_id=indicator_id)
        .order_by(ScoreHistory.id)
    ).scalars().all()


def list_edits(indicator_id: int) -> list[EditHistory]:
    return db.session.execute(
        db.select(EditHistory)
        .filter_by(indicator_id=indicator_id)
        .order_by(EditHistory.id)
    ).scalars().all()


def get_history(indicator_id: int) -> dict:
    return {
        "notes": [n.to_dict() for n in list_notes(indicator_id)],
        "score_history": [s.to_dict() for s in list_scores(indicator_id)],
        "edit_history": [h.to_dict() for h in list_edits(indicator_id)],
    }
