"""
Audit Trail Tests — append-only notes, scores and edit history.
"""

import json

import pytest

from app.models import db
from app.models.audit import AuditLog
from app.models.indicator import EditHistory, IndicatorNote, ScoreHistory
from app.services import audit_trail
from app.services import indicator_lifecycle as lifecycle


class TestDiff:
    def test_only_changed_fields(self):
        before = {"status": "pending", "progress": 0, "result": None}
        after = {"status": "submitted", "progress": 0, "result": None}
        assert audit_trail.diff_fields(before, after) == {
            "status": {"old": "pending", "new": "submitted"},
        }

    def test_identical_snapshots(self):
        snap = {"status": "pending"}
        assert audit_trail.diff_fields(snap, dict(snap)) == {}

    def test_snapshot_serializes_dates_and_group(self, make_indicator, users):
        ind = make_indicator(assigned_group=[users["bob"].id, users["alice"].id])
        snap = audit_trail.snapshot(ind)
        assert snap["due_date"] == "2030-06-30"
        assert snap["assigned_group"] == sorted([users["alice"].id, users["bob"].id])
        assert snap["next_deadline"] is None


class TestAppend:
    def test_blank_note_is_ignored(self, make_indicator):
        ind = make_indicator()
        assert audit_trail.append_note(ind, "  ", 1) is None
        assert audit_trail.append_note(ind, None, 1) is None
        assert ind.notes == []

    def test_empty_changes_are_not_recorded(self, make_indicator):
        ind = make_indicator()
        assert audit_trail.record_changes(ind, 1, {}) is None
        assert ind.edit_history == []

    def test_history_rows_refuse_updates(self, make_indicator, actors):
        ind = make_indicator()
        lifecycle.update(ind.id, {"notes": "first", "unit_of_measure": "files"}, actors["admin"])
        lifecycle.submit_score(ind.id, actors["admin"], 20)

        for row in (IndicatorNote.query.first(), EditHistory.query.first(),
                    ScoreHistory.query.first()):
            if isinstance(row, IndicatorNote):
                row.text = "rewritten"
            elif isinstance(row, EditHistory):
                row.changes = {}
            else:
                row.score = 99
            with pytest.raises(ValueError, match="append-only"):
                db.session.flush()
            db.session.rollback()

    def test_queries_return_insertion_order(self, make_indicator, actors):
        ind = make_indicator()
        for text in ("one", "two", "three"):
            lifecycle.update(ind.id, {"notes": text}, actors["admin"])

        assert [n.text for n in audit_trail.list_notes(ind.id)] == ["one", "two", "three"]
        assert audit_trail.list_edits(ind.id) == []


class TestActivityLog:
    def test_every_operation_writes_one_row(self, make_indicator, actors):
        ind = make_indicator()
        lifecycle.update_progress(ind.id, 10, actors["admin"])
        lifecycle.update(ind.id, {"unit_of_measure": "files"}, actors["admin"])

        rows = AuditLog.query.filter_by(entity_id=str(ind.id)).order_by(AuditLog.id).all()
        assert [r.action for r in rows] == ["indicator.create", "indicator.progress", "indicator.update"]
        assert rows[0].actor_user_id == actors["top"].user_id
        assert rows[1].diff == {"old": 0, "new": 10}
        assert json.loads(rows[2].diff_json)["changes"]["unit_of_measure"]["new"] == "files"
        assert rows[2].entity_label == "Clear case backlog"
