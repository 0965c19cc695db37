"""
Review Workflow Tests — status machine rules applied to a loaded indicator:
  - Transition table per action and role
  - Reject bookkeeping (remark, progress, result, rejection_count)
  - Score grading: 100 / partial / zero
  - Sealed-record guard
"""

from datetime import date

import pytest

from app.core.exceptions import AuthorizationError, ConflictError, ValidationError
from app.services import review_workflow as wf


@pytest.fixture()
def indicator(make_indicator):
    return make_indicator()


def _in_status(indicator, status):
    indicator.status = status
    return indicator


class TestTransitionTable:
    def test_every_state_but_completed_accepts_submit(self):
        assert set(wf.REVIEW_TRANSITIONS["submit"]["from"]) == {
            "pending", "submitted", "approved", "rejected", "overdue", "partially_completed",
        }

    def test_pending_cannot_be_reviewed(self, indicator, actors):
        for actor in ("admin", "top"):
            with pytest.raises(ConflictError):
                wf.review(indicator, actors[actor], "approve")
        with pytest.raises(ConflictError):
            wf.review(indicator, actors["admin"], "reject", remark="nothing here")

    def test_rejected_cannot_be_rejected_again(self, indicator, actors):
        _in_status(indicator, "rejected")
        with pytest.raises(ConflictError):
            wf.review(indicator, actors["admin"], "reject", remark="still wrong")

    @pytest.mark.parametrize("status", ["submitted", "overdue", "partially_completed"])
    def test_admin_approves_to_approved(self, indicator, actors, status):
        _in_status(indicator, status)
        outcome = wf.review(indicator, actors["admin"], "approve")
        assert outcome == {"transition": "approve", "old_status": status, "new_status": "approved"}
        assert (indicator.progress, indicator.result) == (100, "pass")

    def test_admin_cannot_approve_twice(self, indicator, actors):
        _in_status(indicator, "approved")
        with pytest.raises(ConflictError):
            wf.review(indicator, actors["admin"], "approve")

    @pytest.mark.parametrize("status", ["submitted", "overdue", "approved", "partially_completed"])
    def test_top_authority_ratifies(self, indicator, actors, users, status):
        _in_status(indicator, status)
        outcome = wf.review(indicator, actors["top"], "approve")
        assert outcome["transition"] == "ratify"
        assert indicator.status == "completed"
        assert indicator.reviewed_by == users["top"].id
        assert indicator.reviewed_at is not None

    def test_unknown_action(self, indicator, actors):
        _in_status(indicator, "submitted")
        with pytest.raises(ValidationError):
            wf.review(indicator, actors["admin"], "escalate")

    def test_action_is_case_insensitive(self, indicator, actors):
        _in_status(indicator, "submitted")
        assert wf.review(indicator, actors["admin"], " Approve ")["new_status"] == "approved"


class TestReject:
    def test_blank_remark_refused_before_mutation(self, indicator, actors):
        _in_status(indicator, "submitted")
        with pytest.raises(ValidationError):
            wf.review(indicator, actors["admin"], "reject", remark="   ")
        assert indicator.status == "submitted"
        assert indicator.rejection_count == 0
        assert indicator.notes == []

    def test_reject_bookkeeping(self, indicator, actors):
        _in_status(indicator, "approved")
        indicator.progress = 100
        indicator.result = "pass"

        wf.review(indicator, actors["admin"], "reject", remark="Signature missing",
                  report_data={"reason": "signature"})
        assert indicator.status == "rejected"
        assert indicator.progress == 0
        assert indicator.result == "fail"
        assert indicator.rejection_count == 1
        assert [n.text for n in indicator.notes] == ["Signature missing"]
        assert indicator.report_data == {"reason": "signature"}
        assert indicator.edit_history[-1].changes == {
            "status": {"old": "approved", "new": "rejected"},
            "progress": {"old": 100, "new": 0},
            "result": {"old": "pass", "new": "fail"},
        }

    def test_report_data_must_be_object(self, indicator, actors):
        _in_status(indicator, "submitted")
        with pytest.raises(ValidationError):
            wf.review(indicator, actors["admin"], "approve", report_data=["not", "a", "dict"])

    def test_bad_report_data_refused_before_mutation(self, indicator, actors):
        _in_status(indicator, "submitted")
        with pytest.raises(ValidationError):
            wf.review(indicator, actors["admin"], "reject", remark="Blurry scan",
                      report_data=["bad"])
        assert indicator.status == "submitted"
        assert indicator.progress == 0
        assert indicator.result is None
        assert indicator.rejection_count == 0
        assert indicator.notes == []
        assert indicator.edit_history == []


class TestSubmit:
    @pytest.mark.parametrize("status,result", [("rejected", "fail"), ("approved", "pass")])
    def test_resubmission_clears_result(self, indicator, actors, status, result):
        _in_status(indicator, status)
        indicator.result = result

        wf.submit_evidence(indicator, actors["alice"], [])
        assert indicator.status == "submitted"
        assert indicator.result is None
        assert indicator.edit_history[-1].changes["result"] == {"old": result, "new": None}


class TestSealedGuard:
    def test_admin_blocked_on_completed(self, indicator, actors):
        _in_status(indicator, "completed")
        with pytest.raises(AuthorizationError):
            wf.review(indicator, actors["admin"], "reject", remark="reopen")
        with pytest.raises(AuthorizationError):
            wf.submit_score(indicator, actors["admin"], 50)

    def test_top_authority_hits_state_rule_instead(self, indicator, actors):
        _in_status(indicator, "completed")
        with pytest.raises(ConflictError):
            wf.review(indicator, actors["top"], "reject", remark="reopen")
        with pytest.raises(ConflictError):
            wf.submit_score(indicator, actors["top"], 50)

    def test_assignee_cannot_submit_on_sealed(self, indicator, actors):
        _in_status(indicator, "completed")
        with pytest.raises(AuthorizationError):
            wf.check_can_submit(indicator, actors["alice"])


class TestScore:
    @pytest.mark.parametrize("raw,expected", [(0, 0), ("42", 42), (99.6, 100), (100, 100)])
    def test_parse_score(self, raw, expected):
        assert wf.parse_score(raw) == expected

    @pytest.mark.parametrize("raw", [-0.5, 100.1, "abc", None, True, float("nan")])
    def test_parse_score_rejects(self, raw):
        with pytest.raises(ValidationError):
            wf.parse_score(raw)

    def test_member_cannot_score(self, indicator, actors):
        with pytest.raises(AuthorizationError):
            wf.submit_score(indicator, actors["alice"], 50)

    def test_full_score_finalizes(self, indicator, actors):
        _in_status(indicator, "submitted")
        outcome = wf.submit_score(indicator, actors["admin"], 100)
        assert outcome == {"score": 100, "old_status": "submitted", "new_status": "completed"}
        assert (indicator.progress, indicator.result) == (100, "pass")

    def test_partial_score(self, indicator, actors):
        outcome = wf.submit_score(indicator, actors["admin"], 35, note="Q1 done",
                                  next_deadline=date(2030, 3, 31))
        assert outcome["new_status"] == "partially_completed"
        assert indicator.progress == 35
        assert indicator.result is None
        assert indicator.next_deadline == date(2030, 3, 31)
        assert [s.score for s in indicator.score_history] == [35]
        assert [n.text for n in indicator.notes] == ["Q1 done"]

    def test_partial_score_clears_previous_result(self, indicator, actors):
        _in_status(indicator, "rejected")
        indicator.result = "fail"
        wf.submit_score(indicator, actors["admin"], 60)
        assert indicator.status == "partially_completed"
        assert indicator.result is None

    def test_zero_score_records_without_transition(self, indicator, actors):
        outcome = wf.submit_score(indicator, actors["admin"], 0)
        assert outcome["new_status"] == "pending"
        assert [s.score for s in indicator.score_history] == [0]
        assert indicator.edit_history == []
