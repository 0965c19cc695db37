"""
Overdue Sweep & Scheduler Tests.

mark_overdue is invoked by the external scheduler; these tests drive it with
an explicit ``today`` and through SchedulerService.run_job.
"""

from datetime import date

from sqlalchemy import text

from app.models import db
from app.models.indicator import Indicator
from app.models.scheduling import ScheduledJob
from app.services import indicator_lifecycle as lifecycle
from app.services.evidence_versioning import EvidenceUpload
from app.services.scheduler_service import SchedulerService, get_registered_jobs


def _submit(ind, actor):
    lifecycle.submit_evidence(ind.id, actor, [EvidenceUpload(file_name="a.pdf", data=b"x")])


class TestMarkOverdue:
    def test_flips_pending_and_submitted_past_due(self, make_indicator, actors, sink, mailer):
        pending = make_indicator()
        submitted = make_indicator()
        _submit(submitted, actors["alice"])
        approved = make_indicator()
        _submit(approved, actors["alice"])
        lifecycle.review(approved.id, actors["admin"], "approve")
        future = make_indicator(due_date="2031-12-31")
        sink.reset()
        mailer.sent.clear()

        result = lifecycle.mark_overdue(today=date(2030, 7, 1))

        assert result == {"checked": 2, "marked_overdue": 2, "conflicts": 0, "notified": 2}
        assert pending.status == "overdue"
        assert submitted.status == "overdue"
        assert approved.status == "approved"
        assert future.status == "pending"
        assert [m["template"] for m in mailer.sent] == ["indicator_overdue", "indicator_overdue"]
        assert mailer.sent[0]["context"]["user_name"] == "Alice"

    def test_records_system_edit(self, make_indicator):
        ind = make_indicator()
        lifecycle.mark_overdue(today=date(2030, 7, 1))
        entry = ind.edit_history[-1]
        assert entry.updated_by is None
        assert entry.changes == {"status": {"old": "pending", "new": "overdue"}}

    def test_stale_row_is_counted_and_skipped(self, make_indicator):
        first = make_indicator()
        second = make_indicator()
        assert first.revision == 1
        # Another writer got to the first indicator after we read it.
        db.session.execute(text("UPDATE indicators SET revision = revision + 1 WHERE id = :id"),
                           {"id": first.id})

        result = lifecycle.mark_overdue(today=date(2030, 7, 1))
        assert result["checked"] == 2
        assert result["conflicts"] == 1
        assert result["marked_overdue"] == 1

        db.session.expire_all()
        assert db.session.get(Indicator, first.id).status == "pending"
        assert db.session.get(Indicator, second.id).status == "overdue"

    def test_overdue_resubmission_has_no_result(self, make_indicator, actors):
        ind = make_indicator()
        _submit(ind, actors["alice"])
        lifecycle.review(ind.id, actors["admin"], "reject", remark="Unsigned")
        _submit(ind, actors["alice"])
        lifecycle.mark_overdue(today=date(2030, 7, 1))
        assert ind.status == "overdue"
        assert ind.result is None

    def test_due_today_is_not_overdue(self, make_indicator):
        ind = make_indicator()
        result = lifecycle.mark_overdue(today=date(2030, 6, 30))
        assert result["marked_overdue"] == 0
        assert ind.status == "pending"

    def test_overdue_does_not_block_review(self, make_indicator, actors):
        ind = make_indicator()
        _submit(ind, actors["alice"])
        lifecycle.mark_overdue(today=date(2030, 7, 1))
        assert ind.status == "overdue"

        lifecycle.review(ind.id, actors["admin"], "approve")
        assert ind.status == "approved"

    def test_overdue_can_resubmit(self, make_indicator, actors):
        ind = make_indicator()
        lifecycle.mark_overdue(today=date(2030, 7, 1))
        _submit(ind, actors["alice"])
        assert ind.status == "submitted"


class TestSchedulerJob:
    def test_job_is_registered(self):
        assert "overdue_sweep" in get_registered_jobs()

    def test_run_job_records_outcome(self, make_indicator):
        ind = make_indicator(start_date="2024-01-01", due_date="2024-01-10")
        ind_id = ind.id
        db.session.commit()

        outcome = SchedulerService.run_job("overdue_sweep")
        assert outcome["status"] == "success"
        assert outcome["result"]["marked_overdue"] == 1

        db.session.expire_all()
        assert db.session.get(Indicator, ind_id).status == "overdue"
        record = ScheduledJob.query.filter_by(job_name="overdue_sweep").one()
        assert record.run_count == 1
        assert record.last_run_status == "success"

    def test_paused_job_is_skipped(self):
        SchedulerService.toggle_job("overdue_sweep", False)
        outcome = SchedulerService.run_job("overdue_sweep")
        assert outcome["status"] == "skipped"

    def test_unknown_job(self):
        assert SchedulerService.run_job("nope")["status"] == "error"

    def test_toggle_job_command(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["toggle-job", "overdue_sweep", "--disable"])
        assert result.exit_code == 0
        assert "overdue_sweep: paused" in result.output
        assert SchedulerService.run_job("overdue_sweep")["status"] == "skipped"

        result = runner.invoke(args=["toggle-job", "overdue_sweep", "--enable"])
        assert "overdue_sweep: active" in result.output
        assert SchedulerService.run_job("overdue_sweep")["status"] == "success"

        assert runner.invoke(args=["toggle-job", "nope"]).exit_code == 1
