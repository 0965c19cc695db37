"""
Notification delivery tests — the default collaborators behind the lifecycle:
  - EmailService template rendering and log-only sending
  - NotificationService per-user and per-role records
  - LocalBlobStorage on a temporary directory
"""

import os

import pytest

from app.core.exceptions import StorageError
from app.models.scheduling import EmailLog
from app.services.blob_storage import LocalBlobStorage, guess_resource_kind
from app.services.email_service import EmailService
from app.services.notification import NotificationService
from app.services.permission import Role


# ═══════════════════════════════════════════════════════════════════════════
# Email
# ═══════════════════════════════════════════════════════════════════════════


class TestEmailService:
    def test_render_rejection(self):
        subject, html, text = EmailService.render("indicator_rejected", {
            "indicator_title": "Clear case backlog",
            "remark": "Missing signatures",
            "app_url": "https://pi.test/indicators/1",
        })
        assert subject == "[ACTION REQUIRED] Revision Needed: Clear case backlog"
        assert "Missing signatures" in html
        assert "https://pi.test/indicators/1" in html
        assert text.startswith("REVISION REQUIRED: Clear case backlog")

    def test_html_body_escapes_context(self):
        subject, html, text = EmailService.render("indicator_rejected", {
            "indicator_title": "Backlog <Q1>",
            "remark": '<script>alert("x")</script>',
            "app_url": "https://pi.test/indicators/1",
        })
        assert "<script>" not in html
        assert "&lt;script&gt;" in html
        assert "Backlog &lt;Q1&gt;" in html
        assert subject.endswith("Backlog <Q1>")
        assert '<script>alert("x")</script>' in text

    def test_missing_context_keys_are_left_visible(self):
        subject, _html, text = EmailService.render("indicator_approved", {"indicator_title": "X"})
        assert subject == "[SUCCESS] Indicator Approved: X"
        assert "{outcome}" in text

    def test_unknown_template(self):
        assert EmailService.render("nope", {}) is None
        assert EmailService.send_from_template(to_email="a@b.test", template_name="nope",
                                               context={}) is None

    def test_send_logs_in_dev_mode(self, make_indicator):
        ind = make_indicator()
        log = EmailService.send_from_template(
            to_email="alice@court.test",
            to_name="Alice",
            template_name="indicator_assigned",
            context={"indicator_title": "Clear case backlog", "assigned_by": "Registrar",
                     "due_date": "30 June 2030"},
            kind="assignment",
            indicator_id=ind.id,
        )
        assert log.status == "sent"
        assert log.sent_at is not None
        stored = EmailLog.query.one()
        assert stored.recipient_email == "alice@court.test"
        assert stored.template_name == "indicator_assigned"
        assert stored.kind == "assignment"
        assert stored.indicator_id == ind.id


# ═══════════════════════════════════════════════════════════════════════════
# Notifications
# ═══════════════════════════════════════════════════════════════════════════


class TestNotificationService:
    def test_user_and_role_feeds(self, users):
        alice, admin = users["alice"], users["admin"]
        NotificationService.notify(target_user_id=alice.id, title="Assigned",
                                   kind="assignment", metadata={"indicator_id": 1})
        NotificationService.emit_to_role(Role.ADMIN, {"title": "Evidence submitted",
                                                      "kind": "evidence"})

        items, total = NotificationService.list_for_recipient(alice.id, role="member")
        assert total == 1
        assert items[0].title == "Assigned"

        items, total = NotificationService.list_for_recipient(admin.id, role=Role.ADMIN)
        assert total == 1
        assert items[0].recipient_role == "admin"

    def test_unknown_kind_falls_back_to_system(self, users):
        n = NotificationService.notify(target_user_id=users["bob"].id, title="Hi", kind="party")
        assert n.kind == "system"


# ═══════════════════════════════════════════════════════════════════════════
# Local blob storage
# ═══════════════════════════════════════════════════════════════════════════


class TestLocalBlobStorage:
    def test_store_and_delete(self, tmp_path):
        storage = LocalBlobStorage(str(tmp_path), base_url="https://files.test/")
        blob = storage.store(b"hello", "indicators/evidence/7", "court minutes.pdf")

        assert blob.public_id.startswith("indicators/evidence/7/")
        assert blob.public_id.endswith("_court_minutes.pdf")
        assert blob.resource_kind == "raw"
        assert blob.format == "pdf"
        assert blob.access_tier == "authenticated"
        assert blob.secure_url == f"https://files.test/{blob.public_id}"
        path = tmp_path.joinpath(*blob.public_id.split("/"))
        assert path.read_bytes() == b"hello"

        storage.delete(blob.public_id, blob.resource_kind)
        assert not path.exists()
        # Releasing twice is harmless.
        storage.delete(blob.public_id, blob.resource_kind)

    def test_fetch_reads_back_and_reports_missing(self, tmp_path):
        storage = LocalBlobStorage(str(tmp_path))
        blob = storage.store(b"signed minutes", "indicators/evidence/3", "minutes.pdf")
        assert storage.fetch(blob.public_id, blob.resource_kind) == b"signed minutes"

        storage.delete(blob.public_id)
        with pytest.raises(StorageError):
            storage.fetch(blob.public_id)

    def test_traversal_is_refused(self, tmp_path):
        storage = LocalBlobStorage(str(tmp_path / "root"))
        with pytest.raises(StorageError):
            storage.delete("../../etc/passwd")

    def test_unwritable_root(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        storage = LocalBlobStorage(str(blocker))
        with pytest.raises(StorageError):
            storage.store(b"x", "f", "a.pdf")
        assert os.path.isfile(blocker)

    @pytest.mark.parametrize("name,kind", [
        ("scan.png", "image"), ("clip.mp4", "video"), ("report.pdf", "raw"), ("noext", "raw"),
    ])
    def test_resource_kind_guess(self, name, kind):
        assert guess_resource_kind(name) == kind
