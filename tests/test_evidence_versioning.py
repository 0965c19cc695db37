"""
Tests: evidence ingestion, archival and removal.
"""

import io
import zipfile

import pytest

from app.core.exceptions import AuthorizationError, NotFoundError, StorageError
from app.models import db
from app.models.indicator import EVIDENCE_PLACEHOLDER_DESCRIPTION
from app.services import evidence_versioning as ev
from app.services.evidence_versioning import EvidenceUpload


def _upload(name, data=b"x"):
    return EvidenceUpload(file_name=name, data=data)


def _zip(entries):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buf.getvalue()


class TestIngest:
    def test_one_entry_per_file_in_input_order(self, storage):
        files = [_upload(f"doc{i}.pdf", b"%d" % i) for i in range(6)]
        items = ev.ingest(files, ["first", "second"], uploader_id=7,
                          storage=storage, folder="f/1", max_workers=3)

        assert [i.file_name for i in items] == [f"doc{i}.pdf" for i in range(6)]
        assert items[0].description == "first"
        assert items[1].description == "second"
        assert all(i.description == EVIDENCE_PLACEHOLDER_DESCRIPTION for i in items[2:])
        assert all(i.status == "active" and not i.is_archived for i in items)
        assert all(i.uploaded_by == 7 for i in items)
        assert len(storage.objects) == 6

    def test_blank_description_gets_placeholder(self, storage):
        items = ev.ingest([_upload("a.pdf")], ["   "], uploader_id=1, storage=storage, folder="f")
        assert items[0].description == EVIDENCE_PLACEHOLDER_DESCRIPTION

    def test_attempt_marks_resubmission(self, storage):
        first = ev.ingest([_upload("a.pdf")], None, uploader_id=1, attempt=0,
                          storage=storage, folder="f")
        again = ev.ingest([_upload("b.pdf")], None, uploader_id=1, attempt=2,
                          storage=storage, folder="f")
        assert first[0].is_resubmission is False
        assert first[0].resubmission_attempt == 0
        assert again[0].is_resubmission is True
        assert again[0].resubmission_attempt == 2

    def test_storage_fields_copied(self, storage):
        item = ev.ingest([_upload("photo.png")], None, uploader_id=1,
                         storage=storage, folder="f")[0]
        assert item.public_id.startswith("f/")
        assert item.resource_kind == "image"
        assert item.access_tier == "authenticated"
        assert item.format == "png"
        assert item.secure_url.endswith(item.public_id)
        assert item.file_size == 1

    def test_zip_archive_expanded(self, storage):
        data = _zip({"minutes.pdf": b"a", "sub/": b"", "sub/photo.jpg": b"bb"})
        upload = EvidenceUpload(file_name="bundle.zip", data=data, mime_type="application/zip")
        items = ev.ingest([upload, _upload("extra.docx")], ["bundle desc", "extra desc"],
                          uploader_id=1, storage=storage, folder="f")

        assert [i.file_name for i in items] == ["minutes.pdf", "photo.jpg", "extra.docx"]
        assert [i.description for i in items] == ["bundle desc", "bundle desc", "extra desc"]
        assert items[1].file_size == 2

    def test_failed_upload_releases_stored_objects(self, storage):
        storage.fail_names = {"bad.pdf"}
        files = [_upload("ok1.pdf"), _upload("bad.pdf"), _upload("ok2.pdf")]

        with pytest.raises(StorageError) as exc:
            ev.ingest(files, None, uploader_id=1, storage=storage, folder="f")

        assert exc.value.details["failed_files"] == ["bad.pdf"]
        assert storage.objects == {}
        assert len(storage.deleted) == 2

    def test_empty_input_stores_nothing(self, storage):
        assert ev.ingest([], None, uploader_id=1, storage=storage, folder="f") == []


class TestArchiveAndRemove:
    def _submitted(self, make_indicator, actors, storage, names=("a.pdf", "b.pdf")):
        from app.services import indicator_lifecycle
        ind = make_indicator()
        return indicator_lifecycle.submit_evidence(
            ind.id, actors["alice"], [_upload(n) for n in names])

    def test_archive_active_is_idempotent(self, make_indicator, actors, storage):
        ind = self._submitted(make_indicator, actors, storage)
        assert ev.archive_active(ind) == 2
        assert ev.archive_active(ind) == 0
        assert all(e.status == "archived" and e.is_archived and e.archived_at for e in ind.evidence)

    def test_only_uploader_may_remove(self, make_indicator, actors, storage):
        ind = self._submitted(make_indicator, actors, storage)
        with pytest.raises(AuthorizationError):
            ev.remove(ind, ind.evidence[0].id, actors["bob"])

    def test_missing_evidence(self, make_indicator, actors, storage):
        ind = self._submitted(make_indicator, actors, storage)
        with pytest.raises(NotFoundError):
            ev.remove(ind, 9999, actors["alice"])

    def test_removing_last_active_resets_to_pending(self, make_indicator, actors, storage):
        ind = self._submitted(make_indicator, actors, storage, names=("only.pdf",))
        assert ind.status == "submitted"

        ev.remove(ind, ind.evidence[0].id, actors["alice"])
        assert ind.status == "pending"
        assert ind.evidence == []

    def test_removing_one_of_two_keeps_submitted(self, make_indicator, actors, storage):
        ind = self._submitted(make_indicator, actors, storage)
        ev.remove(ind, ind.evidence[0].id, actors["alice"])
        assert ind.status == "submitted"
        assert len(ind.active_evidence) == 1

    def test_sealed_indicator_refuses_removal(self, make_indicator, actors, storage):
        ind = self._submitted(make_indicator, actors, storage)
        ind.status = "completed"
        with pytest.raises(AuthorizationError):
            ev.remove(ind, ind.evidence[0].id, actors["alice"])
        db.session.rollback()
