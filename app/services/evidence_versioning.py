"""
Performance Indicator Platform
Evidence Versioning — ingestion, archival and removal of uploaded evidence.

Evidence is never overwritten.  A resubmission after a rejection archives
every active item first; the new batch is stamped with the resubmission
attempt it belongs to.  Physical deletion happens only through ``remove``.

Ingestion:
    - ZIP archives are expanded, one Evidence per contained file, each
      inheriting the archive's description.
    - Uploads run on a bounded thread pool; entries come back in input order
      once every upload has resolved.
    - If any upload fails, everything this call already stored is released
      and StorageError is raised.  Nothing touches the indicator.

Usage:
    from app.services.evidence_versioning import EvidenceUpload, ingest

    items = ingest(uploads, descriptions, uploader_id=7, attempt=1,
                   storage=storage, folder="indicators/evidence/42")
"""

from __future__ import annotations

import io
import logging
import mimetypes
import os
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone

from app.core.exceptions import AuthorizationError, NotFoundError, StorageError
from app.models.indicator import (
    EVIDENCE_PLACEHOLDER_DESCRIPTION,
    Evidence,
    Indicator,
)
from app.services.blob_storage import normalize_access_tier, normalize_resource_kind
from app.services.permission import Actor

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_WORKERS = 4
ZIP_MIME_TYPES = {"application/zip", "application/x-zip-compressed"}


@dataclass(frozen=True)
class EvidenceUpload:
    """One file handed to ``ingest``; the blueprint builds these from the request."""

    file_name: str
    data: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


def _is_zip(upload: EvidenceUpload) -> bool:
    if upload.mime_type not in ZIP_MIME_TYPES and not upload.file_name.lower().endswith(".zip"):
        return False
    return zipfile.is_zipfile(io.BytesIO(upload.data))


def _expand(upload: EvidenceUpload) -> list[EvidenceUpload]:
    if not _is_zip(upload):
        return [upload]
    entries = []
    with zipfile.ZipFile(io.BytesIO(upload.data)) as archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            name = os.path.basename(info.filename)
            if not name:
                continue
            entries.append(EvidenceUpload(
                file_name=name,
                data=archive.read(info),
                mime_type=mimetypes.guess_type(name)[0] or "application/octet-stream",
            ))
    logger.debug("Expanded archive %s into %d entries", upload.file_name, len(entries))
    return entries


def _describe(descriptions, index: int) -> str:
    if descriptions and index < len(descriptions):
        text = (descriptions[index] or "").strip()
        if text:
            return text
    return EVIDENCE_PLACEHOLDER_DESCRIPTION


def release(storage, refs) -> list[str]:
    """Best-effort deletion of stored objects.

    Args:
        refs: iterable of ``(public_id, resource_kind)``.

    Returns:
        The public ids that could not be released.
    """
    failed = []
    for public_id, resource_kind in refs:
        try:
            storage.delete(public_id, resource_kind)
        except Exception:
            logger.exception("Failed to release stored object %s", public_id)
            failed.append(public_id)
    return failed


def ingest(
    files: list[EvidenceUpload],
    descriptions: list[str] | None,
    uploader_id: int,
    attempt: int = 0,
    *,
    storage,
    folder: str,
    max_workers: int | None = None,
) -> list[Evidence]:
    """
    Upload *files* and build one unattached Evidence per stored object.

    Descriptions are matched to input files by position; an archive's
    description applies to every file inside it.

    Raises:
        StorageError: any upload failed (already stored objects released).
    """
    batch: list[tuple[EvidenceUpload, str]] = []
    for index, upload in enumerate(files):
        description = _describe(descriptions, index)
        for entry in _expand(upload):
            batch.append((entry, description))
    if not batch:
        return []

    workers = max(1, min(max_workers or DEFAULT_UPLOAD_WORKERS, len(batch)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="evidence-upload") as pool:
        futures = [
            pool.submit(storage.store, entry.data, folder, entry.file_name)
            for entry, _description in batch
        ]

    stored = []
    failures = []
    for (entry, _description), future in zip(batch, futures):
        try:
            stored.append(future.result())
        except Exception as exc:
            logger.warning("Upload of %s failed: %s", entry.file_name, exc)
            failures.append(entry.file_name)
            stored.append(None)

    if failures:
        release(storage, [(b.public_id, b.resource_kind) for b in stored if b is not None])
        raise StorageError(
            f"Evidence upload failed for {len(failures)} of {len(batch)} file(s)",
            details={"failed_files": failures},
        )

    now = datetime.now(timezone.utc)
    items = []
    for (entry, description), blob in zip(batch, stored):
        items.append(Evidence(
            file_name=entry.file_name,
            file_size=entry.size,
            mime_type=entry.mime_type,
            description=description,
            public_id=blob.public_id,
            resource_kind=normalize_resource_kind(blob.resource_kind),
            access_tier=normalize_access_tier(blob.access_tier),
            format=blob.format,
            secure_url=blob.secure_url,
            status="active",
            is_archived=False,
            is_resubmission=attempt > 0,
            resubmission_attempt=attempt,
            uploaded_by=uploader_id,
            uploaded_at=now,
        ))
    return items


def archive_active(indicator: Indicator) -> int:
    """Stamp every active evidence item archived.  Returns how many changed."""
    now = datetime.now(timezone.utc)
    count = 0
    for item in indicator.active_evidence:
        item.status = "archived"
        item.is_archived = True
        item.archived_at = now
        count += 1
    return count


def remove(indicator: Indicator, evidence_id: int, requester: Actor) -> Evidence:
    """
    Detach one evidence item from *indicator*.

    A ``submitted`` indicator left without active evidence falls back to
    ``pending``.  The caller commits and then releases the stored object.

    Raises:
        NotFoundError: no such evidence on this indicator.
        AuthorizationError: requester is not the uploader, or the record is sealed.
    """
    item = next((e for e in indicator.evidence if e.id == evidence_id), None)
    if item is None:
        raise NotFoundError(resource="Evidence", resource_id=evidence_id)
    if indicator.is_sealed:
        raise AuthorizationError("Evidence on a completed indicator cannot be removed",
                                 details={"status": indicator.status})
    if item.uploaded_by != requester.user_id:
        raise AuthorizationError("Only the uploader may remove this evidence",
                                 details={"evidence_id": evidence_id})

    indicator.evidence.remove(item)
    if not indicator.active_evidence and indicator.status == "submitted":
        indicator.status = "pending"
    return item
