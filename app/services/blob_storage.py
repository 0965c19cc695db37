"""
Performance Indicator Platform
Blob storage — where evidence bytes physically live.

The lifecycle engine only keeps the reference returned by ``store``, reads the
bytes back through ``fetch`` for downloads and asks for ``delete`` when
evidence is removed.  The default implementation writes under ``UPLOAD_DIR``;
any object with the same three methods can be installed as
``app.extensions["blob_storage"]``.

``store`` is called from upload worker threads, so implementations must not
touch the Flask application context.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import re
from dataclasses import dataclass
from uuid import uuid4

from flask import current_app

from app.core.exceptions import StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredBlob:
    public_id: str
    resource_kind: str
    access_tier: str
    format: str
    secure_url: str | None


# ── Normalizers ──────────────────────────────────────────────────────────────

def normalize_resource_kind(value: str | None) -> str:
    """Collapse a storage-reported type onto raw | image | video."""
    value = (value or "").lower()
    if value in ("image", "video"):
        return value
    return "raw"


def normalize_access_tier(value: str | None) -> str:
    """Collapse a storage-reported delivery type onto authenticated | upload."""
    return "upload" if (value or "").lower() == "upload" else "authenticated"


def guess_resource_kind(file_name: str, mime_type: str | None = None) -> str:
    mime_type = mime_type or mimetypes.guess_type(file_name)[0] or ""
    return normalize_resource_kind(mime_type.split("/", 1)[0])


def guess_format(file_name: str) -> str:
    _root, ext = os.path.splitext(file_name)
    return ext.lstrip(".").lower() or "bin"


def _build_object_name(folder: str | None, file_name: str) -> str:
    safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", file_name) or "evidence.bin"
    if not folder:
        return f"{uuid4().hex}_{safe_name}"
    clean_folder = re.sub(r"[^A-Za-z0-9/_.-]", "_", folder).strip("/")
    return f"{clean_folder}/{uuid4().hex}_{safe_name}"


# ── Local filesystem backend ─────────────────────────────────────────────────

class LocalBlobStorage:
    """Stores objects as files below *root*.

    Args:
        root: Directory that holds every stored object.
        base_url: Public prefix used to build ``secure_url`` (optional).
        access_tier: Tier stamped on every stored object.
    """

    def __init__(self, root: str, base_url: str | None = None,
                 access_tier: str = "authenticated") -> None:
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip("/") if base_url else None
        self.access_tier = normalize_access_tier(access_tier)

    def _path_for(self, public_id: str) -> str:
        path = os.path.abspath(os.path.join(self.root, *public_id.split("/")))
        if os.path.commonpath([self.root, path]) != self.root:
            raise StorageError("Object reference escapes the storage root",
                               details={"public_id": public_id})
        return path

    def store(self, data: bytes, folder: str, name: str) -> StoredBlob:
        public_id = _build_object_name(folder, name)
        path = self._path_for(public_id)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise StorageError(f"Could not store '{name}'",
                               details={"file_name": name}) from exc

        logger.debug("Stored blob %s (%d bytes)", public_id, len(data))
        return StoredBlob(
            public_id=public_id,
            resource_kind=guess_resource_kind(name),
            access_tier=self.access_tier,
            format=guess_format(name),
            secure_url=f"{self.base_url}/{public_id}" if self.base_url else None,
        )

    def fetch(self, public_id: str, resource_kind: str = "raw") -> bytes:
        path = self._path_for(public_id)
        try:
            with open(path, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise StorageError(f"Could not read '{public_id}'",
                               details={"public_id": public_id,
                                        "resource_kind": resource_kind}) from exc

    def delete(self, public_id: str, resource_kind: str = "raw") -> None:
        path = self._path_for(public_id)
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.info("Blob %s already absent", public_id)
        except OSError as exc:
            raise StorageError(f"Could not delete '{public_id}'",
                               details={"public_id": public_id,
                                        "resource_kind": resource_kind}) from exc


def build_blob_storage(app) -> LocalBlobStorage:
    return LocalBlobStorage(
        root=app.config["UPLOAD_DIR"],
        base_url=app.config.get("STORAGE_BASE_URL"),
    )


def get_blob_storage():
    return current_app.extensions["blob_storage"]
