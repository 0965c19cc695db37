"""
Indicator blueprint — HTTP surface of the indicator lifecycle.

Endpoint groups:
  Indicators        POST/GET            /api/v1/indicators
                    GET/PUT/DELETE      /api/v1/indicators/<id>
  Evidence          POST                /api/v1/indicators/<id>/evidence   (multipart)
                    DELETE              /api/v1/indicators/<id>/evidence/<evidence_id>
                    GET                 /api/v1/indicators/<id>/evidence/<evidence_id>/download
  Review            POST                /api/v1/indicators/<id>/review
  Progress / score  PATCH               /api/v1/indicators/<id>/progress
                    POST                /api/v1/indicators/<id>/score
  Audit trail       GET                 /api/v1/indicators/<id>/history

The acting user comes from ``g.actor`` (see middleware/actor_context.py).
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import io
import logging

from flask import Blueprint, g, jsonify, request, send_file
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from app.blueprints import paginate_items
from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from app.services import indicator_lifecycle as lifecycle
from app.services.evidence_versioning import EvidenceUpload
from app.services.permission import Capability, has_capability
from app.services.review_workflow import is_assignee
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

indicator_bp = Blueprint("indicator", __name__, url_prefix="/api/v1")


# ── Request helpers ───────────────────────────────────────────────────────────


def _actor_required():
    actor = getattr(g, "actor", None)
    if actor is None:
        return None, api_error(E.UNAUTHENTICATED, "An authenticated user is required")
    return actor, None


def _json_body() -> tuple[dict | None, tuple | None]:
    data = request.get_json(silent=True)
    if data is None:
        return None, api_error(E.VALIDATION_REQUIRED, "A JSON body is required")
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "The JSON body must be an object")
    return data, None


# ── Error handlers ────────────────────────────────────────────────────────────


@indicator_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error), details=error.details or None)


@indicator_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@indicator_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error), details=error.details)


@indicator_bp.errorhandler(AuthorizationError)
def _handle_forbidden(error: AuthorizationError):
    return api_error(E.FORBIDDEN, str(error), details=error.details)


@indicator_bp.errorhandler(StorageError)
def _handle_storage(error: StorageError):
    logger.warning("Storage failure on %s: %s", request.endpoint, error)
    return api_error(E.STORAGE, str(error), details=error.details)


@indicator_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return jsonify({"error": error.description}), error.code
    logger.exception("Unexpected error in indicator_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Indicators
# ═════════════════════════════════════════════════════════════════════════


@indicator_bp.route("/indicators", methods=["POST"])
def create_indicator():
    """Create an indicator (top authority only).

    Body: {
        category_id, level2_category_id, indicator_category_id,
        unit_of_measure, start_date, due_date,
        assigned_to?, assigned_group?, assigned_to_type?,
        next_deadline?, calendar_event?, report_data?
    }
    Returns: created indicator (201).
    """
    actor, err = _actor_required()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err
    indicator = lifecycle.create(data, actor)
    return jsonify(indicator.to_dict(include_children=True)), 201


@indicator_bp.route("/indicators", methods=["GET"])
def list_indicators():
    """List indicators.

    Query params: scope = all | review_queue | mine (default mine), limit, offset
    """
    actor, err = _actor_required()
    if err:
        return err
    items = lifecycle.list_indicators(actor, request.args.get("scope", "mine"))
    page, total = paginate_items(items)
    return jsonify({"items": [i.to_dict() for i in page], "total": total}), 200


@indicator_bp.route("/indicators/<int:indicator_id>", methods=["GET"])
def get_indicator(indicator_id):
    actor, err = _actor_required()
    if err:
        return err
    indicator = lifecycle.get_indicator(indicator_id)
    if not has_capability(actor, Capability.LIST_ALL) and not is_assignee(indicator, actor):
        raise AuthorizationError("Indicator is not assigned to you",
                                 details={"indicator_id": indicator_id})
    return jsonify(indicator.to_dict(include_children=True)), 200


@indicator_bp.route("/indicators/<int:indicator_id>", methods=["PUT"])
def update_indicator(indicator_id):
    """Partial update; see ``indicator_lifecycle.update`` for accepted keys."""
    actor, err = _actor_required()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err
    indicator = lifecycle.update(indicator_id, data, actor)
    return jsonify(indicator.to_dict(include_children=True)), 200


@indicator_bp.route("/indicators/<int:indicator_id>", methods=["DELETE"])
def delete_indicator(indicator_id):
    actor, err = _actor_required()
    if err:
        return err
    result = lifecycle.delete(indicator_id, actor)
    return jsonify({"deleted": True, **result}), 200


# ═════════════════════════════════════════════════════════════════════════
# Evidence
# ═════════════════════════════════════════════════════════════════════════


@indicator_bp.route("/indicators/<int:indicator_id>/evidence", methods=["POST"])
def submit_evidence(indicator_id):
    """Upload evidence files.

    Multipart form: files (repeated), descriptions (repeated, positional)
    or a single description.
    """
    actor, err = _actor_required()
    if err:
        return err
    files = request.files.getlist("files")
    if not files:
        return api_error(E.VALIDATION_REQUIRED, "No files uploaded")

    descriptions = request.form.getlist("descriptions")
    if not descriptions and request.form.get("description"):
        descriptions = [request.form["description"]]

    uploads = [
        EvidenceUpload(
            file_name=secure_filename(f.filename or "") or "evidence.bin",
            data=f.read(),
            mime_type=f.mimetype or "application/octet-stream",
        )
        for f in files
    ]
    indicator = lifecycle.submit_evidence(indicator_id, actor, uploads, descriptions)
    return jsonify(indicator.to_dict(include_children=True)), 200


@indicator_bp.route("/indicators/<int:indicator_id>/evidence/<int:evidence_id>",
                    methods=["DELETE"])
def remove_evidence(indicator_id, evidence_id):
    actor, err = _actor_required()
    if err:
        return err
    indicator = lifecycle.remove_evidence(indicator_id, evidence_id, actor)
    return jsonify(indicator.to_dict(include_children=True)), 200


@indicator_bp.route("/indicators/<int:indicator_id>/evidence/<int:evidence_id>/download",
                    methods=["GET"])
def download_evidence(indicator_id, evidence_id):
    """Stream one evidence file back as an attachment (assignees and reviewers)."""
    actor, err = _actor_required()
    if err:
        return err
    evidence, data = lifecycle.open_evidence(indicator_id, evidence_id, actor)
    return send_file(
        io.BytesIO(data),
        mimetype=evidence.mime_type or "application/octet-stream",
        as_attachment=True,
        download_name=evidence.file_name,
    )


# ═════════════════════════════════════════════════════════════════════════
# Review / progress / score
# ═════════════════════════════════════════════════════════════════════════


@indicator_bp.route("/indicators/<int:indicator_id>/review", methods=["POST"])
def review_indicator(indicator_id):
    """Approve or reject.

    Body: {action: "approve" | "reject", remark?, report_data?}
    """
    actor, err = _actor_required()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err
    if not data.get("action"):
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    indicator = lifecycle.review(
        indicator_id, actor, data["action"],
        remark=data.get("remark"), report_data=data.get("report_data"),
    )
    return jsonify(indicator.to_dict(include_children=True)), 200


@indicator_bp.route("/indicators/<int:indicator_id>/progress", methods=["PATCH"])
def update_progress(indicator_id):
    """Body: {progress: 0..100}"""
    actor, err = _actor_required()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err
    if "progress" not in data:
        return api_error(E.VALIDATION_REQUIRED, "progress is required")
    indicator = lifecycle.update_progress(indicator_id, data["progress"], actor)
    return jsonify(indicator.to_dict()), 200


@indicator_bp.route("/indicators/<int:indicator_id>/score", methods=["POST"])
def submit_score(indicator_id):
    """Body: {score: 0..100, note?, next_deadline?}"""
    actor, err = _actor_required()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err
    if "score" not in data:
        return api_error(E.VALIDATION_REQUIRED, "score is required")
    indicator = lifecycle.submit_score(
        indicator_id, actor, data["score"],
        note=data.get("note"), next_deadline=data.get("next_deadline"),
    )
    return jsonify(indicator.to_dict(include_children=True)), 200


# ═════════════════════════════════════════════════════════════════════════
# Audit trail
# ═════════════════════════════════════════════════════════════════════════


@indicator_bp.route("/indicators/<int:indicator_id>/history", methods=["GET"])
def get_history(indicator_id):
    actor, err = _actor_required()
    if err:
        return err
    indicator = lifecycle.get_indicator(indicator_id)
    if not has_capability(actor, Capability.LIST_ALL) and not is_assignee(indicator, actor):
        raise AuthorizationError("Indicator is not assigned to you",
                                 details={"indicator_id": indicator_id})
    return jsonify(lifecycle.get_history(indicator_id)), 200
