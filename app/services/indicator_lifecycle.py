"""
Performance Indicator Platform
Indicator Lifecycle Service.

Entry point for every indicator operation.  Each call:
  - checks the actor's capability
  - validates input before touching the record
  - mutates the loaded indicator (delegating evidence handling to
    ``evidence_versioning`` and status changes to ``review_workflow``)
  - writes one AuditLog row and commits once
  - runs side effects (notifications, mail, storage release) after the
    commit; their failures are logged and never undo the change

A write based on a stale read (another request committed first) surfaces as
ConflictError; the caller may reload and retry.

Usage:
    from app.services import indicator_lifecycle

    indicator = indicator_lifecycle.create(payload, actor)
    indicator_lifecycle.review(indicator.id, reviewer, "approve", remark="OK")
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.audit import write_audit
from app.models.auth import User
from app.models.indicator import (
    ASSIGNMENT_TYPES,
    OVERDUE_ELIGIBLE_STATUSES,
    Indicator,
    IndicatorGroupMember,
)
from app.services import audit_trail, evidence_versioning, review_workflow
from app.services.blob_storage import get_blob_storage
from app.services.category_directory import get_category_directory
from app.services.email_service import get_mailer
from app.services.notification import get_notification_sink
from app.services.permission import Actor, Capability, Role, has_capability, require_capability
from app.utils.helpers import parse_date_input, parse_id, parse_id_list

logger = logging.getLogger(__name__)

CREATE_REQUIRED_FIELDS = (
    "category_id",
    "level2_category_id",
    "indicator_category_id",
    "unit_of_measure",
    "start_date",
    "due_date",
)

# Fields the generic update path refuses to change.
IMMUTABLE_FIELDS = ("indicator_title", "status")

LIST_SCOPES = {"all", "review_queue", "mine"}
REVIEW_QUEUE_STATUSES = ("pending", "submitted", "approved")


def _now():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Internals
# ═════════════════════════════════════════════════════════════════════════════

@contextmanager
def _write_guard(indicator_id, action: str):
    """
    Wrap one mutate-and-commit block.

    Autoflush stays off inside, so lazy-loading an owned collection cannot
    push the versioned UPDATE out early; the only flush is the one in
    ``_persist``.  A stale write anywhere in the block rolls back and
    becomes ConflictError.
    """
    try:
        with db.session.no_autoflush:
            yield
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale write on indicator %s (%s)", indicator_id, action,
                       extra={"indicator_id": indicator_id, "event_type": "conflict"})
        raise ConflictError(
            "Indicator was modified by another request; reload and retry",
            details={"indicator_id": indicator_id},
        ) from exc


def _persist(indicator: Indicator, *, action: str, actor_id: int | None,
             diff: dict | None = None, level: str = "info") -> None:
    """Write the audit row and commit.  Call inside ``_write_guard``."""
    write_audit(
        entity_type="indicator",
        entity_id=indicator.id,
        action=action,
        actor_user_id=actor_id,
        entity_label=indicator.indicator_title,
        level=level,
        diff=diff,
    )
    db.session.commit()


def _date(data: dict, key: str):
    try:
        return parse_date_input(data.get(key))
    except ValueError as exc:
        raise ValidationError(str(exc), details={key: "invalid date"}) from None


def _app_url(indicator_id) -> str:
    base = (current_app.config.get("FRONTEND_URL") or "").rstrip("/")
    return f"{base}/indicators/{indicator_id}"


def _ensure_users_exist(user_ids) -> None:
    if not user_ids:
        return
    found = set(db.session.execute(
        db.select(User.id).where(User.id.in_(user_ids))
    ).scalars())
    for uid in user_ids:
        if uid not in found:
            raise NotFoundError(resource="User", resource_id=uid)


def _parse_assignees(data: dict, current_to=None, current_group=None):
    try:
        assigned_to = parse_id(data["assigned_to"]) if "assigned_to" in data else current_to
        group = (parse_id_list(data["assigned_group"]) if "assigned_group" in data
                 else list(current_group or []))
    except ValueError as exc:
        raise ValidationError(str(exc), details={"assignees": "invalid id"}) from None
    if assigned_to is None and not group:
        raise ValidationError(
            "An indicator needs an individual assignee or a non-empty group",
            details={"assigned_to": "required", "assigned_group": "required"},
        )
    return assigned_to, group


def _assignment_type(value, assigned_to, group) -> str:
    """Resolve the assignment mode and check its own field is filled."""
    if value in (None, ""):
        return "individual" if assigned_to is not None else "group"
    value = str(value).strip().lower()
    if value not in ASSIGNMENT_TYPES:
        raise ValidationError(f"assigned_to_type must be one of {sorted(ASSIGNMENT_TYPES)}",
                              details={"assigned_to_type": value})
    if value == "individual" and assigned_to is None:
        raise ValidationError("An individual assignment needs assigned_to",
                              details={"assigned_to": "required"})
    if value == "group" and not group:
        raise ValidationError("A group assignment needs a non-empty assigned_group",
                              details={"assigned_group": "required"})
    return value


def _sync_group(indicator: Indicator, user_ids: list[int]) -> None:
    wanted = set(user_ids)
    for member in list(indicator.group_members):
        if member.user_id not in wanted:
            indicator.group_members.remove(member)
    existing = {m.user_id for m in indicator.group_members}
    for uid in user_ids:
        if uid not in existing:
            indicator.group_members.append(IndicatorGroupMember(user_id=uid))


def _resolve_category(directory, raw_id, label: str, level: int, parent_id=None):
    try:
        category_id = parse_id(raw_id)
    except ValueError:
        raise ValidationError(f"{label} id is invalid", details={label: raw_id}) from None
    ref = directory.get_by_id(category_id)
    if ref is None:
        raise NotFoundError(resource=label, resource_id=category_id)
    if ref.parent_id is not None and ref.parent_id == ref.id:
        raise ConflictError(f"{label} {ref.id} is its own parent", details={"category_id": ref.id})
    if ref.level != level:
        raise ConflictError(
            f"{label} {ref.id} is level {ref.level}, expected level {level}",
            details={"category_id": ref.id, "level": ref.level, "expected_level": level},
        )
    if parent_id is not None and ref.parent_id != parent_id:
        raise ConflictError(
            f"{label} {ref.id} does not belong to category {parent_id}",
            details={"category_id": ref.id, "parent_id": ref.parent_id,
                     "expected_parent_id": parent_id},
        )
    return ref


def _notify_assignees(indicator: Indicator, *, title: str, message: str, kind: str,
                      template: str, context: dict, user_ids=None) -> int:
    """One notification and one email per distinct target.  Best-effort."""
    sink = get_notification_sink()
    mailer = get_mailer()
    targets = list(dict.fromkeys(user_ids if user_ids is not None else indicator.assignee_ids))
    delivered = 0
    for uid in targets:
        try:
            sink.notify(target_user_id=uid, title=title, message=message, kind=kind,
                        metadata={"indicator_id": indicator.id})
            delivered += 1
        except Exception:
            db.session.rollback()
            logger.exception("Notification to user %s failed", uid,
                             extra={"indicator_id": indicator.id, "event_type": kind})

        user = db.session.get(User, uid)
        if user is None or not user.email:
            continue
        try:
            mailer.send_from_template(
                to_email=user.email,
                to_name=user.name,
                template_name=template,
                context={**context, "user_name": user.name or user.email},
                kind=kind,
                indicator_id=indicator.id,
            )
        except Exception:
            db.session.rollback()
            logger.exception("Email to user %s failed", uid,
                             extra={"indicator_id": indicator.id, "event_type": kind})
    return delivered


def _emit_to_reviewers(indicator: Indicator, submitter: Actor) -> None:
    sink = get_notification_sink()
    payload = {
        "title": "Evidence submitted for review",
        "message": f"New evidence was submitted for: {indicator.indicator_title}",
        "kind": "evidence",
        "metadata": {"indicator_id": indicator.id, "submitted_by": submitter.user_id},
    }
    for role in (Role.ADMIN, Role.TOP_AUTHORITY):
        try:
            sink.emit_to_role(role, payload)
        except Exception:
            db.session.rollback()
            logger.exception("Broadcast to role %s failed", role.value,
                             extra={"indicator_id": indicator.id, "event_type": "evidence"})


def _release(refs, indicator_id) -> list[str]:
    failed = evidence_versioning.release(get_blob_storage(), refs)
    if failed:
        logger.warning("Indicator %s: %d stored object(s) not released", indicator_id, len(failed),
                       extra={"indicator_id": indicator_id, "event_type": "storage_release"})
    return failed


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def get_indicator(indicator_id) -> Indicator:
    indicator = db.session.get(Indicator, indicator_id)
    if indicator is None:
        raise NotFoundError(resource="Indicator", resource_id=indicator_id)
    return indicator


def list_indicators(actor: Actor, scope: str = "mine") -> list[Indicator]:
    """
    Indicators visible to *actor*.

    Scopes:
        all           every indicator (admin, top authority)
        review_queue  pending / submitted / approved (admin, top authority)
        mine          assigned to the actor directly or through a group
    """
    scope = (scope or "mine").strip().lower()
    if scope not in LIST_SCOPES:
        raise ValidationError(f"scope must be one of {sorted(LIST_SCOPES)}", details={"scope": scope})

    stmt = db.select(Indicator)
    if scope in ("all", "review_queue"):
        require_capability(actor, Capability.LIST_ALL)
        if scope == "review_queue":
            stmt = stmt.where(Indicator.status.in_(REVIEW_QUEUE_STATUSES))
    else:
        in_group = db.select(IndicatorGroupMember.indicator_id).where(
            IndicatorGroupMember.user_id == actor.user_id
        )
        stmt = stmt.where(db.or_(Indicator.assigned_to == actor.user_id, Indicator.id.in_(in_group)))

    stmt = stmt.order_by(Indicator.due_date, Indicator.id)
    return db.session.execute(stmt).scalars().all()


def get_history(indicator_id) -> dict:
    get_indicator(indicator_id)
    return audit_trail.get_history(indicator_id)


# ═════════════════════════════════════════════════════════════════════════════
# Create / update / delete
# ═════════════════════════════════════════════════════════════════════════════

def create(data: dict, actor: Actor) -> Indicator:
    """
    Create an indicator and notify every distinct assignee.

    Raises:
        AuthorizationError: actor is not the top authority.
        ValidationError: missing fields, no assignee, due date not after start.
        NotFoundError: unknown category or user.
        ConflictError: category hierarchy mismatch.
    """
    require_capability(actor, Capability.CREATE_INDICATOR)
    data = data or {}

    missing = [f for f in CREATE_REQUIRED_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}",
                              details={f: "required" for f in missing})
    unit = str(data["unit_of_measure"]).strip()
    if not unit:
        raise ValidationError("unit_of_measure is required", details={"unit_of_measure": "required"})

    directory = get_category_directory()
    main = _resolve_category(directory, data["category_id"], "Category", level=1)
    level2 = _resolve_category(directory, data["level2_category_id"], "Level-2 category",
                               level=2, parent_id=main.id)
    leaf = _resolve_category(directory, data["indicator_category_id"], "Indicator category",
                             level=3, parent_id=level2.id)

    assigned_to, group = _parse_assignees(data)
    assigned_to_type = _assignment_type(data.get("assigned_to_type"), assigned_to, group)
    _ensure_users_exist([uid for uid in [assigned_to, *group] if uid is not None])

    start_date = _date(data, "start_date")
    due_date = _date(data, "due_date")
    if due_date <= start_date:
        raise ValidationError("due_date must be after start_date",
                              details={"start_date": start_date.isoformat(),
                                       "due_date": due_date.isoformat()})
    next_deadline = _date(data, "next_deadline")

    report_data = data.get("report_data") or {}
    if not isinstance(report_data, dict):
        raise ValidationError("report_data must be an object", details={"report_data": "object"})

    indicator = Indicator(
        category_id=main.id,
        level2_category_id=level2.id,
        indicator_title=leaf.title,
        unit_of_measure=unit,
        assigned_to_type=assigned_to_type,
        assigned_to=assigned_to,
        start_date=start_date,
        due_date=due_date,
        next_deadline=next_deadline,
        progress=0,
        status="pending",
        rejection_count=0,
        report_data=report_data,
        calendar_event=data.get("calendar_event"),
        created_by=actor.user_id,
    )
    indicator.group_members = [IndicatorGroupMember(user_id=uid) for uid in group]
    db.session.add(indicator)
    db.session.flush()

    _persist(indicator, action="indicator.create", actor_id=actor.user_id, level="success",
             diff={"assignees": indicator.assignee_ids})
    logger.info("Indicator %s created", indicator.id,
                extra={"indicator_id": indicator.id, "actor_id": actor.user_id,
                       "event_type": "create"})

    creator = db.session.get(User, actor.user_id)
    _notify_assignees(
        indicator,
        title="New Performance Indicator Assigned",
        message=f"You have been assigned: {indicator.indicator_title}",
        kind="assignment",
        template="indicator_assigned",
        context={
            "indicator_title": indicator.indicator_title,
            "assigned_by": (creator.name if creator and creator.name else "Administrator"),
            "due_date": indicator.due_date.strftime("%d %B %Y"),
            "app_url": _app_url(indicator.id),
        },
    )
    return indicator


def update(indicator_id, patch: dict, editor: Actor) -> Indicator:
    """
    Apply a partial update and record one EditHistory entry for it.

    Patch keys:
        unit_of_measure, start_date, due_date, next_deadline,
        assigned_to_type, assigned_to, assigned_group   tracked fields
        evidence: [{"id", "description"}]               description edits
        notes                                           appended as a Note
        report_data                                     merged
        calendar_event                                  replaced
    ``indicator_title`` and ``status`` may only be echoed back unchanged.
    """
    require_capability(editor, Capability.EDIT_INDICATOR)
    indicator = get_indicator(indicator_id)
    if indicator.is_sealed and not has_capability(editor, Capability.EDIT_SEALED):
        raise AuthorizationError("Indicator is completed and sealed",
                                 details={"indicator_id": indicator.id, "status": indicator.status})
    patch = patch or {}

    for field in IMMUTABLE_FIELDS:
        if field in patch and patch[field] != getattr(indicator, field):
            raise ValidationError(
                f"{field} cannot be changed through update",
                details={field: "immutable" if field == "indicator_title" else "use review workflow"},
            )

    # ── Validate everything before mutating ──────────────────────────────
    unit = indicator.unit_of_measure
    if "unit_of_measure" in patch:
        unit = str(patch["unit_of_measure"] or "").strip()
        if not unit:
            raise ValidationError("unit_of_measure cannot be empty",
                                  details={"unit_of_measure": "required"})

    start_date = _date(patch, "start_date") if "start_date" in patch else indicator.start_date
    due_date = _date(patch, "due_date") if "due_date" in patch else indicator.due_date
    if start_date is None or due_date is None:
        raise ValidationError("start_date and due_date cannot be cleared",
                              details={"start_date": "required", "due_date": "required"})
    if due_date <= start_date:
        raise ValidationError("due_date must be after start_date",
                              details={"start_date": start_date.isoformat(),
                                       "due_date": due_date.isoformat()})
    next_deadline = (_date(patch, "next_deadline") if "next_deadline" in patch
                     else indicator.next_deadline)

    assigned_to, group = _parse_assignees(patch, indicator.assigned_to, indicator.assigned_group)
    assigned_to_type = _assignment_type(patch.get("assigned_to_type", indicator.assigned_to_type),
                                        assigned_to, group)
    new_ids = [uid for uid in [assigned_to, *group]
               if uid is not None and uid not in indicator.assignee_ids]
    _ensure_users_exist(new_ids)

    evidence_edits = []
    for entry in patch.get("evidence") or []:
        if not isinstance(entry, dict) or "description" not in entry:
            raise ValidationError("evidence edits need an id and a description",
                                  details={"evidence": "invalid"})
        try:
            evidence_id = parse_id(entry.get("id"))
        except ValueError:
            evidence_id = None
        item = next((e for e in indicator.evidence if e.id == evidence_id), None)
        if item is None:
            raise NotFoundError(resource="Evidence", resource_id=entry.get("id"))
        evidence_edits.append((item, str(entry["description"] or "").strip()))

    report_data = patch.get("report_data")
    if report_data is not None and not isinstance(report_data, dict):
        raise ValidationError("report_data must be an object", details={"report_data": "object"})

    # ── Apply ────────────────────────────────────────────────────────────
    with _write_guard(indicator.id, "indicator.update"):
        before = audit_trail.snapshot(indicator)
        indicator.unit_of_measure = unit
        indicator.start_date = start_date
        indicator.due_date = due_date
        indicator.next_deadline = next_deadline
        indicator.assigned_to_type = assigned_to_type
        indicator.assigned_to = assigned_to
        _sync_group(indicator, group)
        changes = audit_trail.diff_fields(before, audit_trail.snapshot(indicator))

        for item, description in evidence_edits:
            if item.description != description:
                changes[f"evidence.{item.id}.description"] = {"old": item.description,
                                                              "new": description}
                item.description = description

        note = audit_trail.append_note(indicator, patch.get("notes"), editor.user_id)
        if report_data:
            merged = dict(indicator.report_data or {})
            merged.update(report_data)
            indicator.report_data = merged
        if "calendar_event" in patch:
            indicator.calendar_event = patch["calendar_event"]

        audit_trail.record_changes(indicator, editor.user_id, changes)
        indicator.updated_at = _now()
        _persist(indicator, action="indicator.update", actor_id=editor.user_id,
                 diff={"changes": changes, "note_added": note is not None})

    if new_ids:
        _notify_assignees(
            indicator,
            title="New Performance Indicator Assigned",
            message=f"You have been assigned: {indicator.indicator_title}",
            kind="assignment",
            template="indicator_assigned",
            context={
                "indicator_title": indicator.indicator_title,
                "assigned_by": "Administrator",
                "due_date": indicator.due_date.strftime("%d %B %Y"),
                "app_url": _app_url(indicator.id),
            },
            user_ids=new_ids,
        )
    return indicator


def update_progress(indicator_id, value, actor: Actor) -> Indicator:
    """Manual progress override; status and result are left alone."""
    require_capability(actor, Capability.EDIT_INDICATOR)
    if isinstance(value, bool) or value in (None, ""):
        raise ValidationError("progress must be a number", details={"progress": "number"})
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError("progress must be a number", details={"progress": "number"}) from None
    if not 0 <= number <= 100:
        raise ValidationError("progress must be between 0 and 100", details={"progress": "0..100"})

    indicator = get_indicator(indicator_id)
    if indicator.is_sealed and not has_capability(actor, Capability.EDIT_SEALED):
        raise AuthorizationError("Indicator is completed and sealed",
                                 details={"indicator_id": indicator.id})
    if indicator.status in ("completed", "rejected"):
        raise ConflictError(
            f"Progress of a {indicator.status} indicator is fixed",
            details={"status": indicator.status},
        )

    with _write_guard(indicator.id, "indicator.progress"):
        old = indicator.progress
        indicator.progress = number
        if indicator.progress != old:
            audit_trail.record_changes(indicator, actor.user_id,
                                       {"progress": {"old": old, "new": indicator.progress}})
        indicator.updated_at = _now()
        _persist(indicator, action="indicator.progress", actor_id=actor.user_id,
                 diff={"old": old, "new": indicator.progress})
    return indicator


def delete(indicator_id, actor: Actor) -> dict:
    """Release every stored evidence object, then remove the indicator and what it owns."""
    require_capability(actor, Capability.DELETE_INDICATOR)
    indicator = get_indicator(indicator_id)
    refs = [(e.public_id, e.resource_kind) for e in indicator.evidence]

    failed = _release(refs, indicator_id)

    with _write_guard(indicator_id, "indicator.delete"):
        write_audit(
            entity_type="indicator",
            entity_id=indicator.id,
            action="indicator.delete",
            actor_user_id=actor.user_id,
            entity_label=indicator.indicator_title,
            level="warn",
            diff={"evidence_count": len(refs), "release_failed": len(failed)},
        )
        db.session.delete(indicator)
        db.session.commit()

    logger.info("Indicator %s deleted", indicator_id,
                extra={"indicator_id": indicator_id, "actor_id": actor.user_id,
                       "event_type": "delete"})
    return {"id": indicator_id, "released": len(refs) - len(failed), "release_failed": failed}


# ═════════════════════════════════════════════════════════════════════════════
# Evidence
# ═════════════════════════════════════════════════════════════════════════════

def submit_evidence(indicator_id, actor: Actor, files, descriptions=None) -> Indicator:
    """
    Upload evidence and move the indicator to ``submitted``.

    Resubmissions after a rejection archive the previous active evidence
    and stamp the new batch with ``attempt = rejection_count``.
    """
    indicator = get_indicator(indicator_id)
    review_workflow.check_can_submit(indicator, actor)
    if not files:
        raise ValidationError("At least one file is required", details={"files": "required"})

    cfg = current_app.config
    storage = get_blob_storage()
    items = evidence_versioning.ingest(
        files,
        descriptions,
        actor.user_id,
        attempt=indicator.rejection_count or 0,
        storage=storage,
        folder=f"{cfg.get('EVIDENCE_FOLDER', 'indicators/evidence')}/{indicator.id}",
        max_workers=cfg.get("EVIDENCE_UPLOAD_WORKERS"),
    )
    if not items:
        raise ValidationError("No files found in the upload", details={"files": "empty"})

    try:
        with _write_guard(indicator.id, "indicator.submit_evidence"):
            outcome = review_workflow.submit_evidence(indicator, actor, items)
            _persist(indicator, action="indicator.submit_evidence", actor_id=actor.user_id,
                     diff=outcome)
    except (ConflictError, SQLAlchemyError):
        db.session.rollback()
        evidence_versioning.release(storage, [(e.public_id, e.resource_kind) for e in items])
        raise

    logger.info("Indicator %s: %d evidence item(s) submitted", indicator.id, len(items),
                extra={"indicator_id": indicator.id, "actor_id": actor.user_id,
                       "event_type": "submit_evidence"})
    _emit_to_reviewers(indicator, actor)
    return indicator


def open_evidence(indicator_id, evidence_id, actor: Actor):
    """
    Fetch the stored bytes of one evidence item, archived ones included.

    Returns:
        ``(evidence, data)``.

    Raises:
        AuthorizationError: actor is neither an assignee nor a reviewer.
        NotFoundError: no such evidence on this indicator.
        StorageError: the stored object could not be read.
    """
    indicator = get_indicator(indicator_id)
    if not (review_workflow.is_assignee(indicator, actor)
            or has_capability(actor, Capability.LIST_ALL)):
        raise AuthorizationError("Indicator is not assigned to you",
                                 details={"indicator_id": indicator.id})
    item = next((e for e in indicator.evidence if e.id == evidence_id), None)
    if item is None:
        raise NotFoundError(resource="Evidence", resource_id=evidence_id)

    data = get_blob_storage().fetch(item.public_id, item.resource_kind)
    logger.info("Indicator %s: evidence %s downloaded", indicator.id, item.id,
                extra={"indicator_id": indicator.id, "actor_id": actor.user_id,
                       "event_type": "download_evidence"})
    return item, data


def remove_evidence(indicator_id, evidence_id, actor: Actor) -> Indicator:
    indicator = get_indicator(indicator_id)
    with _write_guard(indicator.id, "indicator.remove_evidence"):
        before_status = indicator.status
        item = evidence_versioning.remove(indicator, evidence_id, actor)
        if indicator.status != before_status:
            audit_trail.record_changes(indicator, actor.user_id,
                                       {"status": {"old": before_status, "new": indicator.status}})
        indicator.updated_at = _now()
        _persist(indicator, action="indicator.remove_evidence", actor_id=actor.user_id,
                 diff={"evidence_id": evidence_id, "file_name": item.file_name})
    _release([(item.public_id, item.resource_kind)], indicator.id)
    return indicator


# ═════════════════════════════════════════════════════════════════════════════
# Review / score
# ═════════════════════════════════════════════════════════════════════════════

def review(indicator_id, actor: Actor, action: str, remark: str | None = None,
           report_data: dict | None = None) -> Indicator:
    indicator = get_indicator(indicator_id)
    with _write_guard(indicator.id, "indicator.review"):
        outcome = review_workflow.review(indicator, actor, action, remark=remark,
                                         report_data=report_data)
        rejected = outcome["transition"] == "reject"
        _persist(indicator, action="indicator.reject" if rejected else "indicator.approve",
                 actor_id=actor.user_id, level="warn" if rejected else "success", diff=outcome)

    context = {"indicator_title": indicator.indicator_title, "app_url": _app_url(indicator.id)}
    if rejected:
        _notify_assignees(
            indicator,
            title="Indicator Rejected",
            message=f"Your submission for {indicator.indicator_title} needs revision: {remark.strip()}",
            kind="rejection",
            template="indicator_rejected",
            context={**context, "remark": remark.strip()},
        )
    else:
        outcome_label = "ratified" if outcome["new_status"] == "completed" else "approved"
        _notify_assignees(
            indicator,
            title="Indicator Approved",
            message=f"Your submission for {indicator.indicator_title} has been {outcome_label}.",
            kind="approval",
            template="indicator_approved",
            context={**context, "outcome": outcome_label},
        )
    return indicator


def submit_score(indicator_id, actor: Actor, score, note: str | None = None,
                 next_deadline=None) -> Indicator:
    try:
        deadline = parse_date_input(next_deadline)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"next_deadline": "invalid date"}) from None

    indicator = get_indicator(indicator_id)
    with _write_guard(indicator.id, "indicator.score"):
        outcome = review_workflow.submit_score(indicator, actor, score, note=note,
                                               next_deadline=deadline)
        _persist(indicator, action="indicator.score", actor_id=actor.user_id,
                 level="success" if outcome["new_status"] == "completed" else "info",
                 diff=outcome)

    if outcome["new_status"] == "completed" and outcome["old_status"] != "completed":
        _notify_assignees(
            indicator,
            title="Indicator Approved",
            message=f"Your submission for {indicator.indicator_title} has been completed.",
            kind="approval",
            template="indicator_approved",
            context={"indicator_title": indicator.indicator_title, "outcome": "completed",
                     "app_url": _app_url(indicator.id)},
        )
    return indicator


# ═════════════════════════════════════════════════════════════════════════════
# Overdue sweep
# ═════════════════════════════════════════════════════════════════════════════

def mark_overdue(today: date | None = None) -> dict:
    """
    Flip pending/submitted indicators past their due date to ``overdue``.

    Invoked by the external scheduler through the ``overdue_sweep`` job.
    Each indicator commits on its own; a concurrent edit skips that one.
    """
    today = today or date.today()
    candidates = db.session.execute(
        db.select(Indicator)
        .where(Indicator.status.in_(sorted(OVERDUE_ELIGIBLE_STATUSES)))
        .where(Indicator.due_date < today)
        .order_by(Indicator.id)
    ).scalars().all()

    results = {"checked": len(candidates), "marked_overdue": 0, "conflicts": 0, "notified": 0}
    flagged = []
    for indicator_id in [c.id for c in candidates]:
        try:
            with _write_guard(indicator_id, "indicator.overdue"):
                indicator = db.session.get(Indicator, indicator_id)
                old = indicator.status
                indicator.status = "overdue"
                indicator.result = None
                indicator.updated_at = _now()
                audit_trail.record_changes(indicator, None,
                                           {"status": {"old": old, "new": "overdue"}})
                _persist(indicator, action="indicator.overdue", actor_id=None, level="warn",
                         diff={"old": old, "new": "overdue",
                               "due_date": indicator.due_date.isoformat()})
        except ConflictError:
            results["conflicts"] += 1
            continue
        results["marked_overdue"] += 1
        flagged.append(indicator_id)

    for indicator_id in flagged:
        indicator = db.session.get(Indicator, indicator_id)
        if indicator is None:
            continue
        results["notified"] += _notify_assignees(
            indicator,
            title="Indicator Overdue",
            message=f"{indicator.indicator_title} was due on {indicator.due_date.isoformat()}.",
            kind="overdue",
            template="indicator_overdue",
            context={
                "indicator_title": indicator.indicator_title,
                "due_date": indicator.due_date.strftime("%d %B %Y"),
                "app_url": _app_url(indicator.id),
            },
        )
    return results
