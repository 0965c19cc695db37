"""
Performance Indicator Platform
Review Workflow — status transitions driven by evidence, reviews and scores.

Manages indicator status transitions with:
  - Transition validation (allowed source states per action)
  - Role-sensitive approval (admin approves, top authority ratifies)
  - Score grading (completed / partially_completed / unchanged)
  - Edit history of every status/progress/result change

Transitions:
  submit    any non-sealed state          → submitted
  reject    submitted, overdue, approved,
            partially_completed           → rejected
  approve   submitted, overdue,
            partially_completed           → approved   (admin)
  ratify    submitted, overdue, approved,
            partially_completed           → completed  (top authority)

Ratification and a score of 100 go through the same ``finalize`` helper so
both leave the same terminal shape and the same audit entries.

Functions mutate the loaded indicator in memory; the caller commits.

Usage:
    from app.services.review_workflow import review

    outcome = review(indicator, actor, "reject", remark="Missing signatures")
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone

from app.core.exceptions import AuthorizationError, ConflictError, ValidationError
from app.models.indicator import Evidence, Indicator, clamp_progress
from app.services import audit_trail
from app.services.evidence_versioning import archive_active
from app.services.permission import Actor, Capability, has_capability, require_capability

logger = logging.getLogger(__name__)


REVIEW_TRANSITIONS = {
    "submit": {
        "from": ["pending", "submitted", "approved", "rejected", "overdue", "partially_completed"],
        "to": "submitted",
    },
    "reject": {
        "from": ["submitted", "overdue", "approved", "partially_completed"],
        "to": "rejected",
    },
    "approve": {
        "from": ["submitted", "overdue", "partially_completed"],
        "to": "approved",
    },
    "ratify": {
        "from": ["submitted", "overdue", "approved", "partially_completed"],
        "to": "completed",
    },
}

REVIEW_ACTIONS = {"approve", "reject"}

# Score grading never applies to a closed record.
SCORABLE_STATUSES = frozenset(
    {"pending", "submitted", "approved", "rejected", "overdue", "partially_completed"}
)


def _now():
    return datetime.now(timezone.utc)


def validate_transition(indicator: Indicator, action: str) -> None:
    rule = REVIEW_TRANSITIONS[action]
    if indicator.status not in rule["from"]:
        raise ConflictError(
            f"Cannot '{action}' indicator {indicator.id} (status={indicator.status})",
            details={"action": action, "status": indicator.status,
                     "allowed_from": rule["from"]},
        )


def _guard_sealed(indicator: Indicator, actor: Actor) -> None:
    if indicator.is_sealed and not has_capability(actor, Capability.EDIT_SEALED):
        raise AuthorizationError(
            "Indicator is completed and sealed",
            details={"indicator_id": indicator.id, "status": indicator.status},
        )


def is_assignee(indicator: Indicator, actor: Actor) -> bool:
    return actor.user_id in indicator.assignee_ids


def finalize(indicator: Indicator, reviewer_id: int) -> None:
    """Close the indicator: completed, full progress, passing result."""
    indicator.status = "completed"
    indicator.progress = 100
    indicator.result = "pass"
    indicator.reviewed_by = reviewer_id
    indicator.reviewed_at = _now()


def _check_report_data(report_data) -> None:
    if report_data and not isinstance(report_data, dict):
        raise ValidationError("report_data must be an object", details={"report_data": "object"})


def _merge_report_data(indicator: Indicator, report_data: dict | None) -> None:
    if not report_data:
        return
    merged = dict(indicator.report_data or {})
    merged.update(report_data)
    indicator.report_data = merged


# ── Submission ───────────────────────────────────────────────────────────────

def check_can_submit(indicator: Indicator, actor: Actor) -> None:
    """Raise unless *actor* may submit evidence on *indicator* right now."""
    if not is_assignee(indicator, actor):
        raise AuthorizationError(
            "Only an assignee or assigned group member may submit evidence",
            details={"indicator_id": indicator.id},
        )
    if indicator.is_sealed:
        raise AuthorizationError("Indicator is completed and sealed",
                                 details={"indicator_id": indicator.id})
    validate_transition(indicator, "submit")


def submit_evidence(indicator: Indicator, actor: Actor, items: list[Evidence]) -> dict:
    """
    Attach freshly ingested *items* and move the indicator to ``submitted``.

    A previously rejected indicator has its active evidence archived first.
    ``result`` is cleared until the next review; ``rejection_count`` is left alone.
    """
    check_can_submit(indicator, actor)

    before = audit_trail.snapshot(indicator, audit_trail.STATE_FIELDS)
    archived = archive_active(indicator) if indicator.status == "rejected" else 0
    indicator.evidence.extend(items)
    indicator.status = REVIEW_TRANSITIONS["submit"]["to"]
    indicator.result = None
    indicator.updated_at = _now()
    audit_trail.record_changes(
        indicator, actor.user_id,
        audit_trail.diff_fields(before, audit_trail.snapshot(indicator, audit_trail.STATE_FIELDS)),
    )
    return {"old_status": before["status"], "archived": archived, "added": len(items)}


# ── Review ───────────────────────────────────────────────────────────────────

def review(indicator: Indicator, actor: Actor, action: str, remark: str | None = None,
           report_data: dict | None = None) -> dict:
    """
    Approve or reject a submission.

    Returns:
        dict with ``transition`` (reject | approve | ratify), ``old_status``
        and ``new_status``.

    Raises:
        ValidationError: unknown action, reject without a remark, or
            report_data that is not an object.
        AuthorizationError: role may not review, or sealed record.
        ConflictError: action not valid from the current status.
    """
    require_capability(actor, Capability.REVIEW)
    action = (action or "").strip().lower()
    if action not in REVIEW_ACTIONS:
        raise ValidationError(f"Unknown review action '{action}'",
                              details={"action": sorted(REVIEW_ACTIONS)})
    remark = (remark or "").strip()
    if action == "reject" and not remark:
        raise ValidationError("A rejection remark is required", details={"remark": "required"})
    _check_report_data(report_data)

    _guard_sealed(indicator, actor)

    if action == "reject":
        transition = "reject"
    elif has_capability(actor, Capability.RATIFY):
        transition = "ratify"
    else:
        transition = "approve"
    validate_transition(indicator, transition)

    before = audit_trail.snapshot(indicator, audit_trail.STATE_FIELDS)
    if transition == "ratify":
        finalize(indicator, actor.user_id)
    else:
        indicator.status = REVIEW_TRANSITIONS[transition]["to"]
        indicator.reviewed_by = actor.user_id
        indicator.reviewed_at = _now()
        if transition == "reject":
            indicator.progress = 0
            indicator.result = "fail"
            indicator.rejection_count = (indicator.rejection_count or 0) + 1
        else:
            indicator.progress = 100
            indicator.result = "pass"
    indicator.updated_at = _now()

    audit_trail.append_note(indicator, remark, actor.user_id)
    _merge_report_data(indicator, report_data)
    audit_trail.record_changes(
        indicator, actor.user_id,
        audit_trail.diff_fields(before, audit_trail.snapshot(indicator, audit_trail.STATE_FIELDS)),
    )

    logger.info(
        "Indicator %s %s: %s → %s", indicator.id, transition, before["status"], indicator.status,
        extra={"indicator_id": indicator.id, "actor_id": actor.user_id, "event_type": transition},
    )
    return {"transition": transition, "old_status": before["status"], "new_status": indicator.status}


# ── Score grading ────────────────────────────────────────────────────────────

def parse_score(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("score must be a number", details={"score": "number"})
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError("score must be a number", details={"score": "number"}) from None
    if math.isnan(number) or number < 0 or number > 100:
        raise ValidationError("score must be between 0 and 100", details={"score": "0..100"})
    return clamp_progress(number)


def submit_score(indicator: Indicator, actor: Actor, score, note: str | None = None,
                 next_deadline: date | None = None) -> dict:
    """
    Grade the indicator.

    100 finalizes it, anything between 0 and 100 marks it partially completed
    (optionally moving ``next_deadline``), 0 records the score only.
    """
    require_capability(actor, Capability.GRADE)
    score = parse_score(score)
    _guard_sealed(indicator, actor)
    if indicator.status not in SCORABLE_STATUSES:
        raise ConflictError(
            f"Cannot score indicator {indicator.id} (status={indicator.status})",
            details={"status": indicator.status},
        )

    fields = audit_trail.STATE_FIELDS + ("next_deadline",)
    before = audit_trail.snapshot(indicator, fields)

    if score == 100:
        finalize(indicator, actor.user_id)
    elif score > 0:
        indicator.progress = score
        indicator.status = "partially_completed"
        indicator.result = None
        if next_deadline is not None:
            indicator.next_deadline = next_deadline
    else:
        indicator.progress = 0
    indicator.updated_at = _now()

    audit_trail.append_score(indicator, score, actor.user_id)
    audit_trail.append_note(indicator, note, actor.user_id)
    audit_trail.record_changes(
        indicator, actor.user_id,
        audit_trail.diff_fields(before, audit_trail.snapshot(indicator, fields)),
    )
    return {"score": score, "old_status": before["status"], "new_status": indicator.status}
