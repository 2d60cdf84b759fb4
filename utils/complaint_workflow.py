"""Complaint lifecycle: numbering, SLA deadlines, and guarded status transitions."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from models import (
    Complaint,
    ComplaintPriority,
    ComplaintSequence,
    ComplaintStatus,
    StatusLogEntry,
    StatusLogType,
    User,
    UserRole,
    utcnow,
)
from utils.access_policy import Action, authorize, record_audit
from utils.errors import (
    ConcurrentModification,
    Forbidden,
    InvalidTransition,
    NotFound,
    NotResolved,
    PortalError,
    ValidationFailed,
)
from utils.notifications import notify_assignment, notify_feedback, notify_status_change


ALLOWED_TRANSITIONS: Dict[ComplaintStatus, FrozenSet[ComplaintStatus]] = {
    ComplaintStatus.REGISTERED: frozenset(
        {ComplaintStatus.ASSIGNED, ComplaintStatus.IN_PROGRESS, ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED}
    ),
    ComplaintStatus.ASSIGNED: frozenset({ComplaintStatus.IN_PROGRESS, ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED}),
    ComplaintStatus.IN_PROGRESS: frozenset({ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED}),
    ComplaintStatus.RESOLVED: frozenset({ComplaintStatus.CLOSED, ComplaintStatus.REOPENED}),
    ComplaintStatus.CLOSED: frozenset({ComplaintStatus.REOPENED}),
    ComplaintStatus.REOPENED: frozenset(
        {ComplaintStatus.ASSIGNED, ComplaintStatus.IN_PROGRESS, ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED}
    ),
}

TERMINAL_STATUSES = frozenset({ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED})
ASSIGNABLE_ROLES = frozenset({UserRole.WARD_OFFICER, UserRole.MAINTENANCE, UserRole.ADMIN})

DEFAULT_SLA_HOURS = {
    ComplaintPriority.CRITICAL: 24,
    ComplaintPriority.HIGH: 48,
    ComplaintPriority.MEDIUM: 72,
    ComplaintPriority.LOW: 120,
}

SLA_COMPLETED = "completed"
SLA_OVERDUE = "overdue"
SLA_WARNING = "warning"
SLA_ONTIME = "ontime"

MAX_REMARK_LENGTH = 1000


def is_allowed_transition(current: ComplaintStatus, new: ComplaintStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def _coerce_status(value) -> ComplaintStatus:
    if isinstance(value, ComplaintStatus):
        return value
    try:
        return ComplaintStatus(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationFailed("Unknown complaint status.", details={"status": value}) from exc


def sla_hours(priority: ComplaintPriority) -> int:
    configured = current_app.config.get("SLA_HOURS_BY_PRIORITY") or {}
    return int(configured.get(priority.value, DEFAULT_SLA_HOURS[priority]))


def compute_sla_deadline(priority: ComplaintPriority, created_at: datetime) -> datetime:
    return created_at + timedelta(hours=sla_hours(priority))


def sla_status(complaint: Complaint, now: Optional[datetime] = None) -> str:
    """Read-time SLA state; never stored."""
    if complaint.status in TERMINAL_STATUSES:
        return SLA_COMPLETED
    now = now or utcnow()
    if now > complaint.sla_deadline:
        return SLA_OVERDUE
    warning_window = timedelta(hours=int(current_app.config.get("SLA_WARNING_HOURS", 24)))
    if complaint.sla_deadline - now < warning_window:
        return SLA_WARNING
    return SLA_ONTIME


def next_complaint_number(created_at: datetime) -> str:
    """Reserve the next number for the year inside the caller's transaction."""
    year = created_at.year
    sequence = db.session.query(ComplaintSequence).filter_by(year=year).with_for_update().first()
    if sequence is None:
        # A concurrent first-of-year insert fails on the primary key at commit.
        sequence = ComplaintSequence(year=year, last_value=0)
        db.session.add(sequence)
    sequence.last_value += 1
    prefix = current_app.config.get("COMPLAINT_ID_PREFIX", "CMP")
    return f"{prefix}-{year}-{sequence.last_value:03d}"


def actor_id(actor) -> Optional[str]:
    if actor is None or not getattr(actor, "is_authenticated", False):
        return None
    return actor.id


def append_log_entry(
    complaint: Complaint,
    entry_type: StatusLogType,
    previous: Optional[ComplaintStatus],
    new: ComplaintStatus,
    actor,
    comment: Optional[str] = None,
) -> StatusLogEntry:
    entry = StatusLogEntry(
        entry_type=entry_type,
        previous_status=previous,
        new_status=new,
        actor_id=actor_id(actor),
        comment=(comment or None) and comment[:MAX_REMARK_LENGTH],
        created_at=utcnow(),
    )
    complaint.status_log.append(entry)
    return entry


@contextmanager
def _locked_complaint(complaint_id: str):
    """Load the complaint row under lock; a domain failure leaves nothing staged."""
    complaint = (
        db.session.query(Complaint).filter_by(id=complaint_id).with_for_update().populate_existing().first()
    )
    if complaint is None:
        raise NotFound("Complaint not found.")
    try:
        yield complaint
    except PortalError:
        db.session.rollback()
        raise


def commit_or_conflict(complaint: Complaint) -> None:
    reference = complaint.id or complaint.complaint_number
    try:
        db.session.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.session.rollback()
        current_app.logger.warning("Concurrent complaint update rejected", extra={"complaint": reference})
        raise ConcurrentModification() from exc


def assign(complaint_id: str, assignee_id: str, actor, comment: Optional[str] = None) -> Complaint:
    with _locked_complaint(complaint_id) as complaint:
        authorize(actor, Action.ASSIGN, complaint)
        if complaint.status in TERMINAL_STATUSES:
            raise InvalidTransition("Resolved or closed complaints cannot be assigned. Reopen the complaint first.")
        assignee = db.session.get(User, assignee_id) if assignee_id else None
        if assignee is None:
            raise NotFound("Assignee not found.")
        if assignee.role not in ASSIGNABLE_ROLES or not assignee.is_active:
            raise ValidationFailed(
                "Complaints can only be assigned to active ward officers, maintenance staff or administrators."
            )

        previous = complaint.status
        complaint.assigned_to_id = assignee.id
        complaint.assigned_at = utcnow()
        if previous in (ComplaintStatus.REGISTERED, ComplaintStatus.REOPENED):
            complaint.status = ComplaintStatus.ASSIGNED
        append_log_entry(
            complaint,
            StatusLogType.ASSIGNMENT,
            previous,
            complaint.status,
            actor,
            comment or f"Assigned to {assignee.full_name}",
        )
        record_audit("COMPLAINT_ASSIGNED", actor, context=f"complaint:{complaint.id}")
        commit_or_conflict(complaint)

    current_app.logger.info(
        "Complaint assigned",
        extra={"complaint_id": complaint.id, "assignee_id": assignee.id, "status": complaint.status.value},
    )
    notify_assignment(complaint, assignee.id)
    return complaint


def change_status(complaint_id: str, new_status, actor, comment: Optional[str] = None) -> Complaint:
    new_status = _coerce_status(new_status)
    with _locked_complaint(complaint_id) as complaint:
        authorize(actor, Action.CHANGE_STATUS, complaint)
        previous = complaint.status
        if not is_allowed_transition(previous, new_status):
            raise InvalidTransition(
                f"Cannot change status from {previous.value} to {new_status.value}.",
                details={"from": previous.value, "to": new_status.value},
            )
        if new_status == ComplaintStatus.ASSIGNED and complaint.assigned_to_id is None:
            # ASSIGNED always names an assignee; assign() is the way in.
            raise InvalidTransition(
                "Assign the complaint to a staff member to mark it ASSIGNED.",
                details={"from": previous.value, "to": new_status.value},
            )

        now = utcnow()
        complaint.status = new_status
        if new_status == ComplaintStatus.RESOLVED and complaint.resolved_at is None:
            complaint.resolved_at = now
        if new_status == ComplaintStatus.CLOSED and complaint.closed_at is None:
            complaint.closed_at = now
        append_log_entry(complaint, StatusLogType.STATUS_UPDATE, previous, new_status, actor, comment)
        record_audit("COMPLAINT_STATUS_CHANGED", actor, context=f"complaint:{complaint.id}:{new_status.value}")
        commit_or_conflict(complaint)

    current_app.logger.info(
        "Complaint status changed",
        extra={"complaint_id": complaint.id, "from": previous.value, "to": new_status.value},
    )
    notify_status_change(complaint, previous, comment)
    return complaint


def _coerce_rating(rating) -> int:
    try:
        value = int(rating)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("Rating must be a number between 1 and 5.") from exc
    if value < 1 or value > 5:
        raise ValidationFailed("Rating must be a number between 1 and 5.")
    return value


def submit_feedback(complaint_id: str, rating, comment: Optional[str], actor) -> Complaint:
    with _locked_complaint(complaint_id) as complaint:
        authorize(actor, Action.SUBMIT_FEEDBACK, complaint)
        if complaint.status not in TERMINAL_STATUSES:
            raise NotResolved()
        if complaint.submitted_by_id is None or complaint.submitted_by_id != actor_id(actor):
            raise Forbidden("Only the citizen who submitted the complaint can leave feedback.")
        value = _coerce_rating(rating)
        comment = (comment or "").strip() or None
        if comment and len(comment) > MAX_REMARK_LENGTH:
            raise ValidationFailed("Feedback comment cannot exceed 1000 characters.")

        complaint.feedback_rating = value
        complaint.feedback_comment = comment
        complaint.feedback_submitted_at = utcnow()
        record_audit("COMPLAINT_FEEDBACK", actor, context=f"complaint:{complaint.id}")
        commit_or_conflict(complaint)

    current_app.logger.info("Complaint feedback recorded", extra={"complaint_id": complaint.id, "rating": value})
    notify_feedback(complaint)
    return complaint


def add_remark(complaint_id: str, text: str, actor) -> StatusLogEntry:
    with _locked_complaint(complaint_id) as complaint:
        authorize(actor, Action.ADD_REMARK, complaint)
        text = (text or "").strip()
        if not text:
            raise ValidationFailed("Remark text is required.")
        if len(text) > MAX_REMARK_LENGTH:
            raise ValidationFailed("Remark cannot exceed 1000 characters.")
        entry = append_log_entry(complaint, StatusLogType.REMARK, complaint.status, complaint.status, actor, text)
        record_audit("COMPLAINT_REMARK", actor, context=f"complaint:{complaint.id}")
        commit_or_conflict(complaint)
    return entry
