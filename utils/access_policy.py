"""Role and relationship based access decisions for complaints, with audit on denial."""
from __future__ import annotations

import enum
from typing import Optional

from flask import current_app, has_request_context, request
from sqlalchemy import false, or_

from extensions import db
from models import AuditLog, Complaint, User, UserRole
from utils.errors import Forbidden


class Action(str, enum.Enum):
    VIEW = "VIEW"
    ASSIGN = "ASSIGN"
    CHANGE_STATUS = "CHANGE_STATUS"
    ADD_REMARK = "ADD_REMARK"
    SUBMIT_FEEDBACK = "SUBMIT_FEEDBACK"


ASSIGNEE_ACTIONS = frozenset({Action.VIEW, Action.ASSIGN, Action.CHANGE_STATUS, Action.ADD_REMARK})
SUBMITTER_ACTIONS = frozenset({Action.VIEW, Action.SUBMIT_FEEDBACK})


def _is_authenticated(actor) -> bool:
    if actor is None:
        return False
    return bool(getattr(actor, "is_authenticated", False)) and bool(getattr(actor, "is_active", False))


def record_audit(action_type: str, user: Optional[User], context: Optional[str] = None) -> None:
    """Stage an audit row on the current session; the caller owns the commit."""
    entry = AuditLog(
        user_id=user.id if user is not None and getattr(user, "is_authenticated", False) else None,
        action_type=action_type,
        ip_address=request.remote_addr if has_request_context() else None,
        user_agent=request.headers.get("User-Agent", "unknown")[:255] if has_request_context() else "system",
        context_entity=context,
    )
    db.session.add(entry)


def can_perform(actor, action: Action, complaint: Complaint) -> bool:
    if not _is_authenticated(actor):
        return False
    if actor.role == UserRole.ADMIN:
        return True
    if actor.role == UserRole.WARD_OFFICER and actor.ward and actor.ward == complaint.ward:
        return True

    allowed: set[Action] = set()
    if complaint.assigned_to_id and complaint.assigned_to_id == actor.id:
        allowed |= ASSIGNEE_ACTIONS
    if complaint.submitted_by_id and complaint.submitted_by_id == actor.id:
        allowed |= SUBMITTER_ACTIONS
    return action in allowed


def authorize(actor, action: Action, complaint: Complaint) -> None:
    if can_perform(actor, action, complaint):
        return
    user_id = getattr(actor, "id", None) if _is_authenticated(actor) else None
    current_app.logger.warning(
        "Unauthorized complaint access attempt",
        extra={"user_id": user_id, "action": action.value, "complaint_id": complaint.id},
    )
    # Nothing else is staged at this point, so the audit row is the only write.
    db.session.rollback()
    record_audit("UNAUTHORIZED_ACCESS", actor, context=f"complaint:{complaint.id}:{action.value}")
    db.session.commit()
    raise Forbidden()


def visible_complaints(actor):
    """Query of complaints the actor may VIEW."""
    if not _is_authenticated(actor):
        return Complaint.query.filter(false())
    if actor.role == UserRole.ADMIN:
        return Complaint.query
    clauses = [Complaint.submitted_by_id == actor.id, Complaint.assigned_to_id == actor.id]
    if actor.role == UserRole.WARD_OFFICER and actor.ward:
        clauses.append(Complaint.ward == actor.ward)
    return Complaint.query.filter(or_(*clauses))
