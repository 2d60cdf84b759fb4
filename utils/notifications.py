"""In-app notification dispatch and inbox helpers; delivery is fire-and-forget."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from flask import current_app

from extensions import collaborator, db
from models import (
    Complaint,
    ComplaintStatus,
    Notification,
    NotificationType,
    User,
    UserRole,
    utcnow,
)
from utils.errors import NotFound


STATUS_NOTIFICATION_TYPES = {
    ComplaintStatus.RESOLVED: NotificationType.COMPLAINT_RESOLVED,
    ComplaintStatus.CLOSED: NotificationType.COMPLAINT_CLOSED,
    ComplaintStatus.REOPENED: NotificationType.COMPLAINT_REOPENED,
}


class NotificationDispatcher(ABC):
    @abstractmethod
    def notify(
        self,
        recipient_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict] = None,
    ) -> bool:
        """Deliver one notification; return False on failure instead of raising."""


class InAppNotificationDispatcher(NotificationDispatcher):
    """Persists each notification in its own commit so a failure never touches caller state."""

    def notify(self, recipient_id, notification_type, title, message, data=None) -> bool:
        try:
            created_at = utcnow()
            retention_days = int(current_app.config.get("NOTIFICATION_RETENTION_DAYS", 30))
            notification = Notification(
                recipient_id=recipient_id,
                notification_type=notification_type,
                title=title[:200],
                message=message[:1000],
                data=data or {},
                created_at=created_at,
                expires_at=created_at + timedelta(days=retention_days),
            )
            db.session.add(notification)
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.warning(
                "Notification dispatch failed",
                extra={"recipient_id": recipient_id, "type": notification_type.value},
                exc_info=True,
            )
            return False
        current_app.logger.info(
            "Notification stored",
            extra={"recipient_id": recipient_id, "type": notification_type.value},
        )
        return True


def get_dispatcher() -> NotificationDispatcher:
    return collaborator("notifier")


def notify(recipient_id: Optional[str], notification_type: NotificationType, title: str, message: str, data: Optional[Dict] = None) -> bool:
    if not recipient_id:
        return False
    try:
        return get_dispatcher().notify(recipient_id, notification_type, title, message, data)
    except Exception:
        current_app.logger.warning(
            "Notification dispatcher raised",
            extra={"recipient_id": recipient_id, "type": notification_type.value},
            exc_info=True,
        )
        return False


def _complaint_data(complaint: Complaint, **extra) -> Dict:
    payload = {
        "complaint_id": complaint.id,
        "complaint_number": complaint.complaint_number,
        "status": complaint.status.value,
    }
    payload.update(extra)
    return payload


def ward_recipients(ward: str) -> List[str]:
    """Active ward officers of the ward plus every active administrator."""
    officers = User.query.filter(
        User.role == UserRole.WARD_OFFICER,
        User.ward == ward,
        User.is_active.is_(True),
    ).all()
    admins = User.query.filter(User.role == UserRole.ADMIN, User.is_active.is_(True)).all()
    seen: List[str] = []
    for user in [*officers, *admins]:
        if user.id not in seen:
            seen.append(user.id)
    return seen


def notify_complaint_registered(complaint: Complaint, recipient_ids: Iterable[str]) -> int:
    title = "New Complaint Registered"
    origin = "guest" if complaint.is_guest_origin else "citizen"
    message = (
        f"A new {complaint.complaint_type.label} complaint ({complaint.complaint_number}) "
        f"was registered by a {origin} in {complaint.area}, ward {complaint.ward}."
    )
    data = _complaint_data(complaint, ward=complaint.ward, guest=complaint.is_guest_origin)
    return sum(1 for rid in recipient_ids if notify(rid, NotificationType.COMPLAINT_REGISTERED, title, message, data))


def notify_assignment(complaint: Complaint, assignee_id: str) -> bool:
    message = f"Complaint {complaint.complaint_number} has been assigned to you."
    return notify(
        assignee_id,
        NotificationType.COMPLAINT_ASSIGNED,
        "Complaint Assigned",
        message,
        _complaint_data(complaint),
    )


def notify_status_change(complaint: Complaint, previous: ComplaintStatus, comment: Optional[str] = None) -> bool:
    if not complaint.submitted_by_id:
        return False
    new_status = complaint.status
    notification_type = STATUS_NOTIFICATION_TYPES.get(new_status, NotificationType.COMPLAINT_STATUS_UPDATED)
    pretty = new_status.value.replace("_", " ").lower()
    message = f"Your complaint {complaint.complaint_number} is now {pretty}."
    if comment:
        message = f"{message} Remarks: {comment}"
    return notify(
        complaint.submitted_by_id,
        notification_type,
        "Complaint Status Updated",
        message,
        _complaint_data(complaint, previous_status=previous.value),
    )


def notify_feedback(complaint: Complaint) -> bool:
    message = f"Citizen rated complaint {complaint.complaint_number} {complaint.feedback_rating}/5."
    return notify(
        complaint.assigned_to_id,
        NotificationType.FEEDBACK_RECEIVED,
        "Feedback Received",
        message,
        _complaint_data(complaint, rating=complaint.feedback_rating),
    )


def notify_sla_event(complaint: Complaint, recipient_id: str, breached: bool) -> bool:
    if breached:
        notification_type = NotificationType.SLA_BREACH
        title = "SLA Breached"
        message = f"Complaint {complaint.complaint_number} has passed its resolution deadline."
    else:
        notification_type = NotificationType.SLA_WARNING
        title = "SLA Deadline Approaching"
        message = f"Complaint {complaint.complaint_number} is due by {complaint.sla_deadline:%Y-%m-%d %H:%M} UTC."
    return notify(
        recipient_id,
        notification_type,
        title,
        message,
        _complaint_data(complaint, sla_deadline=complaint.sla_deadline.isoformat()),
    )


def inbox_query(user_id: str, unread_only: bool = False, now: Optional[datetime] = None):
    query = Notification.query.filter(
        Notification.recipient_id == user_id,
        Notification.expires_at > (now or utcnow()),
    )
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id)


def unread_count(user_id: str) -> int:
    return inbox_query(user_id, unread_only=True).count()


def mark_read(notification_id: str, user: User) -> Notification:
    notification = Notification.query.filter_by(id=notification_id, recipient_id=user.id).first()
    if notification is None:
        raise NotFound("Notification not found.")
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        db.session.commit()
    return notification


def purge_expired(now: Optional[datetime] = None) -> int:
    removed = Notification.query.filter(Notification.expires_at <= (now or utcnow())).delete(synchronize_session=False)
    db.session.commit()
    return removed
