"""Scheduled SLA escalation and housekeeping for verification sessions and notifications."""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from flask import current_app

from extensions import db
from models import Complaint, ComplaintStatus, utcnow
from utils.complaint_workflow import SLA_OVERDUE, SLA_WARNING, commit_or_conflict, sla_status
from utils.errors import ConcurrentModification
from utils.notifications import notify_sla_event, purge_expired, ward_recipients
from utils.session_store import get_session_store


def _due_complaints(now: datetime) -> List[Tuple[Complaint, bool]]:
    candidates = Complaint.query.filter(
        Complaint.status.notin_([ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED]),
    ).order_by(Complaint.sla_deadline).all()
    due: List[Tuple[Complaint, bool]] = []
    for complaint in candidates:
        state = sla_status(complaint, now)
        if state == SLA_OVERDUE and complaint.sla_breach_notified_at is None:
            due.append((complaint, True))
        elif state == SLA_WARNING and complaint.sla_warning_notified_at is None:
            due.append((complaint, False))
    return due


def _escalation_recipients(complaint: Complaint) -> List[str]:
    recipients = [complaint.assigned_to_id] if complaint.assigned_to_id else []
    for user_id in ward_recipients(complaint.ward):
        if user_id not in recipients:
            recipients.append(user_id)
    return recipients


def scan_sla(now: Optional[datetime] = None) -> Dict[str, int]:
    """Send one warning and one breach notice per open complaint."""
    now = now or utcnow()
    summary = {"warnings": 0, "breaches": 0, "skipped": 0}
    for complaint, breached in _due_complaints(now):
        if breached:
            complaint.sla_breach_notified_at = now
        else:
            complaint.sla_warning_notified_at = now
        try:
            commit_or_conflict(complaint)
        except ConcurrentModification:
            summary["skipped"] += 1
            continue
        for recipient_id in _escalation_recipients(complaint):
            notify_sla_event(complaint, recipient_id, breached)
        summary["breaches" if breached else "warnings"] += 1
        current_app.logger.info(
            "SLA escalation dispatched",
            extra={"complaint_number": complaint.complaint_number, "breached": breached},
        )
    return summary


def sweep_sessions(now: Optional[datetime] = None) -> int:
    removed = get_session_store().sweep(now or utcnow())
    current_app.logger.info("Verification sessions swept", extra={"removed": removed})
    return removed


def purge_notifications(now: Optional[datetime] = None) -> int:
    removed = purge_expired(now)
    current_app.logger.info("Expired notifications purged", extra={"removed": removed})
    return removed


def run_housekeeping_cycle(app) -> Dict[str, int]:
    """Execute every scheduled job once (schedule this via cron)."""
    with app.app_context():
        summary: Dict[str, int] = {}
        try:
            summary.update(scan_sla())
        except Exception:  # pragma: no cover - keep the remaining jobs running
            current_app.logger.exception("SLA scan failed")
            db.session.rollback()
        summary["sessions_removed"] = sweep_sessions()
        summary["notifications_removed"] = purge_notifications()
        return summary
