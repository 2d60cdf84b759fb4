from datetime import timedelta

import pytest

from extensions import db
from models import Complaint, ComplaintStatus, Notification, NotificationType, VerificationSession, utcnow
from utils.complaint_workflow import assign, change_status
from utils.guest_intake import create_complaint
from utils.notifications import inbox_query, mark_read, notify, unread_count
from utils.errors import NotFound
from utils.otp_gateway import issue_code
from utils.sla_monitor import purge_notifications, run_housekeeping_cycle, scan_sla, sweep_sessions


@pytest.fixture
def complaint(citizen, complaint_data):
    return create_complaint(complaint_data(contact_email="citizen@test.com", priority="CRITICAL"), citizen)


def _sla_notices(user, notification_type):
    return Notification.query.filter_by(recipient_id=user.id, notification_type=notification_type).count()


def test_warning_then_breach_are_sent_once(complaint, officer, admin, maintenance, other_officer):
    assign(complaint.id, maintenance.id, officer)
    deadline = complaint.sla_deadline

    assert scan_sla(deadline - timedelta(hours=30)) == {"warnings": 0, "breaches": 0, "skipped": 0}
    assert scan_sla(deadline - timedelta(hours=2)) == {"warnings": 1, "breaches": 0, "skipped": 0}
    assert scan_sla(deadline - timedelta(hours=1)) == {"warnings": 0, "breaches": 0, "skipped": 0}
    assert scan_sla(deadline + timedelta(hours=1)) == {"warnings": 0, "breaches": 1, "skipped": 0}
    assert scan_sla(deadline + timedelta(hours=5)) == {"warnings": 0, "breaches": 0, "skipped": 0}

    for user in (maintenance, officer, admin):
        assert _sla_notices(user, NotificationType.SLA_WARNING) == 1
        assert _sla_notices(user, NotificationType.SLA_BREACH) == 1
    assert _sla_notices(other_officer, NotificationType.SLA_BREACH) == 0

    reloaded = db.session.get(Complaint, complaint.id)
    assert reloaded.sla_warning_notified_at is not None
    assert reloaded.sla_breach_notified_at is not None


def test_closed_complaints_are_never_escalated(complaint, officer, admin):
    change_status(complaint.id, ComplaintStatus.CLOSED, officer)

    assert scan_sla(complaint.sla_deadline + timedelta(days=3))["breaches"] == 0
    assert _sla_notices(admin, NotificationType.SLA_BREACH) == 0


def test_inbox_marks_read_and_hides_expired(citizen, officer):
    notify(citizen.id, NotificationType.COMPLAINT_STATUS_UPDATED, "Update", "Your complaint moved.")
    notify(citizen.id, NotificationType.COMPLAINT_CLOSED, "Closed", "Your complaint was closed.")
    assert unread_count(citizen.id) == 2

    newest = inbox_query(citizen.id).first()
    mark_read(newest.id, citizen)
    assert unread_count(citizen.id) == 1
    with pytest.raises(NotFound):
        mark_read(newest.id, officer)

    far_future = utcnow() + timedelta(days=31)
    assert inbox_query(citizen.id, now=far_future).count() == 0


def test_notify_without_recipient_is_a_no_op(app):
    assert notify(None, NotificationType.SLA_WARNING, "t", "m") is False
    assert Notification.query.count() == 0


def test_purge_and_sweep_remove_only_stale_rows(citizen, sender):
    notify(citizen.id, NotificationType.COMPLAINT_STATUS_UPDATED, "Update", "Your complaint moved.")
    issue_code("citizen@test.com", "COMPLAINT_SUBMISSION")

    assert purge_notifications() == 0
    assert sweep_sessions() == 0
    assert purge_notifications(utcnow() + timedelta(days=31)) == 1
    assert sweep_sessions(utcnow() + timedelta(minutes=11)) == 1
    assert VerificationSession.query.count() == 0


def test_housekeeping_cycle_reports_every_job(app, complaint):
    summary = run_housekeeping_cycle(app)

    assert summary == {
        "warnings": 0,
        "breaches": 0,
        "skipped": 0,
        "sessions_removed": 0,
        "notifications_removed": 0,
    }
