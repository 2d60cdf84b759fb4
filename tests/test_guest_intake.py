from datetime import timedelta

import pytest

from extensions import db
from models import (
    AuditLog,
    Complaint,
    ComplaintPriority,
    ComplaintStatus,
    ComplaintType,
    Notification,
    NotificationType,
    StatusLogType,
    User,
    UserRole,
    utcnow,
)
from utils.auth_tokens import decode_access_token
from utils.errors import Forbidden, IdentityMismatch, InvalidToken, NotFound, Unauthenticated, ValidationFailed
from utils.guest_intake import (
    ComplaintFields,
    auto_promote_on_track,
    create_complaint,
    lookup_for_guest,
    submit_as_guest,
    upsert_citizen_by_email,
)
from utils.otp_gateway import redeem_token


def _notifications_for(user):
    return Notification.query.filter_by(recipient_id=user.id).all()


def test_guest_submission_registers_and_notifies_ward(
    verified_token, complaint_data, officer, other_officer, admin
):
    token = verified_token("guest@test.com")
    before = utcnow()

    complaint = submit_as_guest(token, complaint_data(priority="HIGH"))

    assert complaint.status == ComplaintStatus.REGISTERED
    assert complaint.submitted_by_id is None
    assert complaint.priority == ComplaintPriority.HIGH
    assert complaint.sla_deadline == complaint.created_at + timedelta(hours=48)
    assert complaint.created_at >= before

    [entry] = complaint.status_log
    assert entry.entry_type == StatusLogType.REGISTRATION
    assert entry.new_status == ComplaintStatus.REGISTERED
    assert entry.actor_id is None

    for user in (officer, admin):
        [notification] = _notifications_for(user)
        assert notification.notification_type == NotificationType.COMPLAINT_REGISTERED
        assert notification.data["complaint_number"] == complaint.complaint_number
    assert _notifications_for(other_officer) == []


def test_guest_token_is_spent_by_submission(verified_token, complaint_data):
    token = verified_token("guest@test.com")
    submit_as_guest(token, complaint_data())

    with pytest.raises(InvalidToken):
        submit_as_guest(token, complaint_data())
    assert Complaint.query.count() == 1


def test_identity_mismatch_never_creates_a_complaint(verified_token, complaint_data):
    token = verified_token("a@test.com")

    with pytest.raises(IdentityMismatch):
        submit_as_guest(token, complaint_data(contact_email="b@test.com"))

    assert Complaint.query.count() == 0
    with pytest.raises(InvalidToken):
        redeem_token(token)


def test_tracking_token_cannot_submit(verified_token, complaint_data):
    token = verified_token("guest@test.com", purpose="COMPLAINT_TRACKING")

    with pytest.raises(InvalidToken):
        submit_as_guest(token, complaint_data())
    assert Complaint.query.count() == 0


def test_guest_submission_requires_contact_details(verified_token, complaint_data):
    token = verified_token("guest@test.com")

    with pytest.raises(ValidationFailed):
        submit_as_guest(token, complaint_data(contact_mobile=""))
    # Validation runs before redemption so the token is still usable.
    assert submit_as_guest(token, complaint_data()).complaint_number


def test_complaint_numbers_are_sequential_per_year(verified_token, complaint_data, citizen):
    first = submit_as_guest(verified_token("guest@test.com"), complaint_data())
    second = create_complaint(complaint_data(contact_email=None), citizen)

    year = first.created_at.year
    assert first.complaint_number == f"CMP-{year}-001"
    assert second.complaint_number == f"CMP-{year}-002"
    assert second.contact_email == "citizen@test.com"
    assert second.submitted_by_id == citizen.id


@pytest.mark.parametrize(
    "priority,hours",
    [("CRITICAL", 24), ("HIGH", 48), ("MEDIUM", 72), ("LOW", 120)],
)
def test_sla_deadline_follows_priority(citizen, complaint_data, priority, hours):
    complaint = create_complaint(complaint_data(priority=priority), citizen)
    assert complaint.sla_deadline - complaint.created_at == timedelta(hours=hours)


def test_complaint_fields_accept_display_labels():
    fields = ComplaintFields.from_mapping(
        {
            "complaint_type": "Street Lighting",
            "description": "Lamp post broken near the school gate.",
            "ward": " W1 ",
            "area": "School Lane",
            "priority": "low",
            "attachments": [{"filename": "lamp.jpg", "mimetype": "image/jpeg", "size_bytes": 2048}],
        }
    )
    assert fields.complaint_type == ComplaintType.STREET_LIGHTING
    assert fields.priority == ComplaintPriority.LOW
    assert fields.ward == "W1"
    assert fields.attachments[0]["filename"] == "lamp.jpg"


@pytest.mark.parametrize(
    "overrides",
    [
        {"complaint_type": "TELEPORTATION"},
        {"description": ""},
        {"contact_mobile": "12ab"},
        {"attachments": [{"mimetype": "image/png"}]},
        {"latitude": "north"},
    ],
)
def test_complaint_fields_reject_bad_input(complaint_data, overrides):
    with pytest.raises(ValidationFailed):
        ComplaintFields.from_mapping(complaint_data(**overrides))


def test_create_complaint_requires_an_account(complaint_data):
    with pytest.raises(Unauthenticated):
        create_complaint(complaint_data(), None)


def test_attachments_are_stored_with_the_complaint(citizen, complaint_data):
    complaint = create_complaint(
        complaint_data(attachments=[{"filename": "leak.png", "mimetype": "image/png", "size_bytes": 512}]),
        citizen,
    )
    [attachment] = complaint.attachments
    assert attachment.url == "/uploads/leak.png"
    assert attachment.size_bytes == 512


def test_auto_promotion_provisions_once_and_is_idempotent(verified_token, complaint_data):
    complaint = submit_as_guest(verified_token("guest@test.com"), complaint_data())

    user, auth = auto_promote_on_track(
        complaint.complaint_number, verified_token("guest@test.com", purpose="COMPLAINT_TRACKING")
    )
    assert user.role == UserRole.CITIZEN
    assert user.email == "guest@test.com"
    assert user.is_email_verified
    assert decode_access_token(auth.token)["sub"] == user.id
    assert db.session.get(Complaint, complaint.id).submitted_by_id == user.id

    again, _ = auto_promote_on_track(
        complaint.complaint_number.lower(), verified_token("guest@test.com", purpose="COMPLAINT_TRACKING")
    )
    assert again.id == user.id
    assert User.query.filter_by(email="guest@test.com").count() == 1
    assert AuditLog.query.filter_by(action_type="GUEST_AUTO_PROMOTED").count() == 1


def test_auto_promotion_reuses_existing_account(verified_token, complaint_data, citizen):
    complaint = submit_as_guest(verified_token("citizen@test.com"), complaint_data(contact_email="citizen@test.com"))

    user, _ = auto_promote_on_track(
        complaint.complaint_number, verified_token("citizen@test.com", purpose="COMPLAINT_TRACKING")
    )

    assert user.id == citizen.id
    assert User.query.count() == 1


def test_auto_promotion_rejects_other_mailbox(verified_token, complaint_data):
    complaint = submit_as_guest(verified_token("guest@test.com"), complaint_data())

    with pytest.raises(IdentityMismatch):
        auto_promote_on_track(
            complaint.complaint_number, verified_token("intruder@test.com", purpose="COMPLAINT_TRACKING")
        )
    assert db.session.get(Complaint, complaint.id).submitted_by_id is None


def test_auto_promotion_of_unknown_complaint(verified_token):
    with pytest.raises(NotFound):
        auto_promote_on_track("CMP-1999-404", verified_token("guest@test.com", purpose="COMPLAINT_TRACKING"))


def test_auto_promotion_refuses_inactive_account(verified_token, complaint_data, make_user):
    make_user("guest@test.com", UserRole.CITIZEN, is_active=False)
    complaint = submit_as_guest(verified_token("guest@test.com"), complaint_data())

    with pytest.raises(Forbidden):
        auto_promote_on_track(
            complaint.complaint_number, verified_token("guest@test.com", purpose="COMPLAINT_TRACKING")
        )


def test_upsert_citizen_by_email_is_idempotent(app):
    first = upsert_citizen_by_email("New@Test.com", phone="9876543210")
    db.session.commit()
    second = upsert_citizen_by_email("new@test.com")

    assert first.id == second.id
    assert first.full_name == "new"
    assert first.provisioned_via == "OTP_TRACKING"


def test_lookup_for_guest_matches_contact_details(verified_token, complaint_data):
    complaint = submit_as_guest(verified_token("guest@test.com"), complaint_data())

    found = lookup_for_guest(complaint.complaint_number, "GUEST@test.com", "+919876543210")
    assert found.id == complaint.id
    with pytest.raises(IdentityMismatch):
        lookup_for_guest(complaint.complaint_number, "guest@test.com", "+910000000000")
    with pytest.raises(NotFound):
        lookup_for_guest("CMP-1999-001", "guest@test.com", "+919876543210")
