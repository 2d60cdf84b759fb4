import pytest

from models import AuditLog, UserRole
from utils.auth_tokens import decode_access_token
from utils.citizen_access import login_with_code, request_login_code, request_password_setup, set_initial_password
from utils.errors import Forbidden, InvalidToken, NotFound, ValidationFailed
from utils.guest_intake import auto_promote_on_track, submit_as_guest
from utils.otp_gateway import issue_code


@pytest.fixture
def promoted_guest(verified_token, complaint_data):
    complaint = submit_as_guest(verified_token("guest@test.com"), complaint_data())
    user, _ = auto_promote_on_track(
        complaint.complaint_number, verified_token("guest@test.com", purpose="COMPLAINT_TRACKING")
    )
    return user


def test_login_code_signs_in_existing_account(citizen, sender):
    issued = request_login_code("Citizen@Test.com")
    assert sender.sent[-1]["purpose"] == "LOGIN"

    user, auth = login_with_code(issued.session_id, sender.last_code)

    assert user.id == citizen.id
    assert user.last_login_at is not None
    assert decode_access_token(auth.token)["sub"] == citizen.id
    assert AuditLog.query.filter_by(action_type="LOGIN_OTP", user_id=citizen.id).count() == 1


def test_login_code_needs_an_active_account(sender, make_user):
    with pytest.raises(NotFound):
        request_login_code("nobody@test.com")
    make_user("sleepy@test.com", UserRole.CITIZEN, is_active=False)
    with pytest.raises(Forbidden):
        request_login_code("sleepy@test.com")
    assert sender.sent == []


def test_code_issued_for_another_purpose_cannot_sign_in(citizen, sender):
    issued = issue_code("citizen@test.com", "COMPLAINT_SUBMISSION")

    with pytest.raises(InvalidToken):
        login_with_code(issued.session_id, sender.last_code)


def test_provisioned_guest_sets_a_password_once(promoted_guest, sender):
    assert promoted_guest.password_set is False

    issued = request_password_setup("guest@test.com")
    assert sender.sent[-1]["purpose"] == "PASSWORD_SETUP"
    user, auth = set_initial_password(issued.session_id, sender.last_code, "N3w!Password99")

    assert user.id == promoted_guest.id
    assert user.password_set is True
    assert user.check_password("N3w!Password99")
    assert decode_access_token(auth.token)["sub"] == user.id
    with pytest.raises(Forbidden):
        request_password_setup("guest@test.com")


def test_weak_password_leaves_setup_code_usable(promoted_guest, sender):
    issued = request_password_setup("guest@test.com")

    with pytest.raises(ValidationFailed):
        set_initial_password(issued.session_id, sender.last_code, "weakpassword")

    user, _ = set_initial_password(issued.session_id, sender.last_code, "N3w!Password99")
    assert user.password_set is True


def test_registered_account_cannot_request_password_setup(citizen, sender):
    with pytest.raises(Forbidden):
        request_password_setup("citizen@test.com")
    assert sender.sent == []
