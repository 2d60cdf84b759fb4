from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import delete, update

from conftest import FailingCodeSender
from extensions import db, register_collaborator
from models import VerificationPurpose, VerificationSession, utcnow
from utils.errors import (
    AttemptsExceeded,
    CodeMismatch,
    DeliveryError,
    InvalidToken,
    RateLimited,
    SessionExpired,
    SessionNotFound,
)
from utils.otp_gateway import issue_code, redeem_token, resend_code, verify_code
from utils.session_store import get_session_store


def _wrong(code):
    return "000000" if code != "000000" else "111111"


@contextmanager
def _meanwhile(method_name, action):
    """Run ``action`` right after the store's first successful ``method_name`` read, as another worker would."""
    store = get_session_store()
    real = getattr(store, method_name)
    fired = []

    def reader(*args, **kwargs):
        result = real(*args, **kwargs)
        if result is not None and not fired:
            fired.append(True)
            action(result)
        return result

    with patch.object(store, method_name, side_effect=reader):
        yield


def _set_attempts(session_id, count):
    table = VerificationSession.__table__
    db.session.connection().execute(update(table).where(table.c.id == session_id).values(attempt_count=count))


def test_issue_code_sends_six_digits_and_stores_only_a_hash(sender):
    issued = issue_code("  Citizen@Test.com ", "complaint_submission")

    assert len(sender.sent) == 1
    delivered = sender.sent[0]
    assert delivered["email"] == "citizen@test.com"
    assert delivered["purpose"] == "COMPLAINT_SUBMISSION"
    assert len(delivered["code"]) == 6 and delivered["code"].isdigit()

    session = db.session.get(VerificationSession, issued.session_id)
    assert session.subject_email == "citizen@test.com"
    assert session.code_hash != delivered["code"]
    assert session.expires_at - session.created_at == timedelta(minutes=10)
    assert issued.masked_email != "citizen@test.com"


def test_delivery_failure_leaves_no_session(app):
    register_collaborator(app, "code_sender", FailingCodeSender())

    with pytest.raises(DeliveryError):
        issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)

    assert VerificationSession.query.count() == 0


def test_verify_after_expiry_always_fails_even_with_correct_code(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    later = utcnow() + timedelta(minutes=11)

    with patch("utils.otp_gateway.utcnow", return_value=later):
        for _ in range(2):
            with pytest.raises(SessionExpired):
                verify_code(issued.session_id, sender.last_code)
    assert db.session.get(VerificationSession, issued.session_id) is None

    with pytest.raises(SessionExpired):
        with patch("utils.otp_gateway.utcnow", return_value=later + timedelta(minutes=5)):
            verify_code(issued.session_id, sender.last_code)


def test_three_mismatches_then_attempts_exceeded(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    correct = sender.last_code

    remaining = []
    for _ in range(3):
        with pytest.raises(CodeMismatch) as excinfo:
            verify_code(issued.session_id, _wrong(correct))
        remaining.append(excinfo.value.remaining_attempts)
    assert remaining == [2, 1, 0]

    with pytest.raises(AttemptsExceeded):
        verify_code(issued.session_id, correct)
    assert db.session.get(VerificationSession, issued.session_id) is None
    with pytest.raises(AttemptsExceeded):
        verify_code(issued.session_id, _wrong(correct))


def test_mismatch_message_surfaces_remaining_attempts(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)

    with pytest.raises(CodeMismatch) as excinfo:
        verify_code(issued.session_id, _wrong(sender.last_code))

    assert str(excinfo.value) == "Invalid OTP. 2 attempts remaining"
    assert excinfo.value.to_payload()["data"] == {"remaining_attempts": 2}


def test_unknown_session_is_not_found(app):
    with pytest.raises(SessionNotFound):
        verify_code("does-not-exist", "123456")


def test_verified_session_cannot_be_verified_again(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    verify_code(issued.session_id, sender.last_code)

    with pytest.raises(SessionNotFound):
        verify_code(issued.session_id, sender.last_code)


def test_token_redeems_exactly_once(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    token = verify_code(issued.session_id, sender.last_code)

    assert redeem_token(token) == "citizen@test.com"
    assert db.session.get(VerificationSession, issued.session_id) is None
    with pytest.raises(InvalidToken):
        redeem_token(token)


def test_redeem_rejects_unknown_and_empty_tokens(app):
    with pytest.raises(InvalidToken):
        redeem_token("f" * 64)
    with pytest.raises(InvalidToken):
        redeem_token("")


def test_redeem_rejects_expired_token_and_discards_session(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    token = verify_code(issued.session_id, sender.last_code)
    session = db.session.get(VerificationSession, issued.session_id)
    session.token_expires_at = utcnow() - timedelta(minutes=1)
    db.session.commit()

    with pytest.raises(InvalidToken):
        redeem_token(token)
    assert db.session.get(VerificationSession, issued.session_id) is None


def test_redeem_enforces_purpose(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_TRACKING)
    token = verify_code(issued.session_id, sender.last_code)

    with pytest.raises(InvalidToken):
        redeem_token(token, VerificationPurpose.COMPLAINT_SUBMISSION)
    assert redeem_token(token, VerificationPurpose.COMPLAINT_TRACKING) == "citizen@test.com"


def test_resend_invalidates_previous_session(sender):
    first = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    first_code = sender.last_code

    second = resend_code(first.session_id)

    assert second.session_id != first.session_id
    assert sender.sent[-1]["purpose"] == "COMPLAINT_SUBMISSION"
    with pytest.raises(SessionNotFound):
        verify_code(first.session_id, first_code)
    assert verify_code(second.session_id, sender.last_code)


def test_resend_of_unknown_session_fails(app):
    with pytest.raises(SessionNotFound):
        resend_code("missing")


def test_issuance_is_rate_limited_per_email(app, sender):
    app.config["OTP_MAX_SESSIONS_PER_WINDOW"] = 2
    issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)

    with pytest.raises(RateLimited):
        issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    issue_code("other@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    assert len(sender.sent) == 3


def test_resends_count_against_the_issuance_limit(app, sender):
    app.config["OTP_MAX_SESSIONS_PER_WINDOW"] = 2
    issued = resend_code(issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION).session_id)

    with pytest.raises(RateLimited):
        resend_code(issued.session_id)

    assert len(sender.sent) == 2
    # A refused resend leaves the pending code usable.
    assert verify_code(issued.session_id, sender.last_code)


def test_discarded_sessions_still_count_toward_the_limit(app, sender):
    app.config["OTP_MAX_SESSIONS_PER_WINDOW"] = 1
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    for _ in range(3):
        with pytest.raises(CodeMismatch):
            verify_code(issued.session_id, _wrong(sender.last_code))
    with pytest.raises(AttemptsExceeded):
        verify_code(issued.session_id, sender.last_code)

    with pytest.raises(RateLimited):
        issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)


def test_concurrent_wrong_guesses_are_all_counted(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)

    # Two other requests miss while this one is comparing the code.
    with _meanwhile("get", lambda session: _set_attempts(session.id, 2)):
        with pytest.raises(CodeMismatch) as excinfo:
            verify_code(issued.session_id, _wrong(sender.last_code))

    assert excinfo.value.remaining_attempts == 0
    assert db.session.get(VerificationSession, issued.session_id).attempt_count == 3
    with pytest.raises(AttemptsExceeded):
        verify_code(issued.session_id, sender.last_code)


def test_correct_code_is_refused_once_attempts_run_out_concurrently(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)

    with _meanwhile("get", lambda session: _set_attempts(session.id, 3)):
        with pytest.raises(AttemptsExceeded):
            verify_code(issued.session_id, sender.last_code)

    assert db.session.get(VerificationSession, issued.session_id) is None


def test_token_redeemed_concurrently_is_honoured_once(sender):
    issued = issue_code("citizen@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    token = verify_code(issued.session_id, sender.last_code)
    table = VerificationSession.__table__

    def redeemed_elsewhere(session):
        db.session.connection().execute(delete(table).where(table.c.id == session.id))

    with _meanwhile("find_by_token_hash", redeemed_elsewhere):
        with pytest.raises(InvalidToken):
            redeem_token(token)


def test_sweep_removes_expired_and_spent_sessions(sender):
    pending = issue_code("one@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    verified = issue_code("two@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)
    verify_code(verified.session_id, sender.last_code)
    fresh = issue_code("three@test.com", VerificationPurpose.COMPLAINT_SUBMISSION)

    removed = get_session_store().sweep(utcnow() + timedelta(minutes=45))

    assert removed == 3
    assert db.session.get(VerificationSession, pending.session_id) is None
    assert db.session.get(VerificationSession, fresh.session_id) is None

    assert get_session_store().sweep(utcnow()) == 0
