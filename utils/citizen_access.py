"""Code-based sign-in and first password setup for existing accounts."""
from typing import Tuple

from flask import current_app
from sqlalchemy import func

from extensions import db
from models import User, VerificationPurpose, utcnow
from utils.access_policy import record_audit
from utils.auth_tokens import AuthToken, issue_access_token
from utils.errors import Forbidden, NotFound, ValidationFailed
from utils.mail_format import mask_email
from utils.otp_gateway import IssuedCode, issue_code, normalize_email, redeem_token, verify_code
from utils.security import password_meets_policy


def _active_account(email: str) -> User:
    user = User.query.filter(func.lower(User.email) == normalize_email(email)).first()
    if user is None:
        raise NotFound("No account is registered with this email.")
    if not user.is_active:
        raise Forbidden("Your account is inactive. Please contact support.")
    return user


def request_login_code(email: str) -> IssuedCode:
    user = _active_account(email)
    return issue_code(user.email, VerificationPurpose.LOGIN)


def login_with_code(session_id: str, code: str) -> Tuple[User, AuthToken]:
    """Verify a login code and sign the account in, as an alternative to the password."""
    token = verify_code(session_id, code)
    email = redeem_token(token, VerificationPurpose.LOGIN)
    user = _active_account(email)
    user.last_login_at = utcnow()
    record_audit("LOGIN_OTP", user)
    db.session.commit()
    current_app.logger.info("Signed in with verification code", extra={"user_id": user.id})
    return user, issue_access_token(user)


def request_password_setup(email: str) -> IssuedCode:
    """Send a setup code to an account that has never chosen a password."""
    user = _active_account(email)
    if user.password_set:
        raise Forbidden("A password is already set for this account.")
    return issue_code(user.email, VerificationPurpose.PASSWORD_SETUP)


def set_initial_password(session_id: str, code: str, password: str) -> Tuple[User, AuthToken]:
    password_ok, reason = password_meets_policy(password or "")
    if not password_ok:
        raise ValidationFailed(reason, details={"fields": {"password": [reason]}})

    # The policy check comes first so a weak password does not spend the code.
    token = verify_code(session_id, code)
    email = redeem_token(token, VerificationPurpose.PASSWORD_SETUP)
    user = _active_account(email)
    if user.password_set:
        raise Forbidden("A password is already set for this account.")

    user.set_password(password)
    user.password_set = True
    user.last_login_at = utcnow()
    record_audit("PASSWORD_SET", user)
    db.session.commit()
    current_app.logger.info("Initial password set", extra={"email": mask_email(user.email)})
    return user, issue_access_token(user)
