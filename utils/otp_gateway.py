"""One-time-code issuance, verification, and single-use token redemption."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app, has_request_context, request

from extensions import collaborator
from models import VerificationPurpose, VerificationSession, utcnow
from utils.errors import (
    AttemptsExceeded,
    CodeMismatch,
    DeliveryError,
    InvalidToken,
    RateLimited,
    SessionExpired,
    SessionNotFound,
    ValidationFailed,
)
from utils.mail_format import mask_email
from utils.security import generate_hex_token, generate_otp, hash_value
from utils.session_store import (
    CLOSED_EXHAUSTED,
    CLOSED_EXPIRED,
    CLOSED_RESENT,
    CLOSED_TOKEN_EXPIRED,
    CLOSED_UNDELIVERED,
    get_session_store,
)


@dataclass(frozen=True)
class IssuedCode:
    session_id: str
    expires_at: datetime
    masked_email: str

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "expires_at": self.expires_at,
            "email": self.masked_email,
        }


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def _coerce_purpose(purpose) -> VerificationPurpose:
    if isinstance(purpose, VerificationPurpose):
        return purpose
    try:
        return VerificationPurpose(str(purpose).upper())
    except ValueError as exc:
        raise ValidationFailed("Unknown verification purpose.") from exc


def _request_ip() -> Optional[str]:
    return request.remote_addr if has_request_context() else None


def _ttl_minutes() -> int:
    return int(current_app.config.get("OTP_TTL_MINUTES", 10))


def _check_rate_limit(store, email: str) -> None:
    window_start = utcnow() - timedelta(minutes=_ttl_minutes())
    if store.count_recent(email, window_start) >= int(current_app.config.get("OTP_MAX_SESSIONS_PER_WINDOW", 5)):
        current_app.logger.warning("OTP issuance rate limited", extra={"recipient": mask_email(email)})
        raise RateLimited()


def issue_code(email: str, purpose) -> IssuedCode:
    """Create a fresh verification session and deliver its code."""
    email = normalize_email(email)
    if not email:
        raise ValidationFailed("Email is required.")
    purpose = _coerce_purpose(purpose)
    store = get_session_store()
    _check_rate_limit(store, email)

    config = current_app.config
    code = generate_otp(int(config.get("OTP_CODE_LENGTH", 6)))
    session = VerificationSession.build(
        session_id=generate_hex_token(32),
        email=email,
        purpose=purpose,
        code=code,
        ttl_minutes=_ttl_minutes(),
        ip_address=_request_ip(),
    )
    store.put(session)
    session_id = session.id
    expires_at = session.expires_at

    try:
        collaborator("code_sender").send_code(email, code, purpose.value)
    except Exception as exc:
        store.delete(session_id, CLOSED_UNDELIVERED)
        current_app.logger.warning(
            "OTP delivery failed",
            extra={"recipient": mask_email(email), "purpose": purpose.value},
            exc_info=True,
        )
        raise DeliveryError() from exc

    current_app.logger.info(
        "OTP issued",
        extra={"recipient": mask_email(email), "purpose": purpose.value},
    )
    return IssuedCode(session_id=session_id, expires_at=expires_at, masked_email=mask_email(email))


def _open_session(store, session_id: str, now: datetime, max_attempts: int) -> VerificationSession:
    """Load a session that can still take a code, discarding it when expired or exhausted."""
    session = store.get(session_id)
    if session is None:
        # Discarded sessions keep reporting why they were closed.
        reason = store.closed_reason(session_id)
        if reason == CLOSED_EXPIRED:
            raise SessionExpired()
        if reason == CLOSED_EXHAUSTED:
            raise AttemptsExceeded()
        raise SessionNotFound()
    # A verified session has already consumed its code.
    if session.verified:
        raise SessionNotFound()
    if session.is_expired(now):
        store.delete(session_id, CLOSED_EXPIRED)
        raise SessionExpired()
    if session.attempt_count >= max_attempts:
        store.delete(session_id, CLOSED_EXHAUSTED)
        raise AttemptsExceeded()
    return session


def verify_code(session_id: str, code: str) -> str:
    """Check a submitted code; on success return the single-use verification token."""
    store = get_session_store()
    now = utcnow()
    max_attempts = int(current_app.config.get("OTP_MAX_ATTEMPTS", 3))
    session = _open_session(store, session_id, now, max_attempts)
    purpose = session.purpose

    if not session.code_matches((code or "").strip()):
        attempts = store.increment_attempts(session_id, max_attempts)
        if attempts is None:
            # Concurrent guesses used up the remaining attempts first.
            _open_session(store, session_id, now, max_attempts)
            raise AttemptsExceeded()
        remaining = max(max_attempts - attempts, 0)
        current_app.logger.info(
            "OTP mismatch",
            extra={"session": session_id[:8], "remaining_attempts": remaining},
        )
        raise CodeMismatch(remaining)

    token = generate_hex_token(32)
    token_expires_at = now + timedelta(minutes=int(current_app.config.get("VERIFIED_TOKEN_TTL_MINUTES", 30)))
    if not store.mark_verified(session_id, hash_value(token), now, token_expires_at, max_attempts):
        _open_session(store, session_id, now, max_attempts)
        raise SessionNotFound()
    current_app.logger.info("OTP verified", extra={"session": session_id[:8], "purpose": purpose.value})
    return token


def redeem_token(token: str, purpose=None, *, commit: bool = True) -> str:
    """Consume a verification token and return the email it was issued for.

    With ``commit=False`` the session deletion is left for the caller's
    transaction, so redemption and the work it authorizes land together.
    """
    if not token:
        raise InvalidToken()
    token_hash = hash_value(token)
    store = get_session_store()
    session = store.find_by_token_hash(token_hash)
    if session is None or not session.verified:
        raise InvalidToken()

    if not session.token_is_live(utcnow()):
        store.delete(session.id, CLOSED_TOKEN_EXPIRED)
        raise InvalidToken("Verification token has expired. Please verify your email again.")

    if purpose is not None and session.purpose != _coerce_purpose(purpose):
        raise InvalidToken("Verification token was issued for a different purpose.")

    email = session.subject_email
    if not store.consume(session.id, token_hash, commit=commit):
        # Another request redeemed the token after it was read.
        raise InvalidToken()
    return email


def resend_code(session_id: str) -> IssuedCode:
    """Replace a pending session with a new one for the same email and purpose.

    The replaced session stays on the issuance ledger, so resends count
    against the same rate limit as fresh requests.
    """
    store = get_session_store()
    session = store.get(session_id)
    if session is None or session.verified:
        raise SessionNotFound()
    email = session.subject_email
    purpose = session.purpose
    _check_rate_limit(store, email)
    store.delete(session_id, CLOSED_RESENT)
    return issue_code(email, purpose)
