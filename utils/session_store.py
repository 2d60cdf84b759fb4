"""Durable storage for one-time-code verification sessions."""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from sqlalchemy import func

from extensions import collaborator, db
from models import VerificationIssuance, VerificationSession

# Why a session left the store; kept on its issuance ledger row.
CLOSED_EXPIRED = "EXPIRED"
CLOSED_EXHAUSTED = "ATTEMPTS_EXCEEDED"
CLOSED_RESENT = "RESENT"
CLOSED_UNDELIVERED = "DELIVERY_FAILED"
CLOSED_TOKEN_EXPIRED = "TOKEN_EXPIRED"


class VerificationSessionStore(ABC):
    """Keyed storage for verification sessions; implementations must be shared across workers.

    Attempt counting, verification and redemption are conditional writes so
    that concurrent requests against one session cannot both succeed.
    """

    @abstractmethod
    def get(self, session_id: str) -> Optional[VerificationSession]:
        ...

    @abstractmethod
    def put(self, session: VerificationSession) -> VerificationSession:
        """Persist a newly issued session along with its issuance ledger row."""

    @abstractmethod
    def delete(self, session_id: str, reason: Optional[str] = None) -> bool:
        """Remove a session, recording why on the ledger when a reason is given."""

    @abstractmethod
    def closed_reason(self, session_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def increment_attempts(self, session_id: str, max_attempts: int) -> Optional[int]:
        """Count one failed attempt; None when the session is gone or already at the limit."""

    @abstractmethod
    def mark_verified(
        self,
        session_id: str,
        token_hash: str,
        verified_at: datetime,
        token_expires_at: datetime,
        max_attempts: int,
    ) -> bool:
        ...

    @abstractmethod
    def find_by_token_hash(self, token_hash: str) -> Optional[VerificationSession]:
        ...

    @abstractmethod
    def consume(self, session_id: str, token_hash: str, *, commit: bool = True) -> bool:
        """Delete a verified session exactly once; with commit=False the removal joins the caller's transaction."""

    @abstractmethod
    def count_recent(self, email: str, since: datetime) -> int:
        ...

    @abstractmethod
    def sweep(self, now: datetime) -> int:
        ...


class SqlVerificationSessionStore(VerificationSessionStore):
    """Sessions live in the same relational database as complaints.

    Every mutating call commits so that an attempt counter or a deletion is
    durable before the caller reports the outcome.
    """

    def get(self, session_id: str) -> Optional[VerificationSession]:
        if not session_id:
            return None
        return db.session.get(VerificationSession, session_id)

    def put(self, session: VerificationSession) -> VerificationSession:
        db.session.add(session)
        db.session.add(
            VerificationIssuance(
                session_id=session.id,
                subject_email=session.subject_email,
                purpose=session.purpose,
                created_at=session.created_at,
                expires_at=session.expires_at,
            )
        )
        db.session.commit()
        return session

    def delete(self, session_id: str, reason: Optional[str] = None) -> bool:
        if not session_id:
            return False
        removed = VerificationSession.query.filter_by(id=session_id).delete(synchronize_session=False)
        if reason:
            VerificationIssuance.query.filter_by(session_id=session_id).update(
                {VerificationIssuance.closed_reason: reason}, synchronize_session=False
            )
        db.session.commit()
        return removed == 1

    def closed_reason(self, session_id: str) -> Optional[str]:
        if not session_id:
            return None
        issuance = db.session.get(VerificationIssuance, session_id)
        return issuance.closed_reason if issuance else None

    def increment_attempts(self, session_id: str, max_attempts: int) -> Optional[int]:
        updated = VerificationSession.query.filter(
            VerificationSession.id == session_id,
            VerificationSession.verified.is_(False),
            VerificationSession.attempt_count < max_attempts,
        ).update({VerificationSession.attempt_count: VerificationSession.attempt_count + 1}, synchronize_session=False)
        attempts = None
        if updated == 1:
            attempts = (
                db.session.query(VerificationSession.attempt_count)
                .filter(VerificationSession.id == session_id)
                .scalar()
            )
        db.session.commit()
        return attempts

    def mark_verified(
        self,
        session_id: str,
        token_hash: str,
        verified_at: datetime,
        token_expires_at: datetime,
        max_attempts: int,
    ) -> bool:
        updated = VerificationSession.query.filter(
            VerificationSession.id == session_id,
            VerificationSession.verified.is_(False),
            VerificationSession.attempt_count < max_attempts,
            VerificationSession.expires_at >= verified_at,
        ).update(
            {
                VerificationSession.verified: True,
                VerificationSession.verified_at: verified_at,
                VerificationSession.token_hash: token_hash,
                VerificationSession.token_expires_at: token_expires_at,
            },
            synchronize_session=False,
        )
        db.session.commit()
        return updated == 1

    def find_by_token_hash(self, token_hash: str) -> Optional[VerificationSession]:
        if not token_hash:
            return None
        return VerificationSession.query.filter_by(token_hash=token_hash).first()

    def consume(self, session_id: str, token_hash: str, *, commit: bool = True) -> bool:
        removed = VerificationSession.query.filter(
            VerificationSession.id == session_id,
            VerificationSession.token_hash == token_hash,
            VerificationSession.verified.is_(True),
        ).delete(synchronize_session=False)
        if commit:
            db.session.commit()
        return removed == 1

    def count_recent(self, email: str, since: datetime) -> int:
        """Issuances for the email since ``since``, whether or not their sessions still exist."""
        return (
            db.session.query(func.count(VerificationIssuance.session_id))
            .filter(VerificationIssuance.subject_email == email, VerificationIssuance.created_at >= since)
            .scalar()
            or 0
        )

    def sweep(self, now: datetime) -> int:
        """Remove unverified sessions past their code expiry and verified ones past their token window.

        Ledger rows are dropped once their code would have expired, which also
        takes them out of the issuance window.
        """
        stale_codes = VerificationSession.query.filter(
            VerificationSession.verified.is_(False),
            VerificationSession.expires_at < now,
        ).delete(synchronize_session=False)
        stale_tokens = VerificationSession.query.filter(
            VerificationSession.verified.is_(True),
            VerificationSession.token_expires_at.isnot(None),
            VerificationSession.token_expires_at < now,
        ).delete(synchronize_session=False)
        VerificationIssuance.query.filter(VerificationIssuance.expires_at < now).delete(synchronize_session=False)
        db.session.commit()
        return stale_codes + stale_tokens


def get_session_store() -> VerificationSessionStore:
    return collaborator("session_store")
