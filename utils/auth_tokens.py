"""Signed bearer tokens for API sessions and the Flask-Login request loader."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from flask import current_app

from extensions import db
from models import User


@dataclass(frozen=True)
class AuthToken:
    token: str
    expires_at: datetime
    token_type: str = "Bearer"

    def to_dict(self) -> dict:
        return {"token": self.token, "token_type": self.token_type, "expires_at": self.expires_at}


def issue_access_token(user: User) -> AuthToken:
    """Create a signed HS256 access token for the user."""
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=int(current_app.config.get("JWT_EXPIRES_HOURS", 24)))
    payload = {
        "sub": str(user.id),
        "role": user.role.value,
        "type": "access",
        "iat": now,
        "exp": expires_at,
    }
    token = jwt.encode(payload, current_app.config["JWT_SECRET"], algorithm="HS256")
    return AuthToken(token=token, expires_at=expires_at.replace(tzinfo=None))


def decode_access_token(token: str) -> Optional[dict]:
    try:
        payload = jwt.decode(token, current_app.config["JWT_SECRET"], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        current_app.logger.info("Expired bearer token presented")
        return None
    except jwt.InvalidTokenError:
        current_app.logger.info("Invalid bearer token presented")
        return None
    if payload.get("type") != "access" or not payload.get("sub"):
        return None
    return payload


def load_user_from_request(req) -> Optional[User]:
    header = req.headers.get("Authorization", "")
    scheme, _, credential = header.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        return None
    payload = decode_access_token(credential.strip())
    if payload is None:
        return None
    user = db.session.get(User, payload["sub"])
    if user is None or not user.is_active:
        return None
    return user
