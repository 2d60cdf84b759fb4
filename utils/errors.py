"""Domain error taxonomy surfaced by the verification gateway and complaint workflow."""
from typing import Any, Dict, Optional


class PortalError(Exception):
    """Base class for every caller-facing failure; carries a stable kind and HTTP status."""

    kind = "PortalError"
    http_status = 400
    default_message = "Request could not be processed."

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message or self.default_message
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.kind,
            "data": None,
        }
        if self.details:
            payload["data"] = self.details
        return payload


class SessionNotFound(PortalError):
    kind = "SessionNotFound"
    http_status = 404
    default_message = "Verification session not found. Please request a new OTP."


class SessionExpired(PortalError):
    kind = "SessionExpired"
    http_status = 410
    default_message = "OTP has expired. Please request a new OTP."


class AttemptsExceeded(PortalError):
    kind = "AttemptsExceeded"
    http_status = 429
    default_message = "Maximum verification attempts exceeded. Please request a new OTP."


class CodeMismatch(PortalError):
    kind = "CodeMismatch"
    http_status = 400

    def __init__(self, remaining_attempts: int) -> None:
        super().__init__(
            f"Invalid OTP. {remaining_attempts} attempts remaining",
            details={"remaining_attempts": remaining_attempts},
        )
        self.remaining_attempts = remaining_attempts


class InvalidToken(PortalError):
    kind = "InvalidToken"
    http_status = 401
    default_message = "Invalid or expired verification token."


class IdentityMismatch(PortalError):
    kind = "IdentityMismatch"
    http_status = 403
    default_message = "Email does not match the verified email."


class InvalidTransition(PortalError):
    kind = "InvalidTransition"
    http_status = 409
    default_message = "Status change is not allowed from the current state."


class Forbidden(PortalError):
    kind = "Forbidden"
    http_status = 403
    default_message = "You are not allowed to perform this action."


class NotResolved(PortalError):
    kind = "NotResolved"
    http_status = 409
    default_message = "Feedback can only be submitted for resolved or closed complaints."


class DeliveryError(PortalError):
    kind = "DeliveryError"
    http_status = 502
    default_message = "Failed to send OTP. Please try again."


class NotFound(PortalError):
    kind = "NotFound"
    http_status = 404
    default_message = "Requested record was not found."


class ValidationFailed(PortalError):
    kind = "ValidationFailed"
    http_status = 422
    default_message = "Submitted data is invalid."


class RateLimited(PortalError):
    kind = "RateLimited"
    http_status = 429
    default_message = "Too many OTP requests. Please wait before trying again."


class ConcurrentModification(PortalError):
    kind = "ConcurrentModification"
    http_status = 409
    default_message = "The complaint was changed by someone else. Reload and retry."


class Unauthenticated(PortalError):
    kind = "Unauthenticated"
    http_status = 401
    default_message = "Authentication required."
