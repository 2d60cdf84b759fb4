"""Complaint intake for verified guests and signed-in citizens, plus guest account promotion."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import current_app
from sqlalchemy import func

from extensions import db
from models import (
    Complaint,
    ComplaintAttachment,
    ComplaintPriority,
    ComplaintStatus,
    ComplaintType,
    StatusLogType,
    User,
    UserRole,
    VerificationPurpose,
    utcnow,
)
from utils.access_policy import record_audit
from utils.auth_tokens import AuthToken, issue_access_token
from utils.complaint_workflow import append_log_entry, commit_or_conflict, compute_sla_deadline, next_complaint_number
from utils.errors import Forbidden, IdentityMismatch, NotFound, Unauthenticated, ValidationFailed
from utils.mail_format import mask_email
from utils.notifications import notify_complaint_registered, ward_recipients
from utils.otp_gateway import normalize_email, redeem_token
from utils.security import generate_token


MOBILE_PATTERN = re.compile(r"^\+?[\d\s\-()]{10,}$")
MAX_DESCRIPTION_LENGTH = 2000
PROVISIONED_VIA_TRACKING = "OTP_TRACKING"


def _coerce_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    # Accepts both "WATER_SUPPLY" and the display form "Water Supply".
    key = str(value or "").strip().upper().replace(" ", "_")
    try:
        return enum_cls(key)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid {label}.", details={label: value}) from exc


def _optional_float(value, label: str) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"Invalid {label}.") from exc


@dataclass
class ComplaintFields:
    complaint_type: ComplaintType
    description: str
    ward: str
    area: str
    priority: ComplaintPriority = ComplaintPriority.MEDIUM
    contact_email: Optional[str] = None
    contact_mobile: Optional[str] = None
    address: Optional[str] = None
    landmark: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ComplaintFields":
        missing = [name for name in ("complaint_type", "description", "ward", "area") if not str(data.get(name) or "").strip()]
        if missing:
            raise ValidationFailed("Missing required fields.", details={"missing": missing})
        description = str(data["description"]).strip()
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationFailed("Description cannot exceed 2000 characters.")
        mobile = (data.get("contact_mobile") or "").strip() or None
        if mobile and not MOBILE_PATTERN.match(mobile):
            raise ValidationFailed("Please provide a valid mobile number.")
        attachments = data.get("attachments") or []
        if not isinstance(attachments, list) or not all(
            isinstance(item, dict) and item.get("filename") for item in attachments
        ):
            raise ValidationFailed("Each attachment needs at least a filename.")
        return cls(
            complaint_type=_coerce_enum(ComplaintType, data["complaint_type"], "complaint_type"),
            description=description,
            ward=str(data["ward"]).strip(),
            area=str(data["area"]).strip(),
            priority=_coerce_enum(ComplaintPriority, data.get("priority") or ComplaintPriority.MEDIUM, "priority"),
            contact_email=normalize_email(data.get("contact_email")) or None,
            contact_mobile=mobile,
            address=(data.get("address") or "").strip() or None,
            landmark=(data.get("landmark") or "").strip() or None,
            latitude=_optional_float(data.get("latitude"), "latitude"),
            longitude=_optional_float(data.get("longitude"), "longitude"),
            attachments=list(attachments),
        )


def _register(fields: ComplaintFields, submitter: Optional[User]) -> Complaint:
    """Insert the complaint, its number and its opening log entry in one transaction."""
    created_at = utcnow()
    complaint = Complaint(
        complaint_number=next_complaint_number(created_at),
        complaint_type=fields.complaint_type,
        description=fields.description,
        priority=fields.priority,
        status=ComplaintStatus.REGISTERED,
        ward=fields.ward,
        area=fields.area,
        address=fields.address,
        landmark=fields.landmark,
        latitude=fields.latitude,
        longitude=fields.longitude,
        contact_mobile=fields.contact_mobile,
        contact_email=fields.contact_email,
        submitted_by_id=submitter.id if submitter else None,
        sla_deadline=compute_sla_deadline(fields.priority, created_at),
        created_at=created_at,
        updated_at=created_at,
    )
    for meta in fields.attachments:
        complaint.attachments.append(
            ComplaintAttachment(
                filename=meta["filename"],
                original_name=meta.get("original_name") or meta["filename"],
                mimetype=meta.get("mimetype") or "application/octet-stream",
                size_bytes=int(meta.get("size_bytes") or 0),
                url=meta.get("url") or f"/uploads/{meta['filename']}",
            )
        )
    db.session.add(complaint)
    comment = "Complaint registered by guest" if submitter is None else "Complaint registered"
    append_log_entry(complaint, StatusLogType.REGISTRATION, None, ComplaintStatus.REGISTERED, submitter, comment)
    record_audit("COMPLAINT_CREATED", submitter, context=f"complaint:{complaint.complaint_number}")
    commit_or_conflict(complaint)
    current_app.logger.info(
        "Complaint registered",
        extra={
            "complaint_number": complaint.complaint_number,
            "ward": complaint.ward,
            "priority": complaint.priority.value,
            "guest": submitter is None,
        },
    )
    return complaint


def _announce(complaint: Complaint) -> None:
    notify_complaint_registered(complaint, ward_recipients(complaint.ward))


def submit_as_guest(verification_token: str, fields) -> Complaint:
    if not isinstance(fields, ComplaintFields):
        fields = ComplaintFields.from_mapping(fields)
    if not fields.contact_email or not fields.contact_mobile:
        raise ValidationFailed("Contact email and mobile number are required.")

    # Redemption joins the insert below so a failed insert leaves the token usable.
    verified_email = redeem_token(verification_token, VerificationPurpose.COMPLAINT_SUBMISSION, commit=False)
    if fields.contact_email != verified_email:
        # The token is spent either way.
        db.session.commit()
        current_app.logger.warning(
            "Guest submission email mismatch",
            extra={"verified": mask_email(verified_email), "contact": mask_email(fields.contact_email)},
        )
        raise IdentityMismatch("Verification email does not match contact email.")

    complaint = _register(fields, submitter=None)
    _announce(complaint)
    return complaint


def create_complaint(fields, actor) -> Complaint:
    if actor is None or not getattr(actor, "is_authenticated", False):
        raise Unauthenticated()
    if not isinstance(fields, ComplaintFields):
        fields = ComplaintFields.from_mapping(fields)
    if not fields.contact_email:
        fields.contact_email = normalize_email(actor.email)
    complaint = _register(fields, submitter=actor)
    _announce(complaint)
    return complaint


def upsert_citizen_by_email(email: str, full_name: Optional[str] = None, phone: Optional[str] = None) -> User:
    """Return the account for the email, provisioning a verified citizen account when none exists."""
    email = normalize_email(email)
    user = User.query.filter(func.lower(User.email) == email).first()
    if user is not None:
        if not user.is_email_verified:
            user.is_email_verified = True
        return user

    user = User(
        full_name=(full_name or email.split("@", 1)[0]).strip()[:150],
        email=email,
        phone=phone,
        role=UserRole.CITIZEN,
        is_email_verified=True,
        is_active=True,
        provisioned_via=PROVISIONED_VIA_TRACKING,
        password_set=False,
    )
    # Unusable until the citizen sets one; until then they sign in with login codes.
    user.set_password(generate_token(24))
    db.session.add(user)
    db.session.flush()
    current_app.logger.info("Citizen account provisioned", extra={"email": mask_email(email)})
    return user


def find_complaint_by_number(complaint_number: str, *, for_update: bool = False) -> Optional[Complaint]:
    query = Complaint.query.filter(Complaint.complaint_number == (complaint_number or "").strip().upper())
    if for_update:
        query = query.with_for_update()
    return query.first()


def auto_promote_on_track(complaint_number: str, verification_token: str) -> Tuple[User, AuthToken]:
    verified_email = redeem_token(verification_token, VerificationPurpose.COMPLAINT_TRACKING, commit=False)
    complaint = find_complaint_by_number(complaint_number, for_update=True)
    if complaint is None:
        db.session.commit()
        raise NotFound("Complaint not found.")
    if normalize_email(complaint.contact_email) != verified_email:
        db.session.commit()
        raise IdentityMismatch("Verification email does not match the complaint contact email.")

    if complaint.submitted_by_id:
        user = db.session.get(User, complaint.submitted_by_id)
        db.session.commit()
    else:
        user = upsert_citizen_by_email(verified_email, phone=complaint.contact_mobile)
        complaint.submitted_by_id = user.id
        record_audit("GUEST_AUTO_PROMOTED", user, context=f"complaint:{complaint.complaint_number}")
        commit_or_conflict(complaint)
        current_app.logger.info(
            "Guest complaint linked to citizen account",
            extra={"complaint_number": complaint.complaint_number, "user_id": user.id},
        )

    if not user.is_active:
        raise Forbidden("This account has been deactivated.")
    return user, issue_access_token(user)


def lookup_for_guest(complaint_number: str, email: str, mobile: str) -> Complaint:
    """Read-only tracking by contact details, without creating an account."""
    complaint = find_complaint_by_number(complaint_number)
    if complaint is None:
        raise NotFound("Complaint not found.")
    same_email = normalize_email(complaint.contact_email) == normalize_email(email)
    same_mobile = (complaint.contact_mobile or "").replace(" ", "") == (mobile or "").replace(" ", "")
    if not (same_email and same_mobile):
        raise IdentityMismatch("Contact details do not match.")
    return complaint
