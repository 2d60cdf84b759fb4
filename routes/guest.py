"""Guest verification and complaint intake endpoints."""
from flask import Blueprint, current_app
from wtforms import FloatField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Email, Length, Optional, Regexp

from models import ComplaintPriority, VerificationPurpose
from utils.api import ApiForm, api_response, bind_form
from utils.complaint_workflow import sla_status
from utils.errors import ValidationFailed
from utils.guest_intake import (
    MOBILE_PATTERN,
    ComplaintFields,
    auto_promote_on_track,
    find_complaint_by_number,
    lookup_for_guest,
    submit_as_guest,
)
from utils.otp_gateway import issue_code, resend_code, verify_code

guest_bp = Blueprint("guest", __name__, url_prefix="/api/guest")

GUEST_PURPOSES = (VerificationPurpose.COMPLAINT_SUBMISSION, VerificationPurpose.COMPLAINT_TRACKING)


class SendOtpForm(ApiForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    purpose = SelectField(
        "Purpose",
        choices=[(p.value, p.value) for p in GUEST_PURPOSES],
        coerce=lambda value: str(value).upper(),
        default=VerificationPurpose.COMPLAINT_SUBMISSION.value,
    )


class VerifyOtpForm(ApiForm):
    session_id = StringField("Session", validators=[DataRequired(), Length(max=64)])
    otp = StringField("OTP", validators=[DataRequired(), Regexp(r"^\d{4,10}$", message="OTP must be numeric.")])


class ResendOtpForm(ApiForm):
    session_id = StringField("Session", validators=[DataRequired(), Length(max=64)])


class GuestComplaintForm(ApiForm):
    verification_token = StringField("Verification token", validators=[DataRequired(), Length(max=128)])
    complaint_type = StringField("Type", validators=[DataRequired(), Length(max=40)])
    description = TextAreaField("Description", validators=[DataRequired(), Length(min=10, max=2000)])
    priority = SelectField(
        "Priority",
        choices=[(p.value, p.value.title()) for p in ComplaintPriority],
        coerce=lambda value: str(value).upper(),
        default=ComplaintPriority.MEDIUM.value,
    )
    contact_mobile = StringField(
        "Mobile",
        validators=[DataRequired(), Regexp(MOBILE_PATTERN, message="Please provide a valid mobile number.")],
    )
    contact_email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    ward = StringField("Ward", validators=[DataRequired(), Length(max=80)])
    area = StringField("Area", validators=[DataRequired(), Length(max=120)])
    address = StringField("Address", validators=[Optional(), Length(max=500)])
    landmark = StringField("Landmark", validators=[Optional(), Length(max=255)])
    latitude = FloatField("Latitude", validators=[Optional()])
    longitude = FloatField("Longitude", validators=[Optional()])


class TrackComplaintForm(ApiForm):
    complaint_number = StringField("Complaint ID", validators=[DataRequired(), Length(max=32)])
    verification_token = StringField("Verification token", validators=[Optional(), Length(max=128)])
    email = StringField("Email", validators=[Optional(), Email(), Length(max=255)])
    mobile = StringField("Mobile", validators=[Optional(), Length(max=30)])


@guest_bp.route("/send-otp", methods=["POST"])
def send_otp():
    form, _ = bind_form(SendOtpForm)
    issued = issue_code(form.email.data, form.purpose.data)
    return api_response(issued.to_dict(), "OTP sent successfully to your email")


@guest_bp.route("/verify-otp", methods=["POST"])
def verify_otp():
    form, _ = bind_form(VerifyOtpForm)
    token = verify_code(form.session_id.data, form.otp.data)
    return api_response(
        {
            "verification_token": token,
            "expires_in_minutes": int(current_app.config.get("VERIFIED_TOKEN_TTL_MINUTES", 30)),
        },
        "Email verified successfully",
    )


@guest_bp.route("/resend-otp", methods=["POST"])
def resend_otp():
    form, _ = bind_form(ResendOtpForm)
    issued = resend_code(form.session_id.data)
    return api_response(issued.to_dict(), "New OTP sent successfully")


@guest_bp.route("/submit-complaint", methods=["POST"])
def submit_complaint():
    form, payload = bind_form(GuestComplaintForm)
    fields = ComplaintFields.from_mapping({**form.data, "attachments": payload.get("attachments")})
    complaint = submit_as_guest(form.verification_token.data, fields)
    return api_response({"complaint": complaint.public_payload()}, "Guest complaint submitted successfully", 201)


@guest_bp.route("/track-complaint", methods=["POST"])
def track_complaint():
    form, _ = bind_form(TrackComplaintForm)
    if form.verification_token.data:
        user, auth = auto_promote_on_track(form.complaint_number.data, form.verification_token.data)
        complaint = find_complaint_by_number(form.complaint_number.data)
        return api_response(
            {
                "complaint": complaint.to_dict(sla_status(complaint)),
                "user": user.to_dict(),
                "auth": auth.to_dict(),
            },
            "Complaint details retrieved successfully",
        )
    if not (form.email.data and form.mobile.data):
        raise ValidationFailed("Provide a verification token, or the contact email and mobile number.")
    complaint = lookup_for_guest(form.complaint_number.data, form.email.data, form.mobile.data)
    return api_response({"complaint": complaint.to_dict(sla_status(complaint))}, "Complaint details retrieved successfully")
