"""Complaint intake, lookup, and lifecycle endpoints for signed-in users."""
from flask import Blueprint, current_app, request
from flask_login import current_user, login_required
from wtforms import FloatField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Email, Length, Optional, Regexp

from extensions import db
from models import Complaint, ComplaintPriority, ComplaintStatus
from utils.access_policy import Action, authorize, visible_complaints
from utils.api import ApiForm, api_response, bind_form
from utils.complaint_workflow import add_remark, assign, change_status, sla_status, submit_feedback
from utils.errors import NotFound, ValidationFailed
from utils.guest_intake import MOBILE_PATTERN, ComplaintFields, create_complaint, find_complaint_by_number

complaints_bp = Blueprint("complaints", __name__, url_prefix="/api/complaints")


class ComplaintForm(ApiForm):
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
        validators=[Optional(), Regexp(MOBILE_PATTERN, message="Please provide a valid mobile number.")],
    )
    contact_email = StringField("Email", validators=[Optional(), Email(), Length(max=255)])
    ward = StringField("Ward", validators=[DataRequired(), Length(max=80)])
    area = StringField("Area", validators=[DataRequired(), Length(max=120)])
    address = StringField("Address", validators=[Optional(), Length(max=500)])
    landmark = StringField("Landmark", validators=[Optional(), Length(max=255)])
    latitude = FloatField("Latitude", validators=[Optional()])
    longitude = FloatField("Longitude", validators=[Optional()])


class AssignForm(ApiForm):
    assignee_id = StringField("Assignee", validators=[DataRequired(), Length(max=36)])
    comment = TextAreaField("Comment", validators=[Optional(), Length(max=1000)])


class StatusForm(ApiForm):
    status = SelectField(
        "Status",
        choices=[(s.value, s.value.replace("_", " ").title()) for s in ComplaintStatus],
        coerce=lambda value: str(value).upper(),
        validators=[DataRequired()],
    )
    comment = TextAreaField("Comment", validators=[Optional(), Length(max=1000)])


class FeedbackForm(ApiForm):
    rating = StringField("Rating", validators=[DataRequired()])
    comment = TextAreaField("Comment", validators=[Optional(), Length(max=1000)])


class RemarkForm(ApiForm):
    text = TextAreaField("Remark", validators=[DataRequired(), Length(max=1000)])


def _complaint_or_404(reference: str) -> Complaint:
    complaint = db.session.get(Complaint, reference) or find_complaint_by_number(reference)
    if complaint is None:
        raise NotFound("Complaint not found.")
    return complaint


def _detail(complaint: Complaint) -> dict:
    return complaint.to_dict(sla_status(complaint))


@complaints_bp.route("", methods=["POST"])
@login_required
def create():
    form, payload = bind_form(ComplaintForm)
    fields = ComplaintFields.from_mapping({**form.data, "attachments": payload.get("attachments")})
    complaint = create_complaint(fields, current_user)
    return api_response({"complaint": _detail(complaint)}, "Complaint submitted successfully", 201)


@complaints_bp.route("", methods=["GET"])
@login_required
def list_complaints():
    query = visible_complaints(current_user)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        try:
            query = query.filter(Complaint.status == ComplaintStatus(status))
        except ValueError as exc:
            raise ValidationFailed("Unknown complaint status.") from exc
    ward = (request.args.get("ward") or "").strip()
    if ward:
        query = query.filter(Complaint.ward == ward)

    page = request.args.get("page", 1, type=int)
    per_page = min(request.args.get("per_page", current_app.config.get("COMPLAINTS_PER_PAGE", 10), type=int), 100)
    pagination = query.order_by(Complaint.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)
    return api_response(
        {
            "complaints": [_detail(c) for c in pagination.items],
            "pagination": {
                "page": pagination.page,
                "per_page": pagination.per_page,
                "total": pagination.total,
                "pages": pagination.pages,
            },
        },
        "Complaints retrieved successfully",
    )


@complaints_bp.route("/<string:reference>", methods=["GET"])
@login_required
def view(reference):
    complaint = _complaint_or_404(reference)
    authorize(current_user, Action.VIEW, complaint)
    return api_response({"complaint": _detail(complaint)}, "Complaint retrieved successfully")


@complaints_bp.route("/<string:reference>/assign", methods=["POST"])
@login_required
def assign_complaint(reference):
    complaint = _complaint_or_404(reference)
    form, _ = bind_form(AssignForm)
    complaint = assign(complaint.id, form.assignee_id.data, current_user, form.comment.data)
    return api_response({"complaint": _detail(complaint)}, "Complaint assigned successfully")


@complaints_bp.route("/<string:reference>/status", methods=["POST"])
@login_required
def update_status(reference):
    complaint = _complaint_or_404(reference)
    form, _ = bind_form(StatusForm)
    complaint = change_status(complaint.id, form.status.data, current_user, form.comment.data)
    return api_response({"complaint": _detail(complaint)}, "Complaint status updated successfully")


@complaints_bp.route("/<string:reference>/feedback", methods=["POST"])
@login_required
def feedback(reference):
    complaint = _complaint_or_404(reference)
    form, _ = bind_form(FeedbackForm)
    complaint = submit_feedback(complaint.id, form.rating.data, form.comment.data, current_user)
    return api_response({"complaint": _detail(complaint)}, "Feedback submitted successfully")


@complaints_bp.route("/<string:reference>/remarks", methods=["POST"])
@login_required
def remarks(reference):
    complaint = _complaint_or_404(reference)
    form, _ = bind_form(RemarkForm)
    entry = add_remark(complaint.id, form.text.data, current_user)
    return api_response({"entry": entry.to_dict()}, "Remark added successfully", 201)
