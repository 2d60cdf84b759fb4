"""Account registration, password and code sign-in, password setup, and staff provisioning endpoints."""
from flask import Blueprint
from flask_login import current_user, login_required
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from wtforms import PasswordField, SelectField, StringField
from wtforms.validators import DataRequired, Email, EqualTo, Length, Optional, Regexp, ValidationError

from extensions import db
from models import User, UserRole, utcnow
from utils.access_policy import record_audit
from utils.api import ApiForm, api_response, bind_form
from utils.auth_tokens import issue_access_token
from utils.citizen_access import login_with_code, request_login_code, request_password_setup, set_initial_password
from utils.decorators import roles_required
from utils.errors import Forbidden, Unauthenticated, ValidationFailed
from utils.notifications import unread_count
from utils.security import password_meets_policy

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")

STAFF_ROLE_CHOICES: list[tuple[str, str]] = [
    (UserRole.WARD_OFFICER.value, "Ward Officer"),
    (UserRole.MAINTENANCE.value, "Maintenance Staff"),
    (UserRole.ADMIN.value, "Administrator"),
]


def _email_taken(email: str) -> bool:
    return User.query.filter(func.lower(User.email) == email.lower().strip()).first() is not None


class RegistrationForm(ApiForm):
    full_name = StringField("Full Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    phone = StringField("Phone", validators=[Optional(), Length(max=30)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=12)])
    confirm_password = PasswordField(
        "Confirm Password", validators=[DataRequired(), EqualTo("password", message="Passwords must match.")]
    )

    def validate_email(self, field):
        if _email_taken(field.data):
            raise ValidationError("An account with this email already exists.")


class StaffForm(RegistrationForm):
    role = SelectField("Role", choices=STAFF_ROLE_CHOICES, validators=[DataRequired()])
    ward = StringField("Ward", validators=[Optional(), Length(max=80)])
    department = StringField("Department", validators=[Optional(), Length(max=120)])

    def validate(self, extra_validators=None):
        # Optional() on ward short-circuits inline validators, so the role check lives here.
        if not super().validate(extra_validators):
            return False
        if self.role.data == UserRole.WARD_OFFICER.value and not (self.ward.data or "").strip():
            self.ward.errors.append("Ward officers must be assigned to a ward.")
            return False
        return True


class LoginForm(ApiForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])


class EmailOnlyForm(ApiForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])


class CodeLoginForm(ApiForm):
    session_id = StringField("Session", validators=[DataRequired(), Length(max=64)])
    otp = StringField("OTP", validators=[DataRequired(), Regexp(r"^\d{4,10}$", message="OTP must be numeric.")])


class SetPasswordForm(CodeLoginForm):
    password = PasswordField("Password", validators=[DataRequired(), Length(min=12)])
    confirm_password = PasswordField(
        "Confirm Password", validators=[DataRequired(), EqualTo("password", message="Passwords must match.")]
    )


def _check_password_policy(password: str) -> None:
    password_ok, reason = password_meets_policy(password)
    if not password_ok:
        raise ValidationFailed(reason, details={"fields": {"password": [reason]}})


def _create_account(form: RegistrationForm, role: UserRole, **extra) -> User:
    user = User(
        full_name=form.full_name.data.strip(),
        email=form.email.data.lower().strip(),
        phone=(form.phone.data or "").strip() or None,
        role=role,
        is_email_verified=False,
        is_active=True,
        **extra,
    )
    user.set_password(form.password.data)
    db.session.add(user)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ValidationFailed("Unable to register with the provided details.") from exc
    return user


@auth_bp.route("/register", methods=["POST"])
def register():
    form, _ = bind_form(RegistrationForm)
    _check_password_policy(form.password.data)
    user = _create_account(form, UserRole.CITIZEN)
    record_audit("REGISTER", user)
    db.session.commit()
    token = issue_access_token(user)
    return api_response({"user": user.to_dict(), "auth": token.to_dict()}, "Registration successful", 201)


@auth_bp.route("/login", methods=["POST"])
def login():
    form, _ = bind_form(LoginForm)
    user = User.query.filter(func.lower(User.email) == form.email.data.lower().strip()).first()
    if user and not user.password_set:
        raise ValidationFailed(
            "Password not set. Please use OTP login or set your password.",
            details={"requires_password_setup": True},
        )
    if not user or not user.check_password(form.password.data):
        record_audit("LOGIN_FAILED", user)
        db.session.commit()
        raise Unauthenticated("Invalid credentials provided.")

    if not user.is_active:
        raise Forbidden("Your account is inactive. Please contact support.")

    user.last_login_at = utcnow()
    record_audit("LOGIN", user)
    db.session.commit()
    token = issue_access_token(user)
    return api_response({"user": user.to_dict(), "auth": token.to_dict()}, "Login successful")


@auth_bp.route("/login-otp", methods=["POST"])
def login_otp():
    form, _ = bind_form(EmailOnlyForm)
    issued = request_login_code(form.email.data)
    return api_response(issued.to_dict(), "OTP sent to your email")


@auth_bp.route("/verify-otp", methods=["POST"])
def verify_login_otp():
    form, _ = bind_form(CodeLoginForm)
    user, token = login_with_code(form.session_id.data, form.otp.data)
    return api_response({"user": user.to_dict(), "auth": token.to_dict()}, "OTP verified successfully")


@auth_bp.route("/send-password-setup", methods=["POST"])
def send_password_setup():
    form, _ = bind_form(EmailOnlyForm)
    issued = request_password_setup(form.email.data)
    return api_response(issued.to_dict(), "Password setup code sent to your email")


@auth_bp.route("/set-password", methods=["POST"])
def set_password():
    form, _ = bind_form(SetPasswordForm)
    user, token = set_initial_password(form.session_id.data, form.otp.data, form.password.data)
    return api_response({"user": user.to_dict(), "auth": token.to_dict()}, "Password set successfully")


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    payload = current_user.to_dict()
    payload["unread_notifications"] = unread_count(current_user.id)
    return api_response({"user": payload}, "Profile retrieved successfully")


@auth_bp.route("/staff", methods=["POST"])
@roles_required(UserRole.ADMIN)
def create_staff():
    form, _ = bind_form(StaffForm)
    _check_password_policy(form.password.data)
    role = UserRole(form.role.data)
    user = _create_account(
        form,
        role,
        ward=(form.ward.data or "").strip() or None,
        department=(form.department.data or "").strip() or None,
    )
    user.is_email_verified = True
    record_audit("STAFF_CREATED", current_user, context=f"user:{user.id}:{role.value}")
    db.session.commit()
    return api_response({"user": user.to_dict()}, "Staff account created", 201)


@auth_bp.route("/staff", methods=["GET"])
@roles_required(UserRole.ADMIN, UserRole.WARD_OFFICER)
def list_staff():
    query = User.query.filter(
        User.role.in_([UserRole.WARD_OFFICER, UserRole.MAINTENANCE, UserRole.ADMIN]),
        User.is_active.is_(True),
    )
    ward = current_user.ward if current_user.role == UserRole.WARD_OFFICER else None
    if ward:
        query = query.filter((User.ward == ward) | (User.role != UserRole.WARD_OFFICER))
    staff = query.order_by(User.full_name).all()
    return api_response({"staff": [member.to_dict() for member in staff]}, "Staff retrieved successfully")
