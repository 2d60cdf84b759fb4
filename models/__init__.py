"""Core data models for accounts, one-time-code sessions, complaints, and their audit trail."""
import enum
import uuid
from datetime import datetime, timedelta, timezone

from flask_login import UserMixin
from sqlalchemy import event
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db


def generate_uuid() -> str:
	return str(uuid.uuid4())


def utcnow() -> datetime:
	"""Naive UTC timestamp; SQLite drops tzinfo so every stored datetime is naive UTC."""
	return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(str, enum.Enum):
	CITIZEN = "CITIZEN"
	WARD_OFFICER = "WARD_OFFICER"
	MAINTENANCE = "MAINTENANCE"
	ADMIN = "ADMIN"


class ComplaintStatus(str, enum.Enum):
	REGISTERED = "REGISTERED"
	ASSIGNED = "ASSIGNED"
	IN_PROGRESS = "IN_PROGRESS"
	RESOLVED = "RESOLVED"
	CLOSED = "CLOSED"
	REOPENED = "REOPENED"


class ComplaintPriority(str, enum.Enum):
	LOW = "LOW"
	MEDIUM = "MEDIUM"
	HIGH = "HIGH"
	CRITICAL = "CRITICAL"


class ComplaintType(str, enum.Enum):
	WATER_SUPPLY = "WATER_SUPPLY"
	ELECTRICITY = "ELECTRICITY"
	ROAD_REPAIR = "ROAD_REPAIR"
	GARBAGE_COLLECTION = "GARBAGE_COLLECTION"
	STREET_LIGHTING = "STREET_LIGHTING"
	SEWERAGE = "SEWERAGE"
	PUBLIC_HEALTH = "PUBLIC_HEALTH"
	TRAFFIC = "TRAFFIC"
	OTHERS = "OTHERS"

	@property
	def label(self) -> str:
		return self.value.replace("_", " ").title()


class VerificationPurpose(str, enum.Enum):
	COMPLAINT_SUBMISSION = "COMPLAINT_SUBMISSION"
	COMPLAINT_TRACKING = "COMPLAINT_TRACKING"
	LOGIN = "LOGIN"
	PASSWORD_SETUP = "PASSWORD_SETUP"


class StatusLogType(str, enum.Enum):
	REGISTRATION = "REGISTRATION"
	ASSIGNMENT = "ASSIGNMENT"
	STATUS_UPDATE = "STATUS_UPDATE"
	REMARK = "REMARK"


class NotificationType(str, enum.Enum):
	COMPLAINT_REGISTERED = "complaint_registered"
	COMPLAINT_ASSIGNED = "complaint_assigned"
	COMPLAINT_STATUS_UPDATED = "complaint_status_updated"
	COMPLAINT_RESOLVED = "complaint_resolved"
	COMPLAINT_CLOSED = "complaint_closed"
	COMPLAINT_REOPENED = "complaint_reopened"
	SLA_WARNING = "sla_warning"
	SLA_BREACH = "sla_breach"
	FEEDBACK_RECEIVED = "feedback_received"


def _enum_column(enum_cls, name: str, **kwargs):
	return db.Column(
		db.Enum(
			enum_cls,
			name=name,
			native_enum=False,
			create_constraint=True,
			validate_strings=True,
			length=32,
		),
		**kwargs,
	)


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	full_name = db.Column(db.String(150), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	phone = db.Column(db.String(30), nullable=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role = _enum_column(UserRole, "ck_user_role", nullable=False, default=UserRole.CITIZEN, index=True)
	ward = db.Column(db.String(80), nullable=True, index=True)
	department = db.Column(db.String(120), nullable=True)
	is_email_verified = db.Column(db.Boolean, default=False, nullable=False)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	provisioned_via = db.Column(db.String(30), nullable=True)
	password_set = db.Column(db.Boolean, default=True, nullable=False)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	audit_logs = db.relationship("AuditLog", back_populates="user", lazy="dynamic")
	notifications = db.relationship("Notification", back_populates="recipient", lazy="dynamic")

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def is_admin(self) -> bool:
		return self.role == UserRole.ADMIN

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"full_name": self.full_name,
			"email": self.email,
			"phone": self.phone,
			"role": self.role.value,
			"ward": self.ward,
			"department": self.department,
			"is_email_verified": self.is_email_verified,
			"password_set": self.password_set,
		}


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	action_type = db.Column(db.String(50), nullable=False)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context_entity = db.Column(db.String(120), nullable=True)
	timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

	user = db.relationship("User", back_populates="audit_logs")


class VerificationSession(db.Model):
	__tablename__ = "verification_sessions"

	id = db.Column(db.String(64), primary_key=True)
	subject_email = db.Column(db.String(255), nullable=False, index=True)
	purpose = _enum_column(VerificationPurpose, "ck_verification_purpose", nullable=False)
	code_hash = db.Column(db.String(255), nullable=False)
	created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
	expires_at = db.Column(db.DateTime, nullable=False, index=True)
	attempt_count = db.Column(db.Integer, nullable=False, default=0)
	verified = db.Column(db.Boolean, nullable=False, default=False)
	token_hash = db.Column(db.String(128), nullable=True, unique=True, index=True)
	verified_at = db.Column(db.DateTime, nullable=True)
	token_expires_at = db.Column(db.DateTime, nullable=True)
	ip_address = db.Column(db.String(64), nullable=True)

	__table_args__ = (
		db.CheckConstraint("attempt_count >= 0", name="ck_verification_attempts_non_negative"),
		db.CheckConstraint("expires_at > created_at", name="ck_verification_expiry_after_creation"),
	)

	@staticmethod
	def build(session_id: str, email: str, purpose: VerificationPurpose, code: str, ttl_minutes: int, ip_address: str | None = None):
		created_at = utcnow()
		return VerificationSession(
			id=session_id,
			subject_email=email,
			purpose=purpose,
			code_hash=generate_password_hash(code, method="pbkdf2:sha256", salt_length=12),
			created_at=created_at,
			expires_at=created_at + timedelta(minutes=ttl_minutes),
			attempt_count=0,
			verified=False,
			ip_address=ip_address,
		)

	def is_expired(self, now: datetime | None = None) -> bool:
		return (now or utcnow()) > self.expires_at

	def code_matches(self, candidate: str) -> bool:
		return check_password_hash(self.code_hash, candidate or "")

	def token_is_live(self, now: datetime | None = None) -> bool:
		if not self.verified or not self.token_hash:
			return False
		if self.token_expires_at is None:
			return True
		return (now or utcnow()) <= self.token_expires_at


class VerificationIssuance(db.Model):
	"""Ledger row per issued code; outlives its session for rate limiting and outcome reporting."""

	__tablename__ = "verification_issuances"

	session_id = db.Column(db.String(64), primary_key=True)
	subject_email = db.Column(db.String(255), nullable=False, index=True)
	purpose = _enum_column(VerificationPurpose, "ck_issuance_purpose", nullable=False)
	created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
	expires_at = db.Column(db.DateTime, nullable=False, index=True)
	closed_reason = db.Column(db.String(30), nullable=True)


class ComplaintSequence(db.Model):
	__tablename__ = "complaint_sequences"

	year = db.Column(db.Integer, primary_key=True, autoincrement=False)
	last_value = db.Column(db.Integer, nullable=False, default=0)


class Complaint(db.Model):
	__tablename__ = "complaints"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	complaint_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
	complaint_type = _enum_column(ComplaintType, "ck_complaint_type", nullable=False, index=True)
	description = db.Column(db.Text, nullable=False)
	priority = _enum_column(ComplaintPriority, "ck_complaint_priority", nullable=False, default=ComplaintPriority.MEDIUM, index=True)
	status = _enum_column(ComplaintStatus, "ck_complaint_status", nullable=False, default=ComplaintStatus.REGISTERED, index=True)
	ward = db.Column(db.String(80), nullable=False, index=True)
	area = db.Column(db.String(120), nullable=False)
	address = db.Column(db.String(500), nullable=True)
	landmark = db.Column(db.String(255), nullable=True)
	latitude = db.Column(db.Float, nullable=True)
	longitude = db.Column(db.Float, nullable=True)
	contact_mobile = db.Column(db.String(30), nullable=True)
	contact_email = db.Column(db.String(255), nullable=True, index=True)
	submitted_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	assigned_to_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	assigned_at = db.Column(db.DateTime, nullable=True)
	sla_deadline = db.Column(db.DateTime, nullable=False, index=True)
	resolved_at = db.Column(db.DateTime, nullable=True)
	closed_at = db.Column(db.DateTime, nullable=True)
	feedback_rating = db.Column(db.Integer, nullable=True)
	feedback_comment = db.Column(db.String(1000), nullable=True)
	feedback_submitted_at = db.Column(db.DateTime, nullable=True)
	sla_warning_notified_at = db.Column(db.DateTime, nullable=True)
	sla_breach_notified_at = db.Column(db.DateTime, nullable=True)
	version = db.Column(db.Integer, nullable=False, default=1)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

	__mapper_args__ = {"version_id_col": version}

	__table_args__ = (
		db.CheckConstraint(
			"feedback_rating IS NULL OR (feedback_rating >= 1 AND feedback_rating <= 5)",
			name="ck_complaint_feedback_rating",
		),
		db.Index("ix_complaints_ward_status", "ward", "status"),
		db.Index("ix_complaints_status_assignee", "status", "assigned_to_id"),
	)

	submitted_by = db.relationship("User", foreign_keys=[submitted_by_id])
	assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
	status_log = db.relationship(
		"StatusLogEntry",
		back_populates="complaint",
		order_by="StatusLogEntry.id",
		cascade="all, delete-orphan",
	)
	attachments = db.relationship(
		"ComplaintAttachment",
		back_populates="complaint",
		order_by="ComplaintAttachment.uploaded_at",
		cascade="all, delete-orphan",
	)

	@property
	def is_guest_origin(self) -> bool:
		return self.submitted_by_id is None

	@property
	def feedback(self) -> dict | None:
		if self.feedback_rating is None:
			return None
		return {
			"rating": self.feedback_rating,
			"comment": self.feedback_comment,
			"submitted_at": self.feedback_submitted_at,
		}

	def public_payload(self) -> dict:
		return {
			"id": self.id,
			"complaint_number": self.complaint_number,
			"type": self.complaint_type.value,
			"status": self.status.value,
			"priority": self.priority.value,
			"ward": self.ward,
			"area": self.area,
			"created_at": self.created_at,
		}

	def to_dict(self, sla_status: str | None = None) -> dict:
		payload = self.public_payload()
		payload.update(
			{
				"description": self.description,
				"address": self.address,
				"landmark": self.landmark,
				"coordinates": {"latitude": self.latitude, "longitude": self.longitude},
				"contact": {"mobile": self.contact_mobile, "email": self.contact_email},
				"submitted_by_id": self.submitted_by_id,
				"assigned_to_id": self.assigned_to_id,
				"assigned_at": self.assigned_at,
				"sla_deadline": self.sla_deadline,
				"sla_status": sla_status,
				"resolved_at": self.resolved_at,
				"closed_at": self.closed_at,
				"feedback": self.feedback,
				"status_log": [entry.to_dict() for entry in self.status_log],
				"attachments": [a.to_dict() for a in self.attachments],
			}
		)
		return payload


class StatusLogEntry(db.Model):
	__tablename__ = "complaint_status_log"

	id = db.Column(db.Integer, primary_key=True)
	complaint_id = db.Column(db.String(36), db.ForeignKey("complaints.id"), nullable=False, index=True)
	entry_type = _enum_column(StatusLogType, "ck_status_log_type", nullable=False, index=True)
	previous_status = _enum_column(ComplaintStatus, "ck_status_log_previous", nullable=True)
	new_status = _enum_column(ComplaintStatus, "ck_status_log_new", nullable=False, index=True)
	actor_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	comment = db.Column(db.String(1000), nullable=True)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

	complaint = db.relationship("Complaint", back_populates="status_log")
	actor = db.relationship("User")

	def to_dict(self) -> dict:
		return {
			"type": self.entry_type.value,
			"previous_status": self.previous_status.value if self.previous_status else None,
			"new_status": self.new_status.value,
			"actor_id": self.actor_id,
			"comment": self.comment,
			"created_at": self.created_at,
		}


@event.listens_for(StatusLogEntry, "before_update")
def _reject_status_log_update(mapper, connection, target):
	raise ValueError("Status log entries are append-only")


class ComplaintAttachment(db.Model):
	__tablename__ = "complaint_attachments"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	complaint_id = db.Column(db.String(36), db.ForeignKey("complaints.id"), nullable=False, index=True)
	filename = db.Column(db.String(255), nullable=False)
	original_name = db.Column(db.String(255), nullable=False)
	mimetype = db.Column(db.String(100), nullable=False)
	size_bytes = db.Column(db.Integer, nullable=False)
	url = db.Column(db.String(1024), nullable=False)
	uploaded_at = db.Column(db.DateTime, default=utcnow, nullable=False)

	complaint = db.relationship("Complaint", back_populates="attachments")

	def to_dict(self) -> dict:
		return {
			"filename": self.filename,
			"original_name": self.original_name,
			"mimetype": self.mimetype,
			"size_bytes": self.size_bytes,
			"url": self.url,
		}


class Notification(db.Model):
	__tablename__ = "notifications"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	recipient_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	notification_type = _enum_column(NotificationType, "ck_notification_type", nullable=False, index=True)
	title = db.Column(db.String(200), nullable=False)
	message = db.Column(db.String(1000), nullable=False)
	data = db.Column(db.JSON, nullable=True)
	is_read = db.Column(db.Boolean, nullable=False, default=False)
	read_at = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
	expires_at = db.Column(db.DateTime, nullable=False, index=True)

	__table_args__ = (
		db.Index("ix_notifications_recipient_read", "recipient_id", "is_read"),
	)

	recipient = db.relationship("User", back_populates="notifications")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"type": self.notification_type.value,
			"title": self.title,
			"message": self.message,
			"data": self.data or {},
			"is_read": self.is_read,
			"created_at": self.created_at,
		}
