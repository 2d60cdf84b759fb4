import os

import pytest
from flask import g

os.environ["FLASK_CONFIG"] = "testing"

from app import create_app  # noqa: E402
from extensions import db, register_collaborator  # noqa: E402
from models import User, UserRole  # noqa: E402
from utils.auth_tokens import issue_access_token  # noqa: E402
from utils.email_service import CodeSender, EmailDeliveryError  # noqa: E402


class CapturingCodeSender(CodeSender):
    def __init__(self):
        self.sent = []

    def send_code(self, email, code, purpose):
        self.sent.append({"email": email, "code": code, "purpose": purpose})

    @property
    def last_code(self):
        return self.sent[-1]["code"]


class FailingCodeSender(CodeSender):
    def send_code(self, email, code, purpose):
        raise EmailDeliveryError("SMTP relay unavailable")


@pytest.fixture
def app():
    app = create_app("testing")

    # Requests reuse the fixture's app context, so g (and Flask-Login's cached user) outlives a request.
    @app.teardown_request
    def _forget_user(exc):
        g.pop("_login_user", None)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sender(app):
    capturing = CapturingCodeSender()
    register_collaborator(app, "code_sender", capturing)
    return capturing


def _make_user(email, role, ward=None, full_name="Test User", is_active=True):
    user = User(full_name=full_name, email=email, role=role, ward=ward, is_email_verified=True, is_active=is_active)
    user.set_password("Str0ng!Password")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def make_user(app):
    return _make_user


@pytest.fixture
def citizen(app):
    return _make_user("citizen@test.com", UserRole.CITIZEN, full_name="Asha Citizen")


@pytest.fixture
def officer(app):
    return _make_user("officer@test.com", UserRole.WARD_OFFICER, ward="W1", full_name="Ward Officer")


@pytest.fixture
def other_officer(app):
    return _make_user("officer2@test.com", UserRole.WARD_OFFICER, ward="W2", full_name="Other Officer")


@pytest.fixture
def maintenance(app):
    return _make_user("crew@test.com", UserRole.MAINTENANCE, full_name="Maintenance Crew")


@pytest.fixture
def admin(app):
    return _make_user("admin@test.com", UserRole.ADMIN, full_name="Admin")


@pytest.fixture
def auth_header(app):
    def build(user):
        return {"Authorization": f"Bearer {issue_access_token(user).token}"}

    return build


@pytest.fixture
def complaint_data():
    def build(**overrides):
        data = {
            "complaint_type": "WATER_SUPPLY",
            "description": "No water supply in the lane since morning.",
            "ward": "W1",
            "area": "Market Road",
            "priority": "MEDIUM",
            "contact_email": "guest@test.com",
            "contact_mobile": "+91 98765 43210",
        }
        data.update(overrides)
        return data

    return build


@pytest.fixture
def verified_token(app, sender):
    from utils.otp_gateway import issue_code, verify_code

    def build(email="guest@test.com", purpose="COMPLAINT_SUBMISSION"):
        issued = issue_code(email, purpose)
        return verify_code(issued.session_id, sender.last_code)

    return build
