"""Authorization decorators for role-based access control."""
from functools import wraps

from flask import current_app
from flask_login import current_user, login_required

from extensions import db
from models import UserRole
from utils.access_policy import record_audit
from utils.errors import Forbidden


def roles_required(*roles):
    allowed = {r if isinstance(r, UserRole) else UserRole(str(r).upper()) for r in roles}

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            if current_user.role in allowed:
                return view_func(*args, **kwargs)

            current_app.logger.warning(
                "Unauthorized role access attempt",
                extra={"user_id": current_user.id, "role": current_user.role.value},
            )
            record_audit("UNAUTHORIZED_ACCESS", current_user, context=view_func.__name__)
            db.session.commit()
            raise Forbidden()

        return wrapped

    return decorator
