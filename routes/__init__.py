"""Blueprint registration, the health check and the notification inbox."""
from flask import Blueprint, current_app, request
from flask_login import current_user, login_required
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from utils.api import api_response
from utils.notifications import inbox_query, mark_read, unread_count
from .auth import auth_bp
from .complaints import complaints_bp
from .guest import guest_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/health", methods=["GET"])
def health():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        current_app.logger.exception("Health check database query failed")
        return api_response({"database": "unavailable"}, "Degraded", 503)
    return api_response({"database": "ok"}, "Healthy")


@main_bp.route("/api/notifications", methods=["GET"])
@login_required
def notifications_feed():
    unread_only = request.args.get("unread", "").lower() in ("1", "true", "yes")
    limit = min(request.args.get("limit", 50, type=int), 200)
    items = inbox_query(current_user.id, unread_only=unread_only).limit(limit).all()
    return api_response(
        {
            "notifications": [n.to_dict() for n in items],
            "unread_count": unread_count(current_user.id),
        },
        "Notifications retrieved successfully",
    )


@main_bp.route("/api/notifications/<string:notification_id>/read", methods=["POST"])
@login_required
def notification_read(notification_id):
    notification = mark_read(notification_id, current_user)
    return api_response({"notification": notification.to_dict()}, "Notification marked as read")


__all__ = ["main_bp", "auth_bp", "complaints_bp", "guest_bp"]
