import logging
from datetime import timedelta
from typing import Dict, Optional

from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required

from .auth import require_user
from .helpers import normalize_object_id_value, safe_int, serialize_document, utcnow
from .push import send_push_to_user
from .tasks import dispatch_background

logger = logging.getLogger(__name__)

NOTIFICATION_DEBOUNCE = timedelta(seconds=5)
DEFAULT_NOTIFICATION_LIMIT = 100
MAX_NOTIFICATION_LIMIT = 500


class NotificationError(ValueError):
    pass


def serialize_notification(document) -> Dict:
    return serialize_document(document)


def build_push_payload(notification: Dict) -> Dict:
    data = dict(notification.get("data") or {})
    data.setdefault("url", "/")
    return {
        "title": notification.get("title", ""),
        "body": notification.get("body") or "",
        "data": data,
        "icon": "/icons/192.png",
        "badge": "/icons/badge-72.png",
    }


def create_and_emit_notification(
    db,
    user_id,
    notification_type: str,
    title: str,
    body: str = "",
    data: Optional[Dict] = None,
) -> Dict:
    """Store a notification (reusing a duplicate from the last few seconds), emit it and push it."""
    object_id = normalize_object_id_value(user_id)
    if object_id is None or not notification_type or not title:
        raise NotificationError("user, type and title are required")

    data = dict(data or {})
    now = utcnow()
    query: Dict[str, object] = {
        "user": object_id,
        "type": notification_type,
        "title": title,
        "created_at": {"$gte": now - NOTIFICATION_DEBOUNCE},
    }
    if data.get("order_id"):
        data["order_id"] = str(data["order_id"])
        query["data.order_id"] = data["order_id"]

    note = db.notifications.find_one(query, sort=[("created_at", -1)])
    if not note:
        note = {
            "user": object_id,
            "type": notification_type,
            "title": title,
            "body": body or "",
            "data": data,
            "read": False,
            "created_at": now,
            "updated_at": now,
        }
        result = db.notifications.insert_one(note)
        note["_id"] = result.inserted_id

    serialized = serialize_notification(note)

    hub = current_app.extensions.get("realtime")
    if hub is not None:
        hub.emit_to_user(str(object_id), "notification", serialized)

    dispatch_background(send_push_to_user, db, object_id, build_push_payload(serialized))
    return serialized


def notify_user(db, user_id, notification_type: str, title: str, body: str = "", data=None):
    """Best-effort wrapper for request handlers; failures are logged."""
    try:
        return create_and_emit_notification(db, user_id, notification_type, title, body, data)
    except Exception as exc:
        logger.warning("Failed to create '%s' notification for %s: %s", notification_type, user_id, exc)
        return None


def notify_admins(db, notification_type: str, title: str, body: str = "", data=None):
    for admin in db.users.find({"role": "admin", "status": {"$ne": "deleted"}}, {"_id": 1}):
        notify_user(db, admin["_id"], notification_type, title, body, data)


def register_notification_routes(app, db):
    @app.route("/notifications", methods=["GET"])
    @jwt_required()
    def list_notifications():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        unread_only = str(request.args.get("unread", "")).strip().lower() == "true"
        limit = safe_int(request.args.get("limit"), DEFAULT_NOTIFICATION_LIMIT)
        if limit <= 0:
            limit = DEFAULT_NOTIFICATION_LIMIT
        limit = min(limit, MAX_NOTIFICATION_LIMIT)

        query: Dict[str, object] = {"user": current_user["_id"]}
        if unread_only:
            query["read"] = False

        cursor = db.notifications.find(query).sort("created_at", -1).limit(limit)
        return jsonify({"notifications": [serialize_notification(note) for note in cursor]})

    @app.route("/notifications/<notification_id>/read", methods=["POST"])
    @jwt_required()
    def mark_notification_read(notification_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        if notification_id == "all":
            db.notifications.update_many(
                {"user": current_user["_id"], "read": False},
                {"$set": {"read": True, "updated_at": utcnow()}},
            )
            return jsonify({"success": True})

        object_id = normalize_object_id_value(notification_id)
        if object_id is None:
            return jsonify({"message": "Notification not found."}), 404

        result = db.notifications.update_one(
            {"_id": object_id, "user": current_user["_id"]},
            {"$set": {"read": True, "updated_at": utcnow()}},
        )
        if not result.matched_count:
            return jsonify({"message": "Notification not found."}), 404

        note = db.notifications.find_one({"_id": object_id})
        return jsonify({"success": True, "notification": serialize_notification(note)})
