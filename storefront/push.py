import json
import logging
from typing import Dict, List, Optional

from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required
from pywebpush import WebPushException, webpush

from .auth import require_user
from .helpers import normalize_object_id_value, utcnow

logger = logging.getLogger(__name__)

STALE_SUBSCRIPTION_STATUSES = {404, 410}


def push_enabled() -> bool:
    config = current_app.config
    return bool(config.get("VAPID_PUBLIC_KEY") and config.get("VAPID_PRIVATE_KEY"))


def send_push_to_user(db, user_id, payload: Dict) -> Optional[List[Dict]]:
    """Deliver ``payload`` to every stored subscription of the user."""
    if not push_enabled():
        return None

    object_id = normalize_object_id_value(user_id)
    if object_id is None:
        return None

    subscriptions = list(db.push_subscriptions.find({"user": object_id}))
    if not subscriptions:
        return None

    config = current_app.config
    results: List[Dict] = []
    for document in subscriptions:
        subscription = document.get("subscription") or {}
        endpoint = subscription.get("endpoint")
        try:
            webpush(
                subscription_info=subscription,
                data=json.dumps(payload),
                vapid_private_key=config["VAPID_PRIVATE_KEY"],
                vapid_claims={"sub": config["VAPID_SUBJECT"]},
            )
            results.append({"endpoint": endpoint, "ok": True})
        except WebPushException as exc:
            status_code = getattr(exc.response, "status_code", None)
            logger.warning("web-push send error for endpoint %s: %s", endpoint, status_code)
            if status_code in STALE_SUBSCRIPTION_STATUSES:
                db.push_subscriptions.delete_one({"_id": document["_id"]})
                results.append({"endpoint": endpoint, "ok": False, "removed": True})
            else:
                results.append({"endpoint": endpoint, "ok": False, "error": str(exc)})
    return results


def register_push_routes(app, db):
    @app.route("/push/subscribe", methods=["POST"])
    @jwt_required()
    def subscribe_push():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        subscription = payload.get("subscription")
        if not isinstance(subscription, dict) or not subscription.get("endpoint"):
            return jsonify({"message": "Missing subscription"}), 400

        now = utcnow()
        existing = db.push_subscriptions.find_one(
            {"user": current_user["_id"], "subscription.endpoint": subscription["endpoint"]}
        )
        if existing:
            db.push_subscriptions.update_one(
                {"_id": existing["_id"]},
                {"$set": {"subscription": subscription, "updated_at": now}},
            )
            return jsonify({"success": True, "message": "Subscription updated"})

        db.push_subscriptions.insert_one(
            {
                "user": current_user["_id"],
                "subscription": subscription,
                "created_at": now,
                "updated_at": now,
            }
        )
        return jsonify({"success": True})

    @app.route("/push/unsubscribe", methods=["POST"])
    @jwt_required()
    def unsubscribe_push():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        endpoint = str(payload.get("endpoint", "") or "").strip()
        if not endpoint:
            return jsonify({"message": "Missing endpoint"}), 400

        db.push_subscriptions.delete_many(
            {"user": current_user["_id"], "subscription.endpoint": endpoint}
        )
        return jsonify({"success": True})

    @app.route("/push/public-key", methods=["GET"])
    def push_public_key():
        return jsonify({"public_key": app.config.get("VAPID_PUBLIC_KEY") or None})
