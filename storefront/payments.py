import time

from flask import jsonify, request
from flask_jwt_extended import jwt_required

from .auth import get_user_role, require_user
from .helpers import normalize_object_id_value, utcnow
from .notifications import notify_user
from .orders import cancel_order, serialize_order


def register_payment_routes(app, db):
    @app.route("/payments/fake", methods=["POST"])
    @jwt_required()
    def fake_payment():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        order_id = normalize_object_id_value(payload.get("order_id", payload.get("orderId")))
        if order_id is None:
            return jsonify({"message": "Invalid orderId"}), 400

        order_document = db.orders.find_one({"_id": order_id})
        if not order_document:
            return jsonify({"message": "Order not found"}), 404

        is_owner = order_document.get("user") == current_user["_id"]
        if not is_owner and get_user_role(current_user) != "admin":
            return jsonify({"message": "Forbidden"}), 403

        if order_document.get("payed"):
            return jsonify({"message": "Already payed", "order": serialize_order(db, order_document)}), 200

        card = payload.get("card") if isinstance(payload.get("card"), dict) else {}
        last4 = str(card.get("last4") or "").strip() or None
        simulate = str(payload.get("simulate", "") or "").strip().lower()

        if simulate == "success":
            if order_document.get("status") == "cancelled":
                return jsonify({"message": "Order is cancelled", "order": serialize_order(db, order_document)}), 409
            result = db.orders.update_one(
                {"_id": order_id, "status": {"$ne": "cancelled"}},
                {
                    "$set": {
                        "payed": True,
                        "meta.payment": {
                            "provider": "fake",
                            "transaction_id": f"FAKE-{int(time.time() * 1000)}",
                            "last4": last4,
                            "paid_at": utcnow(),
                            "paid_by": current_user["_id"],
                        },
                        "updated_at": utcnow(),
                    }
                },
            )
            if not result.matched_count:
                return jsonify({"message": "Order is cancelled"}), 409
            notify_user(
                db,
                order_document["user"],
                "order",
                "Payment received",
                f"Payment for order {order_id} received.",
                {"order_id": str(order_id), "payed": True},
            )
            refreshed = db.orders.find_one({"_id": order_id})
            return jsonify({"ok": True, "order": serialize_order(db, refreshed)})

        failure_updates = {
            "payed": False,
            "meta.payment": {
                "provider": "fake",
                "transaction_id": None,
                "last4": last4,
                "failed_at": utcnow(),
                "reason": "simulated_failure",
                "paid_by": current_user["_id"],
            },
        }
        if not cancel_order(db, order_document, failure_updates):
            db.orders.update_one(
                {"_id": order_id},
                {"$set": {**failure_updates, "updated_at": utcnow()}},
            )

        notify_user(
            db,
            order_document["user"],
            "order",
            "Payment failed - order cancelled",
            f"Payment for order {order_id} failed. Order cancelled and items restocked.",
            {"order_id": str(order_id), "status": "cancelled"},
        )
        refreshed = db.orders.find_one({"_id": order_id})
        return (
            jsonify({"ok": False, "message": "Simulated payment failure", "order": serialize_order(db, refreshed)}),
            400,
        )
