from collections import OrderedDict
from typing import Dict, List

from flask import jsonify
from flask_jwt_extended import jwt_required

from .auth import get_user_role, require_admin_user, serialize_user
from .helpers import months_ago, normalize_object_id_value, utcnow
from .orders import serialize_order
from .products import round_money

STATS_MONTHS = 6
RECENT_ORDERS_LIMIT = 10


def build_monthly_totals(db, now) -> List[Dict]:
    since = months_ago(now, STATS_MONTHS)
    buckets: "OrderedDict[str, Dict]" = OrderedDict()
    cursor = db.orders.find(
        {"created_at": {"$gte": since}}, {"created_at": 1, "total_price": 1}
    ).sort("created_at", 1)
    for order in cursor:
        month = order["created_at"].strftime("%Y-%m")
        bucket = buckets.setdefault(month, {"month": month, "revenue": 0.0, "orders_count": 0})
        bucket["revenue"] += float(order.get("total_price") or 0)
        bucket["orders_count"] += 1

    for bucket in buckets.values():
        bucket["revenue"] = round_money(bucket["revenue"])
    return list(buckets.values())


def register_admin_routes(app, db):
    def load_target_user(user_id: str):
        object_id = normalize_object_id_value(user_id)
        user = db.users.find_one({"_id": object_id}) if object_id is not None else None
        if not user:
            return None, (jsonify({"message": "Not found"}), 404)
        return user, None

    @app.route("/admin/dashboard", methods=["GET"])
    @jwt_required()
    def admin_dashboard():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        return jsonify({"message": "Welcome, Admin!", "user": serialize_user(admin_user)})

    @app.route("/admin/stats", methods=["GET"])
    @jwt_required()
    def admin_stats():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        recent_orders = db.orders.find({}).sort([("created_at", -1), ("_id", -1)]).limit(RECENT_ORDERS_LIMIT)
        status_distribution = [
            {"status": entry["_id"], "count": entry["count"]}
            for entry in db.orders.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
        ]
        status_distribution.sort(key=lambda entry: str(entry["status"]))

        return jsonify(
            {
                "total_users": db.users.count_documents({}),
                "total_products": db.products.count_documents({}),
                "total_orders": db.orders.count_documents({}),
                "total_carts": db.carts.count_documents({}),
                "recent_orders": [serialize_order(db, order, include_user=True) for order in recent_orders],
                "status_distribution": status_distribution,
                "monthly": build_monthly_totals(db, utcnow()),
            }
        )

    @app.route("/admin/users", methods=["GET"])
    @jwt_required()
    def admin_list_users():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        users = db.users.find({}).sort([("created_at", -1), ("_id", -1)])
        return jsonify([serialize_user(user) for user in users])

    @app.route("/admin/users/<user_id>/block", methods=["PATCH"])
    @jwt_required()
    def admin_block_user(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target, load_error = load_target_user(user_id)
        if load_error:
            return load_error
        if get_user_role(target) == "admin":
            return jsonify({"message": "Cannot block admin users"}), 403

        updates = {"status": "banned", "updated_at": utcnow()}
        if target.get("status") != "banned":
            updates["previous_status"] = target.get("status") or "active"
        db.users.update_one({"_id": target["_id"]}, {"$set": updates})

        app.logger.info(
            "Admin %s banned user %s (prev: %s)",
            admin_user["_id"],
            target["_id"],
            updates.get("previous_status", target.get("previous_status")),
        )
        return jsonify(serialize_user(db.users.find_one({"_id": target["_id"]})))

    @app.route("/admin/users/<user_id>/unblock", methods=["PATCH"])
    @jwt_required()
    def admin_unblock_user(user_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target, load_error = load_target_user(user_id)
        if load_error:
            return load_error

        restored = target.get("previous_status") or "active"
        db.users.update_one(
            {"_id": target["_id"]},
            {"$set": {"status": restored, "updated_at": utcnow()}, "$unset": {"previous_status": ""}},
        )

        app.logger.info("Admin %s unbanned user %s (restored: %s)", admin_user["_id"], target["_id"], restored)
        return jsonify(serialize_user(db.users.find_one({"_id": target["_id"]})))

    @app.route("/admin/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_user(user_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        target, load_error = load_target_user(user_id)
        if load_error:
            return load_error
        if get_user_role(target) == "admin":
            return jsonify({"message": "Cannot delete admin users"}), 403

        db.users.delete_one({"_id": target["_id"]})
        return jsonify({"success": True})
