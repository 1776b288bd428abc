from flask import jsonify
from flask_jwt_extended import jwt_required

from .auth import require_user
from .helpers import normalize_object_id_list, normalize_object_id_value, utcnow
from .products import serialize_product


def register_wishlist_routes(app, db):
    @app.route("/api/wishlist", methods=["GET"])
    @jwt_required()
    def get_wishlist():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        product_ids = normalize_object_id_list(current_user.get("wishlist"))
        if not product_ids:
            return jsonify([])

        products = {
            document["_id"]: document
            for document in db.products.find({"_id": {"$in": product_ids}, "hidden": {"$ne": True}})
        }
        ordered = [serialize_product(products[product_id]) for product_id in product_ids if product_id in products]
        return jsonify(ordered)

    @app.route("/api/wishlist/<product_id>", methods=["POST"])
    @jwt_required()
    def add_to_wishlist(product_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        object_id = normalize_object_id_value(product_id)
        if object_id is None:
            return jsonify({"message": "Invalid product id."}), 400

        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$addToSet": {"wishlist": object_id}, "$set": {"updated_at": utcnow()}},
        )
        return jsonify({"success": True})

    @app.route("/api/wishlist/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_from_wishlist(product_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        object_id = normalize_object_id_value(product_id)
        if object_id is None:
            return jsonify({"message": "Invalid product id."}), 400

        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$pull": {"wishlist": object_id}, "$set": {"updated_at": utcnow()}},
        )
        return jsonify({"success": True})
