from typing import Dict, List

from flask import jsonify, request
from flask_jwt_extended import jwt_required

from .auth import require_user
from .helpers import (
    isoformat,
    normalize_object_id_list,
    normalize_object_id_value,
    safe_float,
    safe_int,
    utcnow,
)
from .products import serialize_product


def serialize_cart(db, cart_document) -> Dict:
    if not cart_document:
        return {"items": []}

    items = cart_document.get("items") or []
    product_ids = normalize_object_id_list(item.get("product") for item in items)
    products: Dict = {}
    if product_ids:
        for document in db.products.find({"_id": {"$in": product_ids}}):
            products[document["_id"]] = serialize_product(document)

    serialized_items: List[Dict] = []
    for item in items:
        product_id = normalize_object_id_value(item.get("product"))
        serialized_items.append(
            {
                "product": products.get(product_id) or (str(product_id) if product_id else None),
                "color": item.get("color", ""),
                "size": item.get("size", ""),
                "quantity": safe_int(item.get("quantity"), 1),
            }
        )

    return {
        "id": str(cart_document.get("_id")),
        "user": str(cart_document.get("user")),
        "items": serialized_items,
        "updated_at": isoformat(cart_document.get("updated_at")),
    }


def register_cart_routes(app, db):
    def save_items(cart_document, items):
        db.carts.update_one(
            {"_id": cart_document["_id"]},
            {"$set": {"items": items, "updated_at": utcnow()}},
        )
        return db.carts.find_one({"_id": cart_document["_id"]})

    def parse_index(cart_document, raw_index):
        raw_value = str(raw_index).strip()
        if not raw_value.isdigit():
            return None
        index = int(raw_value)
        if index >= len(cart_document.get("items") or []):
            return None
        return index

    @app.route("/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        cart_document = db.carts.find_one({"user": current_user["_id"]})
        return jsonify(serialize_cart(db, cart_document))

    @app.route("/cart", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        product_id = normalize_object_id_value(payload.get("product_id", payload.get("productId")))
        product_document = (
            db.products.find_one({"_id": product_id, "hidden": {"$ne": True}})
            if product_id is not None
            else None
        )
        if not product_document:
            return jsonify({"message": "Product not found"}), 404

        color = str(payload.get("color", "") or "").strip()
        size = str(payload.get("size", "") or "").strip()
        quantity = safe_int(payload.get("quantity"), 1)

        cart_document = db.carts.find_one({"user": current_user["_id"]})
        if not cart_document:
            now = utcnow()
            result = db.carts.insert_one(
                {"user": current_user["_id"], "items": [], "created_at": now, "updated_at": now}
            )
            cart_document = db.carts.find_one({"_id": result.inserted_id})

        items = list(cart_document.get("items") or [])
        for item in items:
            if (
                normalize_object_id_value(item.get("product")) == product_id
                and item.get("color", "") == color
                and item.get("size", "") == size
            ):
                item["quantity"] = max(1, safe_int(item.get("quantity"), 0) + quantity)
                break
        else:
            items.append(
                {"product": product_id, "color": color, "size": size, "quantity": max(1, quantity)}
            )

        return jsonify(serialize_cart(db, save_items(cart_document, items)))

    @app.route("/cart/<index>", methods=["PATCH", "PUT"])
    @jwt_required()
    def update_cart_item(index: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        cart_document = db.carts.find_one({"user": current_user["_id"]})
        if not cart_document:
            return jsonify({"message": "Cart not found"}), 404

        position = parse_index(cart_document, index)
        if position is None:
            return jsonify({"message": "Invalid item index"}), 400

        payload = request.get_json(silent=True) or {}
        quantity = safe_float(payload.get("quantity"), None)
        if quantity is None:
            return jsonify({"message": "Invalid quantity"}), 400

        items = list(cart_document.get("items") or [])
        if quantity <= 0:
            items.pop(position)
        else:
            items[position]["quantity"] = max(1, int(quantity))

        return jsonify(serialize_cart(db, save_items(cart_document, items)))

    @app.route("/cart/<index>", methods=["DELETE"])
    @jwt_required()
    def remove_cart_item(index: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        cart_document = db.carts.find_one({"user": current_user["_id"]})
        if not cart_document:
            return jsonify({"message": "Cart not found"}), 404

        position = parse_index(cart_document, index)
        if position is None:
            return jsonify({"message": "Invalid item index"}), 400

        items = list(cart_document.get("items") or [])
        items.pop(position)
        return jsonify(serialize_cart(db, save_items(cart_document, items)))

    @app.route("/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        db.carts.delete_one({"user": current_user["_id"]})
        return jsonify({"message": "Cart cleared"})
