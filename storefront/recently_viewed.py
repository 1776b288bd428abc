from typing import Dict, Optional

from flask import jsonify, request
from flask_jwt_extended import jwt_required

from .auth import require_user
from .helpers import normalize_object_id_value, safe_float, safe_int, serialize_value, utcnow

DEFAULT_RECENTLY_VIEWED_LIMIT = 20


def optional_number(value) -> Optional[float]:
    if value in (None, ""):
        return None
    return safe_float(value, None)


def build_snapshot(product: Dict) -> Optional[Dict]:
    """Normalize a client product summary into a recently-viewed entry."""
    raw_id = product.get("id") or product.get("_id") or product.get("product_id")
    if not raw_id:
        return None

    object_id = normalize_object_id_value(raw_id)
    images = product.get("images")
    if isinstance(images, list):
        images = [str(image) for image in images if image]
    elif product.get("image"):
        images = [str(product["image"])]
    else:
        images = []

    price = safe_float(product.get("price"), 0.0)
    sale_price = optional_number(product.get("sale_price", product.get("salePrice")))
    discount = optional_number(product.get("discount"))
    if discount is None and sale_price and price > 0 and sale_price < price:
        discount = float(round((price - sale_price) / price * 100))

    return {
        "product_id": object_id if object_id is not None else str(raw_id),
        "name": str(product.get("name") or ""),
        "slug": str(product.get("slug") or ""),
        "price": price,
        "sale_price": sale_price,
        "discount": discount,
        "image": str(product.get("image") or (images[0] if images else "")),
        "images": images,
        "viewed_at": utcnow(),
    }


def register_recently_viewed_routes(app, db):
    @app.route("/user/recently-viewed", methods=["POST"])
    @jwt_required()
    def add_recently_viewed():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        product = payload.get("product")
        snapshot = build_snapshot(product) if isinstance(product, dict) else None
        if snapshot is None:
            return (
                jsonify(
                    {
                        "message": "Missing product (expecting { product: { id, name, price, image, images, slug, sale_price, discount } })"
                    }
                ),
                400,
            )

        limit = safe_int(payload.get("limit"), DEFAULT_RECENTLY_VIEWED_LIMIT)
        if limit <= 0:
            limit = DEFAULT_RECENTLY_VIEWED_LIMIT

        snapshot_key = str(snapshot["product_id"])
        document = db.recently_viewed.find_one({"user": current_user["_id"]}) or {}
        remaining = [
            item for item in document.get("items") or [] if str(item.get("product_id")) != snapshot_key
        ]
        items = ([snapshot] + remaining)[:limit]

        db.recently_viewed.update_one(
            {"user": current_user["_id"]},
            {"$set": {"items": items, "updated_at": utcnow()}},
            upsert=True,
        )
        return jsonify({"items": serialize_value(items)})

    @app.route("/user/recently-viewed", methods=["GET"])
    @jwt_required()
    def get_recently_viewed():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        document = db.recently_viewed.find_one({"user": current_user["_id"]}) or {}
        return jsonify({"items": serialize_value(document.get("items") or [])})
