import math
import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required

from .auth import require_admin_user
from .helpers import (
    normalize_object_id_value,
    parse_bool,
    safe_float,
    safe_int,
    safe_positive_int,
    serialize_document,
    utcnow,
)

SIZE_KEYS = ("XS", "S", "M", "L", "XL")
DISCOUNT_TYPES = {"percent", "fixed"}
PRODUCT_REQUIRED_FIELDS = ("name", "description", "price", "category")
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100
MAX_PAGE = 10000
PRODUCT_REMOVAL_EVENTS = (
    "recentlyViewed:productDeleted",
    "cart:productRemoved",
    "wishlist:productRemoved",
)
tag_separator_regex = re.compile(r"[;,]+")


def round_money(value) -> float:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return 0.0
    if not amount.is_finite():
        return 0.0
    return float(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def parse_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def compute_sale_price(
    price,
    discount,
    discount_type: str = "percent",
    discount_active: bool = False,
    discount_expires=None,
    now: Optional[datetime] = None,
) -> float:
    """Sale price after an active, unexpired discount; never negative."""
    base_price = safe_float(price, 0.0)
    discount_value = safe_float(discount, 0.0)

    if not discount_active or discount_value <= 0:
        return round_money(base_price)

    if discount_expires:
        expires_at = parse_datetime(discount_expires)
        if expires_at is None or expires_at <= (now or utcnow()):
            return round_money(base_price)

    if discount_type == "fixed":
        return round_money(max(0.0, base_price - discount_value))
    return round_money(max(0.0, base_price * (1 - discount_value / 100)))


def live_sale_price(product_document, now: Optional[datetime] = None) -> float:
    return compute_sale_price(
        product_document.get("price"),
        product_document.get("discount"),
        product_document.get("discount_type") or "percent",
        bool(product_document.get("discount_active")),
        product_document.get("discount_expires"),
        now,
    )


def normalize_tags(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple, set)):
        candidates = [str(item or "").strip() for item in value]
    else:
        candidates = [item.strip() for item in tag_separator_regex.split(str(value))]

    tags: List[str] = []
    for tag in candidates:
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def normalize_variations(raw_value) -> Tuple[List[Dict], Optional[str]]:
    if raw_value is None:
        return [], None
    if not isinstance(raw_value, (list, tuple)):
        return [], "Variations must be a list."

    normalized: List[Dict] = []
    for entry in raw_value:
        if not isinstance(entry, dict):
            return [], "Each variation must be an object."

        color = str(entry.get("color", "") or "").strip()
        if not color:
            return [], "Each variation requires a color."

        images = entry.get("images") or []
        if isinstance(images, str):
            images = [images]
        raw_stock = entry.get("stock_by_size", entry.get("stockBySize")) or {}
        if not isinstance(raw_stock, dict):
            return [], "Variation stock must be an object keyed by size."

        variation: Dict[str, object] = {
            "color": color,
            "images": [str(image).strip() for image in images if str(image or "").strip()],
            "stock_by_size": {
                size: safe_positive_int(raw_stock.get(size), 0)
                for size in SIZE_KEYS
                if size in raw_stock
            },
        }
        for field, aliases in (("price", ("price",)), ("sale_price", ("sale_price", "salePrice"))):
            for alias in aliases:
                if entry.get(alias) not in (None, ""):
                    variation[field] = round_money(safe_float(entry.get(alias)))
                    break
        normalized.append(variation)
    return normalized, None


def total_stock(product_document) -> int:
    total = 0
    for variation in product_document.get("variations") or []:
        for quantity in (variation.get("stock_by_size") or {}).values():
            total += safe_int(quantity, 0)
    return total


def serialize_product(product_document) -> Dict:
    if not product_document:
        return {}
    serialized = serialize_document(product_document)
    serialized["sale_price"] = live_sale_price(product_document)
    serialized["total_stock"] = total_stock(product_document)
    return serialized


def build_product_fields(payload: Dict, existing: Optional[Dict] = None) -> Tuple[Dict, Optional[str]]:
    """Validate an admin product payload and merge it over ``existing`` when updating."""
    creating = existing is None
    fields: Dict[str, object] = {}

    for key in ("name", "description", "category"):
        if key in payload:
            fields[key] = str(payload.get(key) or "").strip()

    if "price" in payload:
        try:
            price_value = float(payload.get("price"))
        except (TypeError, ValueError):
            return {}, "Price must be a valid number."
        if not math.isfinite(price_value) or price_value < 0:
            return {}, "Price must be a non-negative number."
        fields["price"] = round_money(price_value)

    if creating:
        missing = [key for key in PRODUCT_REQUIRED_FIELDS if fields.get(key) in (None, "")]
        if missing:
            return {}, f"Missing required fields: {', '.join(missing)}"
    else:
        blank = [key for key in PRODUCT_REQUIRED_FIELDS if key in fields and fields[key] in (None, "")]
        if blank:
            return {}, f"Fields cannot be empty: {', '.join(blank)}"

    if "sizes" in payload:
        sizes = payload.get("sizes") or []
        if isinstance(sizes, str):
            sizes = [sizes]
        fields["sizes"] = [str(size).strip() for size in sizes if str(size or "").strip()]

    if "variations" in payload:
        variations, variations_error = normalize_variations(payload.get("variations"))
        if variations_error:
            return {}, variations_error
        fields["variations"] = variations

    if "tags" in payload:
        fields["tags"] = normalize_tags(payload.get("tags"))

    if "hidden" in payload:
        fields["hidden"] = parse_bool(payload.get("hidden"))

    if "discount" in payload:
        fields["discount"] = max(0.0, safe_float(payload.get("discount"), 0.0))

    discount_type = payload.get("discount_type", payload.get("discountType"))
    if discount_type is not None:
        discount_type = str(discount_type).strip().lower()
        if discount_type not in DISCOUNT_TYPES:
            return {}, "Discount type must be 'percent' or 'fixed'."
        fields["discount_type"] = discount_type

    discount_active = payload.get("discount_active", payload.get("discountActive"))
    if discount_active is not None:
        fields["discount_active"] = parse_bool(discount_active)

    if "discount_expires" in payload or "discountExpires" in payload:
        raw_expires = payload.get("discount_expires", payload.get("discountExpires"))
        if raw_expires in (None, ""):
            fields["discount_expires"] = None
        else:
            expires_at = parse_datetime(raw_expires)
            if expires_at is None:
                return {}, "Discount expiry must be an ISO-8601 date."
            fields["discount_expires"] = expires_at

    if creating:
        fields.setdefault("sizes", [])
        fields.setdefault("variations", [])
        fields.setdefault("tags", [])
        fields.setdefault("hidden", False)
        fields.setdefault("discount", 0.0)
        fields.setdefault("discount_type", "percent")
        fields.setdefault("discount_active", False)
        fields.setdefault("discount_expires", None)

    merged = dict(existing or {})
    merged.update(fields)
    fields["sale_price"] = live_sale_price(merged)
    fields["updated_at"] = utcnow()
    return fields, None


def fetch_product(db, product_id: str, include_hidden: bool = False):
    object_id = normalize_object_id_value(product_id)
    if object_id is None:
        return None, (jsonify({"message": "Not found"}), 404)

    query: Dict[str, object] = {"_id": object_id}
    if not include_hidden:
        query["hidden"] = {"$ne": True}
    product_document = db.products.find_one(query)
    if not product_document:
        return None, (jsonify({"message": "Not found"}), 404)
    return product_document, None


def build_product_filter(args, include_hidden: bool) -> Dict:
    query: Dict[str, object] = {}

    category = str(args.get("category", "") or "").strip()
    if category:
        query["category"] = category

    search = str(args.get("search", "") or "").strip()
    if search:
        query["name"] = re.compile(re.escape(search), re.IGNORECASE)

    min_price = args.get("min_price", args.get("minPrice"))
    max_price = args.get("max_price", args.get("maxPrice"))
    price_range: Dict[str, float] = {}
    if min_price not in (None, ""):
        price_range["$gte"] = safe_float(min_price, 0.0)
    if max_price not in (None, ""):
        price_range["$lte"] = safe_float(max_price, 0.0)
    if price_range:
        query["price"] = price_range

    size = str(args.get("size", "") or "").strip()
    if size:
        query["sizes"] = size

    color = str(args.get("color", "") or "").strip()
    if color:
        query["variations"] = {
            "$elemMatch": {"color": re.compile(f"^{re.escape(color)}$", re.IGNORECASE)}
        }

    tag = str(args.get("tag", "") or "").strip()
    if tag:
        query["tags"] = {"$in": [re.compile(f"^{re.escape(tag)}$", re.IGNORECASE)]}

    if not include_hidden:
        query["hidden"] = {"$ne": True}
    return query


def list_products_response(db, include_hidden: bool):
    args = request.args
    page = min(max(1, safe_int(args.get("page"), 1)), MAX_PAGE)
    limit = safe_int(args.get("limit"), DEFAULT_PAGE_LIMIT)
    if limit <= 0:
        limit = DEFAULT_PAGE_LIMIT
    limit = min(limit, MAX_PAGE_LIMIT)

    query = build_product_filter(args, include_hidden)
    total = db.products.count_documents(query)
    cursor = (
        db.products.find(query)
        .sort([("created_at", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return jsonify(
        {
            "items": [serialize_product(document) for document in cursor],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }
    )


def remove_product_references(db, product_id):
    """Drop a hidden or deleted product from recently viewed lists, carts and wishlists."""
    object_id = normalize_object_id_value(product_id)
    variants = [value for value in (object_id, str(product_id)) if value is not None]

    for value in variants:
        db.recently_viewed.update_many({}, {"$pull": {"items": {"product_id": value}}})
        db.carts.update_many({}, {"$pull": {"items": {"product": value}}})
        db.users.update_many({}, {"$pull": {"wishlist": value}})

    hub = current_app.extensions.get("realtime")
    if hub is not None:
        payload = {"product_id": str(product_id)}
        for event in PRODUCT_REMOVAL_EVENTS:
            hub.broadcast(event, payload)


def cleanup_product_references(db, product_id):
    try:
        remove_product_references(db, product_id)
    except Exception as exc:
        current_app.logger.error(
            "Failed to clean references for product %s: %s", product_id, exc
        )


def register_product_routes(app, db):
    @app.route("/products", methods=["GET"])
    def list_products():
        include_hidden = str(request.args.get("include_hidden", request.args.get("includeHidden", ""))) == "true"
        return list_products_response(db, include_hidden)

    @app.route("/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        include_hidden = str(request.args.get("include_hidden", request.args.get("includeHidden", ""))) == "true"
        product_document, load_error = fetch_product(db, product_id, include_hidden=include_hidden)
        if load_error:
            return load_error
        return jsonify({"product": serialize_product(product_document)})

    @app.route("/admin/products", methods=["GET"])
    @jwt_required()
    def admin_list_products():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error
        return list_products_response(db, include_hidden=True)

    @app.route("/admin/products/<product_id>", methods=["GET"])
    @jwt_required()
    def admin_get_product(product_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(db, product_id, include_hidden=True)
        if load_error:
            return load_error
        return jsonify({"product": serialize_product(product_document)})

    @app.route("/admin/products", methods=["POST"])
    @jwt_required()
    def create_product():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        fields, validation_error = build_product_fields(payload)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        fields["created_at"] = fields["updated_at"]
        result = db.products.insert_one(fields)
        created_product = db.products.find_one({"_id": result.inserted_id})
        return jsonify({"product": serialize_product(created_product)}), 201

    @app.route("/admin/products/<product_id>", methods=["PUT", "PATCH"])
    @jwt_required()
    def update_product(product_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(db, product_id, include_hidden=True)
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        fields, validation_error = build_product_fields(payload, existing=product_document)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        db.products.update_one({"_id": product_document["_id"]}, {"$set": fields})
        updated_product = db.products.find_one({"_id": product_document["_id"]})

        if updated_product.get("hidden"):
            cleanup_product_references(db, updated_product["_id"])

        return jsonify({"product": serialize_product(updated_product)})

    @app.route("/admin/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        product_document, load_error = fetch_product(db, product_id, include_hidden=True)
        if load_error:
            return load_error

        db.products.delete_one({"_id": product_document["_id"]})
        cleanup_product_references(db, product_document["_id"])
        return jsonify({"message": "Deleted"})
