import logging
from typing import Dict, List, Optional, Tuple

import phonenumbers
from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required
from phonenumbers import NumberParseException
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from .auth import require_admin_user, require_user
from .helpers import (
    cents_to_amount,
    fetch_user_summaries,
    get_client_ip,
    normalize_object_id_list,
    normalize_object_id_value,
    safe_int,
    serialize_document,
    to_cents,
    utcnow,
)
from .notifications import notify_admins, notify_user
from .products import live_sale_price
from .schemas import CreateOrderPayload, describe_validation_error
from .tasks import dispatch_background

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "shipped", "delivered", "cancelled")
SHIPPING_FIELDS = (
    "full_name",
    "phone",
    "country",
    "state",
    "city",
    "postal_code",
    "address_line1",
    "address_line2",
    "notes",
)
SHIPPING_REQUIRED_FIELDS = ("full_name", "phone", "country", "city", "address_line1")
STATUS_TITLES = {
    "shipped": "Order shipped",
    "delivered": "Order delivered",
    "cancelled": "Order cancelled",
}
DEFAULT_ADMIN_ORDER_LIMIT = 100
MAX_ADMIN_ORDER_LIMIT = 1000
IDEMPOTENCY_HEADERS = ("Idempotency-Key", "X-Idempotency-Key")


class OrderError(Exception):
    """Checkout failure carrying the HTTP status and body to answer with."""

    def __init__(self, message: str, status: int = 400, **extra):
        super().__init__(message)
        self.message = message
        self.status = status
        self.extra = extra

    def to_response(self):
        body = {"message": self.message}
        body.update(self.extra)
        return jsonify(body), self.status


class StockError(OrderError):
    pass


def session_kwargs(session) -> Dict:
    return {"session": session} if session is not None else {}


def is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def find_variation_index(product_document, color: str) -> Optional[int]:
    wanted = str(color or "").strip().lower()
    for index, variation in enumerate(product_document.get("variations") or []):
        if str(variation.get("color", "") or "").strip().lower() == wanted:
            return index
    return None


def is_valid_stock_key(size: str) -> bool:
    return bool(size) and "." not in size and not size.startswith("$")


def is_valid_phone(phone: str, country: str) -> bool:
    region = str(country or "").strip().upper()
    if len(region) != 2 or not region.isalpha():
        region = None
    try:
        parsed = phonenumbers.parse(str(phone or ""), region)
    except NumberParseException:
        return False
    return phonenumbers.is_valid_number(parsed)


class StockReservation:
    """Conditional per-item stock decrements that can be released as a unit."""

    def __init__(self, db, session=None):
        self.db = db
        self.session = session
        self.reserved: List[Dict] = []

    def reserve(self, product_id, color: str, size: str, quantity: int):
        failure = StockError(
            f'Not enough stock or selected variation missing for product {product_id}, '
            f'color="{color}", size="{size}".'
        )
        if not is_valid_stock_key(size) or quantity <= 0:
            raise failure

        product_document = self.db.products.find_one(
            {"_id": product_id}, {"variations": 1}, **session_kwargs(self.session)
        )
        index = find_variation_index(product_document or {}, color)
        if index is None:
            raise failure

        stored_color = product_document["variations"][index].get("color")
        stock_path = f"variations.{index}.stock_by_size.{size}"
        result = self.db.products.update_one(
            {
                "_id": product_id,
                f"variations.{index}.color": stored_color,
                stock_path: {"$gte": quantity},
            },
            {"$inc": {stock_path: -quantity}},
            **session_kwargs(self.session),
        )
        if not result.modified_count:
            raise failure

        self.reserved.append(
            {"product": product_id, "color": color, "size": size, "quantity": quantity}
        )

    def release(self):
        reserved, self.reserved = self.reserved, []
        restock_order_items(self.db, list(reversed(reserved)), session=self.session)


def restock_order_items(db, items, session=None) -> int:
    """Return stock for each item; failures are logged per item and skipped."""
    restocked = 0
    for item in items or []:
        product_id = normalize_object_id_value(item.get("product"))
        color = str(item.get("color", "") or "").strip()
        size = str(item.get("size", "") or "").strip()
        quantity = safe_int(item.get("quantity"), 0)
        if product_id is None or not is_valid_stock_key(size) or quantity <= 0:
            continue

        try:
            product_document = db.products.find_one(
                {"_id": product_id}, {"variations": 1}, **session_kwargs(session)
            )
            index = find_variation_index(product_document or {}, color)
            if index is None:
                logger.warning(
                    'Restock: product %s, color="%s", size="%s" not found', product_id, color, size
                )
                continue

            stored_color = product_document["variations"][index].get("color")
            stock_path = f"variations.{index}.stock_by_size.{size}"
            result = db.products.update_one(
                {"_id": product_id, f"variations.{index}.color": stored_color},
                {"$inc": {stock_path: quantity}},
                **session_kwargs(session),
            )
            if result.modified_count:
                restocked += 1
            else:
                logger.warning(
                    'Restock: could not increment stock for product %s, color="%s", size="%s"',
                    product_id,
                    color,
                    size,
                )
        except PyMongoError as exc:
            logger.error("Error restocking item for product %s: %s", product_id, exc)
    return restocked


def resolve_unit_price(product_document, item) -> float:
    index = find_variation_index(product_document, item.color) if item.color else None
    if index is not None:
        variation = product_document["variations"][index]
        if is_number(variation.get("sale_price")):
            return float(variation["sale_price"])
        if is_number(variation.get("price")):
            return float(variation["price"])
    if is_number(product_document.get("price")):
        return live_sale_price(product_document)
    if item.price:
        return float(item.price)
    raise OrderError(f"Price missing for product {product_document.get('_id')}")


def recalculate_order_items(db, items, session=None) -> Tuple[int, List[Dict]]:
    """Price every item from the database in integer cents."""
    total_cents = 0
    priced_items: List[Dict] = []
    for item in items:
        reference = item.product_reference
        product_id = None
        if reference:
            product_id = normalize_object_id_value(reference)
            product_document = None
            if product_id is not None:
                product_document = db.products.find_one(
                    {"_id": product_id, "hidden": {"$ne": True}}, **session_kwargs(session)
                )
            if not product_document:
                raise OrderError(f"Product not found: {reference}")
            unit_cents = to_cents(resolve_unit_price(product_document, item))
        else:
            unit_cents = to_cents(item.price or 0)

        total_cents += unit_cents * item.quantity
        priced_items.append(
            {
                "product": product_id,
                "name": item.name or "",
                "color": str(item.color or "").strip(),
                "size": str(item.size or "").strip(),
                "quantity": item.quantity,
                "price": cents_to_amount(unit_cents),
                "image": item.image or "",
            }
        )
    return total_cents, priced_items


def resolve_shipping(user_document, shipping_payload) -> Dict[str, str]:
    if shipping_payload is not None:
        shipping = {
            field: str(getattr(shipping_payload, field) or "").strip() for field in SHIPPING_FIELDS
        }
    else:
        shipping = {
            field: str(user_document.get(field) or "").strip() for field in SHIPPING_FIELDS
        }
        shipping["full_name"] = shipping["full_name"] or str(user_document.get("username") or "")
        shipping["notes"] = ""

    missing = [field for field in SHIPPING_REQUIRED_FIELDS if not shipping.get(field)]
    if missing:
        raise OrderError(f"Missing shipping fields: {', '.join(missing)}")
    if not is_valid_phone(shipping["phone"], shipping["country"]):
        raise OrderError("Phone number appears invalid.")
    return shipping


def resolve_idempotency_key(payload: CreateOrderPayload) -> Optional[str]:
    body_key = (payload.idempotency_key or "").strip()
    if body_key:
        return body_key
    for header in IDEMPOTENCY_HEADERS:
        value = (request.headers.get(header) or "").strip()
        if value:
            return value[:500]
    return None


def reserve_and_insert(db, order_document, session=None):
    reservation = StockReservation(db, session=session)
    if session is not None:
        for item in order_document["items"]:
            if item["product"] is not None:
                reservation.reserve(item["product"], item["color"], item["size"], item["quantity"])
        return db.orders.insert_one(order_document, session=session)

    try:
        for item in order_document["items"]:
            if item["product"] is not None:
                reservation.reserve(item["product"], item["color"], item["size"], item["quantity"])
        return db.orders.insert_one(order_document)
    except (OrderError, PyMongoError):
        reservation.release()
        raise


def place_order(db, user_document, raw_payload) -> Tuple[Dict, bool]:
    """Validate, price, reserve and store an order. Returns ``(order, created)``."""
    if not isinstance(raw_payload, dict):
        raise OrderError("Invalid payload", details=["Request body must be a JSON object."])
    try:
        payload = CreateOrderPayload.model_validate(raw_payload)
    except ValidationError as exc:
        raise OrderError("Invalid payload", details=describe_validation_error(exc))

    shipping = resolve_shipping(user_document, payload.shipping)

    idempotency_key = resolve_idempotency_key(payload)
    if idempotency_key:
        existing = db.orders.find_one({"user": user_document["_id"], "idempotency_key": idempotency_key})
        if existing:
            return existing, False

    total_cents, priced_items = recalculate_order_items(db, payload.items)
    submitted_cents = to_cents(payload.total_price)
    if submitted_cents != total_cents:
        raise OrderError(
            "totalPrice mismatch",
            expected=f"{cents_to_amount(total_cents):.2f}",
            provided=f"{payload.total_price:.2f}",
        )

    now = utcnow()
    order_document = {
        "user": user_document["_id"],
        "contact_snapshot": {
            "email": user_document.get("email", ""),
            "username": user_document.get("username", ""),
        },
        "shipping": shipping,
        "items": priced_items,
        "total_price": cents_to_amount(total_cents),
        "status": "pending",
        "payed": False,
        "meta": {
            "ip": get_client_ip(request),
            "user_agent": request.headers.get("User-Agent", ""),
            "fingerprint": payload.fingerprint or None,
        },
        "created_at": now,
        "updated_at": now,
    }
    if idempotency_key:
        order_document["idempotency_key"] = idempotency_key

    try:
        if current_app.config.get("MONGO_TRANSACTIONS"):
            with db.client.start_session() as session:
                with session.start_transaction():
                    result = reserve_and_insert(db, order_document, session=session)
        else:
            result = reserve_and_insert(db, order_document)
    except DuplicateKeyError:
        # a concurrent request with the same idempotency key won the insert
        existing = None
        if idempotency_key:
            existing = db.orders.find_one(
                {"user": user_document["_id"], "idempotency_key": idempotency_key}
            )
        if existing is None:
            raise
        return existing, False

    order_document["_id"] = result.inserted_id
    return order_document, True


def cancel_order(db, order_document, extra_updates: Optional[Dict] = None) -> bool:
    """Move an order into ``cancelled``; stock is returned only by the call that performs the move."""
    updates = {"status": "cancelled", "updated_at": utcnow()}
    updates.update(extra_updates or {})
    result = db.orders.update_one(
        {"_id": order_document["_id"], "status": {"$ne": "cancelled"}},
        {"$set": updates},
    )
    if not result.modified_count:
        return False
    restock_order_items(db, order_document.get("items"))
    return True


def serialize_order(db, order_document, include_user: bool = False) -> Dict:
    if not order_document:
        return {}

    serialized = serialize_document(order_document)
    product_ids = normalize_object_id_list(
        item.get("product") for item in order_document.get("items") or [] if item.get("product")
    )
    product_names: Dict = {}
    if product_ids:
        for product in db.products.find({"_id": {"$in": product_ids}}, {"name": 1}):
            product_names[product["_id"]] = product.get("name", "")

    for item, source in zip(serialized.get("items") or [], order_document.get("items") or []):
        product_id = source.get("product")
        if product_id is not None:
            item["product"] = {"id": str(product_id), "name": product_names.get(product_id)}

    if include_user:
        users = fetch_user_summaries(db, [order_document.get("user")], ("username", "email", "avatar_url"))
        serialized["user"] = users.get(order_document.get("user")) or serialized.get("user")
    return serialized


def register_order_routes(app, db):
    def notify_order_placed(user_document, order_document):
        order_id = str(order_document["_id"])
        notify_user(
            db,
            user_document["_id"],
            "order",
            "Order placed",
            f"Your order {order_id} was placed successfully.",
            {"order_id": order_id},
        )
        who = user_document.get("username") or user_document.get("email") or str(user_document["_id"])
        dispatch_background(
            notify_admins,
            db,
            "order",
            "New order placed",
            f"Order {order_id} placed by {who}.",
            {"order_id": order_id, "url": f"/admin/dashboard/orders/{order_id}"},
        )

    @app.route("/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        try:
            order_document, created = place_order(db, current_user, request.get_json(silent=True))
        except OrderError as exc:
            return exc.to_response()
        except PyMongoError as exc:
            app.logger.error("create_order failed: %s", exc)
            return jsonify({"message": "Could not create order."}), 500

        if not created:
            return jsonify({"order": serialize_order(db, order_document)}), 200

        notify_order_placed(current_user, order_document)
        return jsonify({"order": serialize_order(db, order_document)}), 201

    @app.route("/orders/my", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        cursor = db.orders.find({"user": current_user["_id"]}).sort([("created_at", -1), ("_id", -1)])
        return jsonify({"orders": [serialize_order(db, document) for document in cursor]})

    @app.route("/admin/orders", methods=["GET"])
    @jwt_required()
    def admin_list_orders():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        limit = safe_int(request.args.get("limit"), DEFAULT_ADMIN_ORDER_LIMIT)
        if limit <= 0:
            limit = DEFAULT_ADMIN_ORDER_LIMIT
        limit = min(limit, MAX_ADMIN_ORDER_LIMIT)

        cursor = db.orders.find({}).sort([("created_at", -1), ("_id", -1)]).limit(limit)
        return jsonify(
            {"orders": [serialize_order(db, document, include_user=True) for document in cursor]}
        )

    @app.route("/admin/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def admin_get_order(order_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        object_id = normalize_object_id_value(order_id)
        order_document = db.orders.find_one({"_id": object_id}) if object_id is not None else None
        if not order_document:
            return jsonify({"message": "Order not found"}), 404
        return jsonify({"order": serialize_order(db, order_document, include_user=True)})

    @app.route("/admin/orders/<order_id>/status", methods=["PATCH"])
    @jwt_required()
    def admin_update_order_status(order_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        object_id = normalize_object_id_value(order_id)
        if object_id is None:
            return jsonify({"message": "Invalid order id"}), 400

        payload = request.get_json(silent=True) or {}
        status = str(payload.get("status", "") or "").strip().lower()
        if status not in ORDER_STATUSES:
            return jsonify({"message": "Invalid status"}), 400

        order_document = db.orders.find_one({"_id": object_id})
        if not order_document:
            return jsonify({"message": "Order not found"}), 404

        if status == "cancelled":
            cancel_order(db, order_document)
        elif order_document.get("status") == "cancelled":
            return jsonify({"message": "Cancelled orders cannot be reopened"}), 409
        else:
            result = db.orders.update_one(
                {"_id": object_id, "status": {"$ne": "cancelled"}},
                {"$set": {"status": status, "updated_at": utcnow()}},
            )
            if not result.matched_count:
                return jsonify({"message": "Cancelled orders cannot be reopened"}), 409

        notify_user(
            db,
            order_document["user"],
            "order",
            STATUS_TITLES.get(status, "Order status updated"),
            f'Your order {order_id} is now "{status}".',
            {"order_id": str(object_id), "status": status},
        )

        refreshed = db.orders.find_one({"_id": object_id})
        return jsonify({"order": serialize_order(db, refreshed, include_user=True)})
