import os
from datetime import timedelta
from typing import Dict, List, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from flask_socketio import SocketIO
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from .admin import register_admin_routes
from .auth import register_auth_routes
from .cart import register_cart_routes
from .contacts import register_contact_routes
from .helpers import normalize_email, parse_bool, parse_duration, safe_int
from .messages import register_message_routes
from .notifications import register_notification_routes
from .orders import register_order_routes
from .payments import register_payment_routes
from .products import register_product_routes
from .push import register_push_routes
from .realtime import RealtimeHub, register_socket_handlers
from .recently_viewed import register_recently_viewed_routes
from .tasks import init_background_tasks
from .wishlist import register_wishlist_routes

load_dotenv()

DEFAULT_FRONTEND_URL = "http://localhost:3000"


def build_allowed_origins(frontend_url: str) -> List[str]:
    allowed_origins = [
        DEFAULT_FRONTEND_URL,
        "http://127.0.0.1:3000",
        frontend_url,
    ]
    extra = os.getenv("FRONTEND_ORIGINS", "")
    for origin in extra.split(","):
        trimmed = origin.strip()
        if trimmed:
            allowed_origins.append(trimmed)

    unique: List[str] = []
    for origin in allowed_origins:
        origin = (origin or "").strip().rstrip("/")
        if origin and origin not in unique:
            unique.append(origin)
    return unique


def load_config() -> Dict[str, object]:
    environment = (os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "development").strip().lower()
    production = environment == "production"
    frontend_url = (os.getenv("FRONTEND_URL") or DEFAULT_FRONTEND_URL).strip().rstrip("/")

    return {
        "ENVIRONMENT": environment,
        "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017/px39"),
        "MONGO_TRANSACTIONS": parse_bool(os.getenv("MONGO_TRANSACTIONS", "false")),
        "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY", "change-me-in-production"),
        "JWT_ACCESS_TOKEN_EXPIRES": parse_duration(
            os.getenv("ACCESS_TOKEN_EXPIRES_IN"), timedelta(minutes=15)
        ),
        "JWT_REFRESH_TOKEN_EXPIRES": parse_duration(
            os.getenv("REFRESH_TOKEN_EXPIRES_IN"), timedelta(days=7)
        ),
        "JWT_TOKEN_LOCATION": ["cookies", "headers"],
        "JWT_ACCESS_COOKIE_NAME": "accessToken",
        "JWT_REFRESH_COOKIE_NAME": "refreshToken",
        "JWT_ACCESS_COOKIE_PATH": "/",
        "JWT_REFRESH_COOKIE_PATH": "/",
        "JWT_COOKIE_CSRF_PROTECT": False,
        "JWT_SESSION_COOKIE": False,
        "JWT_COOKIE_SECURE": production,
        "JWT_COOKIE_SAMESITE": "None" if production else "Lax",
        "FRONTEND_URL": frontend_url,
        "BACKEND_URL": (os.getenv("BACKEND_URL") or "").strip().rstrip("/"),
        "CORS_ORIGINS": build_allowed_origins(frontend_url),
        "RESEND_API_KEY": (os.getenv("RESEND_API_KEY") or "").strip(),
        "EMAIL_FROM": os.getenv("EMAIL_FROM", "PX39 <no-reply@px39.store>"),
        "CONTACT_INBOX_EMAIL": (os.getenv("CONTACT_INBOX_EMAIL") or "").strip(),
        "ADMIN_EMAIL": normalize_email(os.getenv("ADMIN_EMAIL")),
        "VAPID_PUBLIC_KEY": (os.getenv("VAPID_PUBLIC_KEY") or "").strip(),
        "VAPID_PRIVATE_KEY": (os.getenv("VAPID_PRIVATE_KEY") or "").strip(),
        "VAPID_SUBJECT": os.getenv("VAPID_SUBJECT", "mailto:admin@example.com"),
        "BCRYPT_ROUNDS": safe_int(os.getenv("BCRYPT_ROUNDS"), 12) or 12,
        "SOCKETIO_ASYNC_MODE": os.getenv("SOCKETIO_ASYNC_MODE") or None,
        "BACKGROUND_WORKERS": safe_int(os.getenv("BACKGROUND_WORKERS"), 4) or 4,
        "BACKGROUND_TASKS_SYNC": parse_bool(os.getenv("BACKGROUND_TASKS_SYNC", "false")),
        "TRUSTED_PROXY_HOPS": max(0, safe_int(os.getenv("TRUSTED_PROXY_HOPS", "1"), 1)),
    }


def ensure_indexes(app: Flask, db):
    index_specs = (
        ("users", [("email", ASCENDING)], {"unique": True}),
        ("orders", [("payed", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)], {}),
        (
            "orders",
            [("user", ASCENDING), ("idempotency_key", ASCENDING)],
            {"unique": True, "partialFilterExpression": {"idempotency_key": {"$type": "string"}}},
        ),
        ("notifications", [("user", ASCENDING), ("read", ASCENDING), ("created_at", DESCENDING)], {}),
        ("messages", [("conversation", ASCENDING), ("created_at", DESCENDING)], {}),
        ("conversations", [("participants", ASCENDING), ("last_message_at", DESCENDING)], {}),
        ("recently_viewed", [("user", ASCENDING)], {"unique": True}),
        ("push_subscriptions", [("user", ASCENDING)], {}),
        ("carts", [("user", ASCENDING)], {}),
        ("contacts", [("created_at", DESCENDING)], {}),
    )
    for collection_name, keys, options in index_specs:
        try:
            db[collection_name].create_index(keys, **options)
        except PyMongoError as exc:
            app.logger.warning("Unable to ensure index on %s: %s", collection_name, exc)


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.update(load_config())
    if test_config:
        app.config.update(test_config)

    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    allowed_origins = app.config["CORS_ORIGINS"]
    CORS(
        app,
        supports_credentials=True,
        origins=allowed_origins or "*",
        allow_headers=["Content-Type", "Authorization", "Idempotency-Key", "X-Idempotency-Key"],
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    )

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify({"message": "Access token missing."}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify({"message": "Invalid or expired token."}), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({"message": "Invalid or expired token."}), 401

    if database is None:
        mongo = PyMongo(app)
        db = mongo.db
    else:
        db = database
    app.extensions["storefront_db"] = db

    ensure_indexes(app, db)
    init_background_tasks(app)

    socketio = SocketIO(
        app,
        async_mode=app.config.get("SOCKETIO_ASYNC_MODE"),
        cors_allowed_origins=allowed_origins or "*",
    )
    hub = RealtimeHub(socketio)
    app.extensions["realtime"] = hub
    register_socket_handlers(socketio, hub, db)

    register_auth_routes(app, db)
    register_product_routes(app, db)
    register_cart_routes(app, db)
    register_order_routes(app, db)
    register_payment_routes(app, db)
    register_message_routes(app, db)
    register_notification_routes(app, db)
    register_push_routes(app, db)
    register_wishlist_routes(app, db)
    register_recently_viewed_routes(app, db)
    register_contact_routes(app, db)
    register_admin_routes(app, db)

    @app.errorhandler(PyMongoError)
    def database_error(exc):
        app.logger.error("Database error in %s: %s", request.endpoint, exc)
        return jsonify({"message": "Server error"}), 500

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/")
    def index():
        return jsonify({"name": "PX39 storefront API", "status": "ok"})

    return app
