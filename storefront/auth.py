import math
import secrets
from datetime import timedelta
from typing import Dict, Optional, Tuple
from uuid import uuid4

import bcrypt
from flask import current_app, jsonify, redirect, request
from flask_jwt_extended import (
    create_access_token,
    create_refresh_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
    set_access_cookies,
    set_refresh_cookies,
    unset_jwt_cookies,
    verify_jwt_in_request,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError
from pymongo.errors import DuplicateKeyError
from user_agents import parse as parse_user_agent

from .emails import send_magic_link_email, send_reset_password_email, send_verification_email
from .helpers import (
    get_client_ip,
    isoformat,
    normalize_email,
    normalize_object_id_value,
    utcnow,
)

ALLOWED_ROLES = {"user", "admin", "moderator"}
DEFAULT_AVATAR_URL = (
    "https://ik.imagekit.io/ehggwul6k/avatars/150fa8800b0a0d5633abc1d1c4db3d87_ez-lfcXam.jpg"
)
VERIFICATION_TOKEN_TTL = timedelta(hours=1)
RESET_TOKEN_TTL = timedelta(hours=1)
MAGIC_LINK_TTL = timedelta(minutes=15)
RESEND_VERIFICATION_WINDOW = timedelta(seconds=30)

PROFILE_FIELDS = (
    "full_name",
    "phone",
    "country",
    "state",
    "city",
    "postal_code",
    "address_line1",
    "address_line2",
)
PROFILE_FIELD_ALIASES = {
    "full_name": ("full_name", "fullName"),
    "postal_code": ("postal_code", "postalCode"),
    "address_line1": ("address_line1", "addressLine1"),
    "address_line2": ("address_line2", "addressLine2"),
}
SECRET_USER_FIELDS = (
    "password_hash",
    "verification_token",
    "verification_token_expiry",
    "reset_password_token",
    "reset_password_expiry",
    "magic_link_token",
    "magic_link_expiry",
)


def hash_password(password: str) -> bytes:
    rounds = int(current_app.config.get("BCRYPT_ROUNDS", 12))
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))


def check_password(password: str, password_hash) -> bool:
    if not password_hash:
        return False
    if isinstance(password_hash, str):
        password_hash = password_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash)
    except ValueError:
        return False


def generate_token() -> str:
    return secrets.token_hex(32)


def normalize_profile_payload(payload: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field in PROFILE_FIELDS:
        aliases = PROFILE_FIELD_ALIASES.get(field, (field,))
        value = None
        for alias in aliases:
            if alias in payload:
                value = payload.get(alias)
                break
        if value is None:
            continue
        normalized[field] = str(value).strip()
    return normalized


def get_user_role(user_document) -> str:
    if not user_document:
        return "user"
    role = str(user_document.get("role") or "user").strip().lower()
    return role if role in ALLOWED_ROLES else "user"


def serialize_user(user_document) -> Dict:
    if not user_document:
        return {}

    sessions = []
    for session in user_document.get("sessions") or []:
        sessions.append(
            {
                "token_id": session.get("token_id"),
                "created_at": isoformat(session.get("created_at")),
                "ip": session.get("ip", ""),
                "browser": session.get("browser", ""),
                "os": session.get("os", ""),
                "device": session.get("device", ""),
            }
        )

    serialized = {
        "id": str(user_document.get("_id")),
        "username": user_document.get("username", "") or "",
        "email": user_document.get("email", "") or "",
        "role": get_user_role(user_document),
        "status": user_document.get("status") or "active",
        "email_verified": bool(user_document.get("email_verified")),
        "avatar_url": user_document.get("avatar_url") or DEFAULT_AVATAR_URL,
        "wishlist": [str(item) for item in user_document.get("wishlist") or []],
        "sessions": sessions,
        "created_at": isoformat(user_document.get("created_at")),
        "updated_at": isoformat(user_document.get("updated_at")),
    }
    for field in PROFILE_FIELDS:
        serialized[field] = user_document.get(field, "") or ""
    return serialized


def serialize_login_user(user_document) -> Dict:
    return {
        "id": str(user_document.get("_id")),
        "username": user_document.get("username", "") or "",
        "email": user_document.get("email", "") or "",
        "role": get_user_role(user_document),
        "avatar_url": user_document.get("avatar_url") or None,
    }


def load_current_user(db):
    """Resolve the JWT identity to an active user whose session is still open."""
    object_id = normalize_object_id_value(get_jwt_identity())
    if object_id is None:
        return None

    user = db.users.find_one({"_id": object_id})
    if not user or user.get("status", "active") != "active":
        return None

    session_id = get_jwt().get("sid")
    if session_id:
        open_sessions = {session.get("token_id") for session in user.get("sessions") or []}
        if session_id not in open_sessions:
            return None
    return user


def require_user(db):
    user = load_current_user(db)
    if not user:
        return None, (jsonify({"message": "Invalid or inactive user."}), 401)
    return user, None


def require_role(db, *roles: str):
    current_user, auth_error = require_user(db)
    if auth_error:
        return None, auth_error

    allowed = {role for role in roles if role}
    if allowed and get_user_role(current_user) not in allowed:
        return None, (jsonify({"message": "Forbidden: insufficient role"}), 403)
    return current_user, None


def require_admin_user(db):
    return require_role(db, "admin")


def optional_current_user(db):
    """Guest-tolerant lookup: bad or missing tokens resolve to ``None``."""
    try:
        verify_jwt_in_request(optional=True)
    except (JWTExtendedException, PyJWTError) as exc:
        current_app.logger.info("Ignoring invalid token on optional auth: %s", exc)
        return None
    if get_jwt_identity() is None:
        return None
    return load_current_user(db)


def build_session_record(token_id: str) -> Dict:
    agent = parse_user_agent(request.headers.get("User-Agent", "") or "")
    browser = f"{agent.browser.family or 'Unknown'} {agent.browser.version_string or ''}".strip()
    operating_system = f"{agent.os.family or 'Unknown'} {agent.os.version_string or ''}".strip()
    if agent.is_mobile:
        device = "mobile"
    elif agent.is_tablet:
        device = "tablet"
    else:
        device = "Desktop"
    return {
        "token_id": token_id,
        "created_at": utcnow(),
        "ip": get_client_ip(request),
        "browser": browser,
        "os": operating_system,
        "device": device,
    }


def open_session(db, user_document, extra_updates: Optional[Dict] = None, unset_fields=()) -> str:
    token_id = uuid4().hex
    update: Dict[str, Dict] = {
        "$push": {"sessions": build_session_record(token_id)},
        "$set": {"updated_at": utcnow(), **(extra_updates or {})},
    }
    if unset_fields:
        update["$unset"] = {field: "" for field in unset_fields}
    db.users.update_one({"_id": user_document["_id"]}, update)
    return token_id


def issue_tokens(user_document, session_id: str) -> Tuple[str, str]:
    claims = {"role": get_user_role(user_document), "sid": session_id}
    identity = str(user_document["_id"])
    access_token = create_access_token(identity=identity, additional_claims=claims)
    refresh_token = create_refresh_token(identity=identity, additional_claims=claims)
    return access_token, refresh_token


def attach_auth_cookies(response, user_document, session_id: str):
    access_token, refresh_token = issue_tokens(user_document, session_id)
    set_access_cookies(response, access_token)
    set_refresh_cookies(response, refresh_token)
    return response


def format_wait_message(remaining: timedelta) -> str:
    total_seconds = max(1, math.ceil(remaining.total_seconds()))
    minutes, seconds = divmod(total_seconds, 60)
    parts = []
    if minutes > 0:
        parts.append(f"{minutes} min")
    parts.append(f"{seconds} sec")
    return f"Please wait {' '.join(parts)} before requesting another email."


def register_auth_routes(app, db):
    @app.route("/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        username = str(payload.get("username", "")).strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not username or not email or not password:
            return jsonify({"message": "Username, email, and password are required."}), 400

        if db.users.find_one({"$or": [{"email": email}, {"username": username}]}):
            return jsonify({"message": "Username or email already in use."}), 409

        now = utcnow()
        token = generate_token()
        role = "admin" if email and email == app.config.get("ADMIN_EMAIL") else "user"
        user_document = {
            "username": username,
            "email": email,
            "password_hash": hash_password(password),
            "role": role,
            "status": "active",
            "email_verified": False,
            "verification_token": token,
            "verification_token_expiry": now + VERIFICATION_TOKEN_TTL,
            "sessions": [],
            "avatar_url": DEFAULT_AVATAR_URL,
            "wishlist": [],
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify({"message": "Username or email already in use."}), 409
        user_document["_id"] = result.inserted_id

        email_sent, email_error = send_verification_email(email, token)
        if not email_sent:
            app.logger.warning("Failed to send verification email to %s: %s", email, email_error)

        return (
            jsonify(
                {
                    "message": "Registration successful! Please check your email to verify your account.",
                    "user": {
                        "id": str(result.inserted_id),
                        "username": username,
                        "email": email,
                        "role": role,
                    },
                }
            ),
            201,
        )

    @app.route("/auth/verify-email", methods=["POST"])
    def verify_email():
        payload = request.get_json(silent=True) or {}
        token = str(payload.get("token", "")).strip()
        if not token:
            return jsonify({"message": "Verification token is required."}), 400

        user = db.users.find_one(
            {"verification_token": token, "verification_token_expiry": {"$gt": utcnow()}}
        )
        if not user:
            return jsonify({"message": "Invalid or expired token."}), 400

        session_id = open_session(
            db,
            user,
            extra_updates={"email_verified": True},
            unset_fields=("verification_token", "verification_token_expiry"),
        )
        response = jsonify(
            {
                "message": "Email verified and logged in successfully.",
                "user": serialize_login_user(user),
            }
        )
        return attach_auth_cookies(response, user, session_id)

    @app.route("/auth/resend-verification", methods=["POST"])
    def resend_verification():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        if not email:
            return jsonify({"message": "Email is required."}), 400

        user = db.users.find_one({"email": email})
        if not user:
            return jsonify({"message": "No account found with that email."}), 404
        if user.get("email_verified"):
            return jsonify({"message": "Email is already verified."}), 400

        now = utcnow()
        last_sent = user.get("last_verification_sent")
        if last_sent and now - last_sent < RESEND_VERIFICATION_WINDOW:
            remaining = RESEND_VERIFICATION_WINDOW - (now - last_sent)
            return jsonify({"message": format_wait_message(remaining)}), 429

        token = generate_token()
        db.users.update_one(
            {"_id": user["_id"]},
            {
                "$set": {
                    "verification_token": token,
                    "verification_token_expiry": now + VERIFICATION_TOKEN_TTL,
                    "last_verification_sent": now,
                    "updated_at": now,
                }
            },
        )

        email_sent, email_error = send_verification_email(email, token)
        if not email_sent:
            app.logger.warning("Failed to resend verification email to %s: %s", email, email_error)

        return jsonify({"message": "Verification email resent. Please check your inbox."})

    @app.route("/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or user.get("status", "active") != "active":
            return jsonify({"message": "Invalid credentials."}), 401
        if not check_password(password, user.get("password_hash")):
            return jsonify({"message": "Invalid credentials."}), 401
        if not user.get("email_verified"):
            return jsonify({"message": "Please verify your email before logging in."}), 403

        session_id = open_session(db, user)
        response = jsonify({"message": "Logged in successfully.", "user": serialize_login_user(user)})
        return attach_auth_cookies(response, user, session_id)

    @app.route("/auth/refresh", methods=["POST"])
    @jwt_required(refresh=True)
    def refresh_tokens():
        current_user, auth_error = require_user(db)
        if auth_error:
            return jsonify({"message": "Invalid refresh token."}), 401

        session_id = get_jwt().get("sid") or open_session(db, current_user)
        response = jsonify({"message": "Tokens refreshed."})
        return attach_auth_cookies(response, current_user, session_id)

    @app.route("/auth/request-password-reset", methods=["POST"])
    def request_password_reset():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        if not email:
            return jsonify({"message": "Email is required."}), 400

        user = db.users.find_one({"email": email})
        if not user:
            return jsonify({"message": "No account with that email."}), 404

        token = generate_token()
        db.users.update_one(
            {"_id": user["_id"]},
            {
                "$set": {
                    "reset_password_token": token,
                    "reset_password_expiry": utcnow() + RESET_TOKEN_TTL,
                }
            },
        )

        email_sent, email_error = send_reset_password_email(email, token)
        if not email_sent:
            app.logger.warning("Failed to send password reset email to %s: %s", email, email_error)

        return jsonify({"message": "Password reset email sent."})

    @app.route("/auth/reset-password", methods=["POST"])
    def reset_password():
        payload = request.get_json(silent=True) or {}
        token = str(payload.get("token", "")).strip()
        new_password = str(payload.get("new_password", payload.get("newPassword", "")) or "")

        if not token or not new_password:
            return jsonify({"message": "Token and new password are required."}), 400

        user = db.users.find_one(
            {"reset_password_token": token, "reset_password_expiry": {"$gt": utcnow()}}
        )
        if not user:
            return jsonify({"message": "Invalid or expired token."}), 400

        db.users.update_one(
            {"_id": user["_id"]},
            {
                "$set": {
                    "password_hash": hash_password(new_password),
                    "sessions": [],
                    "updated_at": utcnow(),
                },
                "$unset": {"reset_password_token": "", "reset_password_expiry": ""},
            },
        )
        return jsonify({"message": "Password has been reset successfully."})

    @app.route("/auth/logout", methods=["POST"])
    def logout():
        current_user = optional_current_user(db)
        session_id = get_jwt().get("sid") if current_user else None
        if session_id:
            db.users.update_one(
                {"_id": current_user["_id"]},
                {"$pull": {"sessions": {"token_id": session_id}}},
            )

        response = jsonify({"message": "Logged out successfully."})
        unset_jwt_cookies(response)
        return response

    @app.route("/auth/magic-link-request", methods=["POST"])
    def request_magic_link():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        if not email:
            return jsonify({"message": "Email is required."}), 400

        user = db.users.find_one({"email": email})
        if not user:
            return jsonify({"message": "No account with that email."}), 404

        token = generate_token()
        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"magic_link_token": token, "magic_link_expiry": utcnow() + MAGIC_LINK_TTL}},
        )

        backend_url = app.config.get("BACKEND_URL") or request.host_url
        email_sent, email_error = send_magic_link_email(email, token, backend_url)
        if not email_sent:
            app.logger.warning("Failed to send magic link to %s: %s", email, email_error)

        return jsonify({"message": "Magic link sent! Check your email."})

    @app.route("/auth/magic", methods=["GET"])
    def magic_login():
        token = str(request.args.get("token", "")).strip()
        if not token:
            return "Token is required.", 400

        user = db.users.find_one(
            {"magic_link_token": token, "magic_link_expiry": {"$gt": utcnow()}}
        )
        if not user:
            return "Invalid or expired magic link.", 400

        session_id = open_session(db, user, unset_fields=("magic_link_token", "magic_link_expiry"))
        response = redirect(f"{app.config['FRONTEND_URL'].rstrip('/')}/")
        return attach_auth_cookies(response, user, session_id)

    @app.route("/auth/me", methods=["GET"])
    @jwt_required()
    def get_me():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error
        return jsonify({"user": serialize_user(current_user)})

    @app.route("/auth/me", methods=["PUT"])
    @jwt_required()
    def update_me():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = normalize_profile_payload(payload)

        username = str(payload.get("username", "") or "").strip()
        if username and username != current_user.get("username"):
            if db.users.find_one({"username": username, "_id": {"$ne": current_user["_id"]}}):
                return jsonify({"message": "Username already in use."}), 409
            updates["username"] = username

        email = normalize_email(payload.get("email"))
        if email and email != current_user.get("email"):
            if db.users.find_one({"email": email, "_id": {"$ne": current_user["_id"]}}):
                return jsonify({"message": "Email already in use."}), 409
            updates["email"] = email

        if updates:
            updates["updated_at"] = utcnow()
            try:
                db.users.update_one({"_id": current_user["_id"]}, {"$set": updates})
            except DuplicateKeyError:
                return jsonify({"message": "Email already in use."}), 409

        refreshed = db.users.find_one({"_id": current_user["_id"]})
        return jsonify({"message": "Profile updated.", "user": serialize_user(refreshed)})

    @app.route("/auth/me", methods=["DELETE"])
    @jwt_required()
    def delete_me():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$set": {"status": "deleted", "updated_at": utcnow()}},
        )
        response = jsonify({"message": "Account deleted."})
        unset_jwt_cookies(response)
        return response

    @app.route("/auth/avatar", methods=["PUT"])
    @jwt_required()
    def set_avatar_url():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        avatar_url = str(payload.get("avatar_url", payload.get("avatarUrl", "")) or "").strip()
        if not avatar_url:
            return jsonify({"message": "No URL provided"}), 400

        db.users.update_one(
            {"_id": current_user["_id"]},
            {"$set": {"avatar_url": avatar_url, "updated_at": utcnow()}},
        )
        return jsonify({"avatar_url": avatar_url})

    @app.route("/auth/sessions", methods=["GET"])
    @jwt_required()
    def list_sessions():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        current_session = get_jwt().get("sid")
        sessions = serialize_user(current_user)["sessions"]
        for session in sessions:
            session["current"] = session["token_id"] == current_session
        return jsonify({"sessions": sessions})

    @app.route("/auth/sessions/<token_id>", methods=["DELETE"])
    @jwt_required()
    def revoke_session(token_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        result = db.users.update_one(
            {"_id": current_user["_id"]},
            {"$pull": {"sessions": {"token_id": token_id}}},
        )
        if not result.modified_count:
            return jsonify({"message": "Session not found."}), 404
        return jsonify({"message": "Session revoked."})
