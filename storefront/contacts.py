from typing import Dict, List

from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required

from .auth import optional_current_user, require_admin_user
from .emails import send_contact_auto_reply, send_inbound_contact_email
from .helpers import (
    fetch_user_summaries,
    get_client_ip,
    is_valid_email,
    normalize_email,
    normalize_object_id_value,
    serialize_document,
    utcnow,
)

CONTACT_USER_FIELDS = ("username", "email", "avatar_url")


def validate_contact_payload(payload: Dict) -> List[Dict[str, str]]:
    errors: List[Dict[str, str]] = []
    if not str(payload.get("name", "") or "").strip():
        errors.append({"field": "name", "message": "Name required"})
    if not is_valid_email(payload.get("email")):
        errors.append({"field": "email", "message": "Valid email required"})
    if not str(payload.get("message", "") or "").strip():
        errors.append({"field": "message", "message": "Message required"})
    return errors


def serialize_contacts(db, contact_documents) -> List[Dict]:
    users = fetch_user_summaries(
        db, [document.get("user") for document in contact_documents if document.get("user")], CONTACT_USER_FIELDS
    )
    serialized = []
    for document in contact_documents:
        item = serialize_document(document)
        if document.get("user") is not None:
            item["user"] = users.get(document["user"]) or str(document["user"])
        serialized.append(item)
    return serialized


def broadcast(event: str, payload):
    hub = current_app.extensions.get("realtime")
    if hub is not None:
        hub.broadcast(event, payload)


def register_contact_routes(app, db):
    def load_contact(contact_id: str):
        object_id = normalize_object_id_value(contact_id)
        contact = db.contacts.find_one({"_id": object_id}) if object_id is not None else None
        if not contact:
            return None, (jsonify({"message": "Contact not found"}), 404)
        return contact, None

    @app.route("/contacts", methods=["POST"])
    def create_contact():
        payload = request.get_json(silent=True) or {}
        errors = validate_contact_payload(payload)
        if errors:
            return jsonify({"errors": errors}), 400

        current_user = optional_current_user(db)
        name = str(payload.get("name")).strip()
        email = normalize_email(payload.get("email"))
        phone = str(payload.get("phone", "") or "").strip()
        message = str(payload.get("message")).strip()

        now = utcnow()
        contact = {
            "name": name,
            "email": email,
            "phone": phone,
            "message": message,
            "ip": get_client_ip(request),
            "read": False,
            "archived": False,
            "meta": {},
            "created_at": now,
            "updated_at": now,
        }
        if current_user:
            contact["user"] = current_user["_id"]
        contact["_id"] = db.contacts.insert_one(contact).inserted_id

        email_sent, email_error = send_inbound_contact_email(name, email, phone, message)
        if not email_sent:
            app.logger.warning("Inbound contact email failed: %s", email_error)

        serialized = serialize_contacts(db, [contact])[0]
        broadcast("contacts:new", serialized)
        return jsonify({"message": "Contact saved", "data": serialized}), 201

    @app.route("/contacts", methods=["GET"])
    @jwt_required()
    def list_contacts():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        contacts = list(db.contacts.find({}).sort([("created_at", -1), ("_id", -1)]))
        return jsonify(serialize_contacts(db, contacts))

    @app.route("/contacts/<contact_id>/read", methods=["PATCH"])
    @jwt_required()
    def mark_contact_read(contact_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        contact, load_error = load_contact(contact_id)
        if load_error:
            return load_error

        db.contacts.update_one({"_id": contact["_id"]}, {"$set": {"read": True, "updated_at": utcnow()}})
        refreshed = db.contacts.find_one({"_id": contact["_id"]})
        return jsonify(serialize_contacts(db, [refreshed])[0])

    @app.route("/contacts/<contact_id>/reply", methods=["POST"])
    @jwt_required()
    def reply_contact(contact_id: str):
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        response_text = str(payload.get("response", "") or "").strip()
        if not response_text:
            return jsonify({"message": "Response message required"}), 400

        contact, load_error = load_contact(contact_id)
        if load_error:
            return load_error

        email_sent, email_error = send_contact_auto_reply(contact.get("email"), contact.get("name"), response_text)
        if not email_sent:
            app.logger.warning("Contact reply email to %s failed: %s", contact.get("email"), email_error)

        now = utcnow()
        db.contacts.update_one(
            {"_id": contact["_id"]},
            {
                "$set": {
                    "read": True,
                    "meta.last_reply": {
                        "message": response_text,
                        "admin": admin_user["_id"],
                        "created_at": now,
                    },
                    "updated_at": now,
                }
            },
        )
        refreshed = db.contacts.find_one({"_id": contact["_id"]})
        serialized = serialize_contacts(db, [refreshed])[0]
        broadcast(
            "contacts:replied",
            {
                "id": serialized["id"],
                "last_reply": (serialized.get("meta") or {}).get("last_reply"),
                "read": serialized.get("read"),
            },
        )
        return jsonify(serialized)

    @app.route("/contacts/<contact_id>", methods=["DELETE"])
    @jwt_required()
    def delete_contact(contact_id: str):
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        object_id = normalize_object_id_value(contact_id)
        if object_id is not None:
            db.contacts.delete_one({"_id": object_id})
        return jsonify({"message": "Deleted"})
