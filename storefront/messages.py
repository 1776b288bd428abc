from typing import Dict, List

from flask import current_app, jsonify, request
from flask_jwt_extended import jwt_required

from .auth import require_admin_user, require_user
from .helpers import (
    fetch_user_summaries,
    normalize_object_id_value,
    serialize_document,
    truncate_preview,
    utcnow,
)
from .notifications import notify_user

PARTICIPANT_FIELDS = ("username", "email")


def emit_to_user(user_id, event: str, payload):
    hub = current_app.extensions.get("realtime")
    if hub is not None:
        hub.emit_to_user(str(user_id), event, payload)


def serialize_message(message_document, users: Dict) -> Dict:
    serialized = serialize_document(message_document)
    for field in ("from", "to"):
        user_id = message_document.get(field)
        serialized[field] = users.get(user_id) or (str(user_id) if user_id else None)
    return serialized


def serialize_messages(db, message_documents) -> List[Dict]:
    user_ids = set()
    for document in message_documents:
        user_ids.update(value for value in (document.get("from"), document.get("to")) if value)
    users = fetch_user_summaries(db, list(user_ids), PARTICIPANT_FIELDS)
    return [serialize_message(document, users) for document in message_documents]


def serialize_conversation(conversation_document, users: Dict) -> Dict:
    serialized = serialize_document(conversation_document)
    serialized["participants"] = [
        users.get(participant) or str(participant)
        for participant in conversation_document.get("participants") or []
    ]
    return serialized


def register_message_routes(app, db):
    def load_conversation(conversation_id: str, current_user):
        object_id = normalize_object_id_value(conversation_id)
        if object_id is None:
            return None, (jsonify({"message": "Invalid conversation id"}), 400)

        conversation = db.conversations.find_one({"_id": object_id})
        if not conversation:
            return None, (jsonify({"message": "Conversation not found"}), 404)

        if current_user["_id"] not in (conversation.get("participants") or []):
            return None, (jsonify({"message": "Not a participant"}), 403)
        return conversation, None

    def mark_seen(conversation, current_user) -> List:
        unseen = [
            document["_id"]
            for document in db.messages.find(
                {
                    "conversation": conversation["_id"],
                    "from": {"$ne": current_user["_id"]},
                    "seen_by": {"$ne": current_user["_id"]},
                },
                {"_id": 1},
            )
        ]
        if not unseen:
            return unseen

        db.messages.update_many(
            {"_id": {"$in": unseen}},
            {"$addToSet": {"seen_by": current_user["_id"]}},
        )
        for participant in conversation.get("participants") or []:
            if participant == current_user["_id"]:
                continue
            emit_to_user(
                participant,
                "message_seen",
                {
                    "conversation_id": str(conversation["_id"]),
                    "message_ids": [str(message_id) for message_id in unseen],
                    "seen_by": str(current_user["_id"]),
                },
            )
        return unseen

    def deliver_message(message_document, sender_id, recipients):
        serialized = serialize_messages(db, [message_document])[0]
        for recipient in recipients:
            emit_to_user(recipient, "message", serialized)
            emit_to_user(
                sender_id,
                "message_delivered",
                {
                    "conversation_id": str(message_document["conversation"]),
                    "message_id": str(message_document["_id"]),
                    "delivered_to": str(recipient),
                },
            )
        return serialized

    @app.route("/admin/messages", methods=["POST"])
    @jwt_required()
    def admin_send_message():
        admin_user, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        raw_user_id = payload.get("user_id", payload.get("userId"))
        subject = str(payload.get("subject", "") or "").strip()
        content = str(payload.get("content", "") or "")

        if not raw_user_id or not content.strip():
            return jsonify({"message": "userId and content are required"}), 400

        target_id = normalize_object_id_value(raw_user_id)
        if target_id is None:
            return jsonify({"message": "Invalid userId"}), 400

        if not db.users.find_one({"_id": target_id}, {"_id": 1}):
            return jsonify({"message": "Target user not found"}), 404

        now = utcnow()
        conversation = {
            "participants": [admin_user["_id"], target_id],
            "subject": subject,
            "last_message_at": now,
            "created_at": now,
            "updated_at": now,
        }
        conversation["_id"] = db.conversations.insert_one(conversation).inserted_id

        message = {
            "conversation": conversation["_id"],
            "from": admin_user["_id"],
            "to": target_id,
            "content": content,
            "likes": [],
            "seen_by": [],
            "meta": {},
            "created_at": now,
            "updated_at": now,
        }
        message["_id"] = db.messages.insert_one(message).inserted_id

        notify_user(
            db,
            target_id,
            "message",
            f"Message: {subject}" if subject else "New message from admin",
            truncate_preview(content),
            {
                "conversation_id": str(conversation["_id"]),
                "message_id": str(message["_id"]),
                "url": f"/messages/{conversation['_id']}",
            },
        )
        serialized_message = deliver_message(message, admin_user["_id"], [target_id])

        users = fetch_user_summaries(db, conversation["participants"], PARTICIPANT_FIELDS)
        return (
            jsonify(
                {
                    "conversation": serialize_conversation(conversation, users),
                    "message": serialized_message,
                }
            ),
            201,
        )

    @app.route("/messages", methods=["GET"])
    @jwt_required()
    def list_conversations():
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        conversations = list(
            db.conversations.find({"participants": current_user["_id"]}).sort(
                [("last_message_at", -1), ("_id", -1)]
            )
        )
        conversation_ids = [conversation["_id"] for conversation in conversations]

        last_messages: Dict = {}
        if conversation_ids:
            cursor = db.messages.find({"conversation": {"$in": conversation_ids}}).sort(
                [("created_at", -1), ("_id", -1)]
            )
            for document in cursor:
                last_messages.setdefault(document["conversation"], document)

        participant_ids = set()
        for conversation in conversations:
            participant_ids.update(conversation.get("participants") or [])
        users = fetch_user_summaries(db, list(participant_ids), PARTICIPANT_FIELDS)

        enriched = []
        for conversation in conversations:
            serialized = serialize_conversation(conversation, users)
            last_message = last_messages.get(conversation["_id"])
            serialized["last_message"] = (
                {
                    "message_id": str(last_message["_id"]),
                    "content": last_message.get("content", ""),
                    "from": str(last_message.get("from")),
                    "created_at": serialize_document(last_message).get("created_at"),
                }
                if last_message
                else None
            )
            enriched.append(serialized)
        return jsonify({"conversations": enriched})

    @app.route("/messages/<conversation_id>", methods=["GET"])
    @jwt_required()
    def get_conversation_messages(conversation_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        conversation, load_error = load_conversation(conversation_id, current_user)
        if load_error:
            return load_error

        mark_seen(conversation, current_user)

        messages = list(
            db.messages.find({"conversation": conversation["_id"]}).sort(
                [("created_at", 1), ("_id", 1)]
            )
        )
        users = fetch_user_summaries(db, conversation.get("participants") or [], PARTICIPANT_FIELDS)
        return jsonify(
            {
                "conversation": serialize_conversation(conversation, users),
                "messages": serialize_messages(db, messages),
            }
        )

    @app.route("/messages/<conversation_id>/seen", methods=["POST"])
    @jwt_required()
    def mark_conversation_seen(conversation_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        conversation, load_error = load_conversation(conversation_id, current_user)
        if load_error:
            return load_error

        return jsonify({"updated": len(mark_seen(conversation, current_user))})

    @app.route("/messages/<conversation_id>/reply", methods=["POST"])
    @jwt_required()
    def reply_to_conversation(conversation_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        content = str(payload.get("content", "") or "")
        if not content.strip():
            return jsonify({"message": "content is required"}), 400

        conversation, load_error = load_conversation(conversation_id, current_user)
        if load_error:
            return load_error

        recipients = [
            participant
            for participant in conversation.get("participants") or []
            if participant != current_user["_id"]
        ]
        now = utcnow()
        message = {
            "conversation": conversation["_id"],
            "from": current_user["_id"],
            "to": recipients[0] if recipients else current_user["_id"],
            "content": content,
            "likes": [],
            "seen_by": [],
            "meta": {},
            "created_at": now,
            "updated_at": now,
        }
        message["_id"] = db.messages.insert_one(message).inserted_id
        db.conversations.update_one(
            {"_id": conversation["_id"]},
            {"$set": {"last_message_at": now, "updated_at": now}},
        )

        for recipient in recipients:
            notify_user(
                db,
                recipient,
                "message",
                "New message",
                truncate_preview(content),
                {
                    "conversation_id": str(conversation["_id"]),
                    "message_id": str(message["_id"]),
                    "url": f"/messages/{conversation['_id']}",
                },
            )
        serialized_message = deliver_message(message, current_user["_id"], recipients)
        return jsonify({"message": serialized_message}), 201

    @app.route("/messages/message/<message_id>/like", methods=["POST"])
    @jwt_required()
    def toggle_message_like(message_id: str):
        current_user, auth_error = require_user(db)
        if auth_error:
            return auth_error

        object_id = normalize_object_id_value(message_id)
        if object_id is None:
            return jsonify({"message": "Invalid message id"}), 400

        message = db.messages.find_one({"_id": object_id})
        if not message:
            return jsonify({"message": "Message not found"}), 404

        already_liked = current_user["_id"] in (message.get("likes") or [])
        if already_liked:
            update = {"$pull": {"likes": current_user["_id"]}}
        else:
            update = {"$addToSet": {"likes": current_user["_id"]}}
        update["$set"] = {"updated_at": utcnow()}
        db.messages.update_one({"_id": object_id}, update)

        if message.get("from") != current_user["_id"]:
            username = current_user.get("username") or "Someone"
            notify_user(
                db,
                message.get("from"),
                "message_interaction",
                "Like removed" if already_liked else "Message liked",
                f"{username} {'removed like from' if already_liked else 'liked'} your message.",
                {
                    "conversation_id": str(message.get("conversation")),
                    "message_id": str(object_id),
                },
            )

        refreshed = db.messages.find_one({"_id": object_id})
        serialized = serialize_messages(db, [refreshed])[0]
        conversation = db.conversations.find_one({"_id": message.get("conversation")}) or {}
        for participant in conversation.get("participants") or []:
            emit_to_user(participant, "message_updated", {"message": serialized})
        return jsonify({"message": serialized})
