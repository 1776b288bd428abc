import logging
import threading
from typing import Dict, List, Optional, Set

from flask import request
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_socketio import SocketIO, join_room
from jwt.exceptions import PyJWTError

from .auth import get_user_role, load_current_user
from .helpers import normalize_object_id_list

logger = logging.getLogger(__name__)


class RealtimeHub:
    """Presence map plus the emit helpers route handlers use."""

    def __init__(self, socketio: SocketIO):
        self.socketio = socketio
        self._online: Dict[str, Set[str]] = {}
        self._socket_users: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def add_online(self, user_id: str, sid: str, user_document: Optional[Dict] = None):
        with self._lock:
            self._online.setdefault(str(user_id), set()).add(sid)
            self._socket_users[sid] = user_document or {}

    def remove_online_by_socket(self, sid: str) -> Optional[str]:
        with self._lock:
            self._socket_users.pop(sid, None)
            for user_id, sockets in list(self._online.items()):
                if sid in sockets:
                    sockets.discard(sid)
                    if not sockets:
                        del self._online[user_id]
                    return user_id
        return None

    def socket_user(self, sid: str) -> Dict:
        with self._lock:
            return dict(self._socket_users.get(sid) or {})

    def online_user_ids(self) -> List[str]:
        with self._lock:
            return list(self._online.keys())

    def socket_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._online.get(str(user_id), ()))

    def online_users_detailed(self, db) -> List[Dict]:
        ids = normalize_object_id_list(self.online_user_ids())
        if not ids:
            return []
        users = db.users.find(
            {"_id": {"$in": ids}},
            {"username": 1, "email": 1, "avatar_url": 1, "role": 1},
        )
        return [
            {
                "id": str(user["_id"]),
                "username": user.get("username", ""),
                "email": user.get("email", ""),
                "avatar_url": user.get("avatar_url", ""),
                "role": user.get("role") or "user",
                "sockets": self.socket_count(str(user["_id"])),
            }
            for user in users
        ]

    def emit_to_user(self, user_id, event: str, payload):
        if user_id is None:
            return
        try:
            self.socketio.emit(event, payload, to=str(user_id))
        except Exception as exc:
            logger.warning("Socket emit '%s' to %s failed: %s", event, user_id, exc)

    def broadcast(self, event: str, payload):
        try:
            self.socketio.emit(event, payload)
        except Exception as exc:
            logger.warning("Socket broadcast '%s' failed: %s", event, exc)


def resolve_socket_user(db) -> Optional[Dict]:
    """Active user behind the handshake token, or ``None`` for guests."""
    try:
        verify_jwt_in_request(optional=True)
    except (JWTExtendedException, PyJWTError):
        return None
    if get_jwt_identity() is None:
        return None
    return load_current_user(db)


def register_socket_handlers(socketio: SocketIO, hub: RealtimeHub, db):
    @socketio.on("register")
    def on_register(claimed_id=None):
        user_document = resolve_socket_user(db)
        if not user_document:
            logger.info("Socket %s register refused without a valid token (claimed %s)", request.sid, claimed_id)
            return

        user_id = str(user_document["_id"])
        hub.add_online(user_id, request.sid, {"role": get_user_role(user_document)})
        join_room(user_id)
        socketio.emit("online:update", hub.online_users_detailed(db))

    @socketio.on("online:get")
    def on_online_get(payload=None):
        user_document = hub.socket_user(request.sid)
        if user_document.get("role") != "admin":
            return {"error": "unauthorized"}
        return {"ok": True, "users": hub.online_users_detailed(db)}

    @socketio.on("disconnect")
    def on_disconnect(*args):
        if hub.remove_online_by_socket(request.sid) is not None:
            socketio.emit("online:update", hub.online_users_detailed(db))
