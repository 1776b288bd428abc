from types import SimpleNamespace

import pytest
from pywebpush import WebPushException

from storefront.notifications import (
    NotificationError,
    build_push_payload,
    create_and_emit_notification,
    notify_user,
)
from storefront.push import send_push_to_user


def test_duplicate_notifications_are_debounced(app, db, make_user, emitted):
    user = make_user()
    with app.app_context():
        first = create_and_emit_notification(db, user["_id"], "order", "Order placed", "x", {"order_id": "o1"})
        second = create_and_emit_notification(db, user["_id"], "order", "Order placed", "x", {"order_id": "o1"})
        other = create_and_emit_notification(db, user["_id"], "order", "Order placed", "x", {"order_id": "o2"})

    assert first["id"] == second["id"]
    assert other["id"] != first["id"]
    assert db.notifications.count_documents({"user": user["_id"]}) == 2
    assert [event for _, event, _ in emitted] == ["notification"] * 3


def test_invalid_notification_arguments(app, db):
    with app.app_context():
        with pytest.raises(NotificationError):
            create_and_emit_notification(db, "not-an-id", "order", "Title")
        assert notify_user(db, None, "order", "Title") is None


def test_push_payload_defaults_url():
    payload = build_push_payload({"title": "Hi", "body": None, "data": {"order_id": "1"}})
    assert payload["data"] == {"order_id": "1", "url": "/"}
    assert payload["body"] == ""


def test_list_and_mark_notifications(make_user, login, app, db):
    user = make_user()
    user_client = login(user)
    with app.app_context():
        first = create_and_emit_notification(db, user["_id"], "system", "One")
        create_and_emit_notification(db, user["_id"], "system", "Two")

    notes = user_client.get("/notifications").get_json()["notifications"]
    assert {note["title"] for note in notes} == {"One", "Two"}

    marked = user_client.post(f"/notifications/{first['id']}/read").get_json()
    assert marked["notification"]["read"] is True
    unread = user_client.get("/notifications?unread=true").get_json()["notifications"]
    assert [note["title"] for note in unread] == ["Two"]

    assert user_client.post("/notifications/all/read").get_json() == {"success": True}
    assert user_client.get("/notifications?unread=true").get_json()["notifications"] == []


def test_cannot_mark_someone_elses_notification(make_user, login, app, db):
    owner = make_user()
    with app.app_context():
        note = create_and_emit_notification(db, owner["_id"], "system", "Private")
    intruder = login(make_user())
    assert intruder.post(f"/notifications/{note['id']}/read").status_code == 404
    assert intruder.post("/notifications/garbage/read").status_code == 404


def test_push_subscription_upsert_and_unsubscribe(make_user, login, db):
    user = make_user()
    user_client = login(user)
    subscription = {"endpoint": "https://push.test/abc", "keys": {"p256dh": "k", "auth": "a"}}

    assert user_client.post("/push/subscribe", json={}).status_code == 400
    assert user_client.post("/push/subscribe", json={"subscription": subscription}).get_json() == {"success": True}
    updated = user_client.post("/push/subscribe", json={"subscription": subscription}).get_json()
    assert updated["message"] == "Subscription updated"
    assert db.push_subscriptions.count_documents({"user": user["_id"]}) == 1

    assert user_client.post("/push/unsubscribe", json={}).status_code == 400
    user_client.post("/push/unsubscribe", json={"endpoint": "https://push.test/abc"})
    assert db.push_subscriptions.count_documents({}) == 0


def test_public_key_endpoint(client):
    assert client.get("/push/public-key").get_json() == {"public_key": None}


def test_send_push_removes_gone_subscriptions(app, db, make_user, monkeypatch):
    user = make_user()
    db.push_subscriptions.insert_many(
        [
            {"user": user["_id"], "subscription": {"endpoint": "https://push.test/gone"}},
            {"user": user["_id"], "subscription": {"endpoint": "https://push.test/live"}},
        ]
    )
    delivered = []

    def fake_webpush(subscription_info, data, vapid_private_key, vapid_claims):
        if subscription_info["endpoint"].endswith("gone"):
            raise WebPushException("gone", response=SimpleNamespace(status_code=410))
        delivered.append(subscription_info["endpoint"])

    monkeypatch.setattr("storefront.push.webpush", fake_webpush)
    app.config.update(VAPID_PUBLIC_KEY="public", VAPID_PRIVATE_KEY="private")

    with app.app_context():
        results = send_push_to_user(db, user["_id"], {"title": "Hi"})

    assert delivered == ["https://push.test/live"]
    assert {"endpoint": "https://push.test/gone", "ok": False, "removed": True} in results
    remaining = [doc["subscription"]["endpoint"] for doc in db.push_subscriptions.find({})]
    assert remaining == ["https://push.test/live"]


def test_send_push_is_noop_without_vapid_keys(app, db, make_user):
    user = make_user()
    with app.app_context():
        assert send_push_to_user(db, user["_id"], {"title": "Hi"}) is None
