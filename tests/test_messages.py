import pytest


@pytest.fixture
def shopper(make_user):
    return make_user(username="ada")


@pytest.fixture
def shopper_client(shopper, login):
    return login(shopper)


@pytest.fixture
def conversation(admin_client, shopper):
    response = admin_client.post(
        "/admin/messages",
        json={"userId": str(shopper["_id"]), "subject": "Your order", "content": "Hello there"},
    )
    assert response.status_code == 201
    return response.get_json()


def test_admin_message_creates_conversation_and_notifies(admin_client, shopper, conversation, db, emitted):
    assert conversation["message"]["content"] == "Hello there"
    assert conversation["message"]["to"]["username"] == "ada"
    assert len(conversation["conversation"]["participants"]) == 2

    note = db.notifications.find_one({"user": shopper["_id"]})
    assert note["title"] == "Message: Your order"
    assert note["type"] == "message"


def test_admin_message_emits_delivery_events(admin_client, shopper, emitted):
    response = admin_client.post(
        "/admin/messages", json={"userId": str(shopper["_id"]), "content": "Ping"}
    )
    message_id = response.get_json()["message"]["id"]
    events = [(user, event) for user, event, payload in emitted]
    assert (str(shopper["_id"]), "message") in events
    assert (str(admin_client.user["_id"]), "message_delivered") in events
    delivered = next(payload for user, event, payload in emitted if event == "message_delivered")
    assert delivered["message_id"] == message_id
    assert delivered["delivered_to"] == str(shopper["_id"])


def test_admin_message_validation(admin_client, shopper_client):
    assert admin_client.post("/admin/messages", json={"userId": "x"}).status_code == 400
    assert admin_client.post("/admin/messages", json={"userId": "bad", "content": "hi"}).status_code == 400
    missing = admin_client.post(
        "/admin/messages", json={"userId": "5f0000000000000000000000", "content": "hi"}
    )
    assert missing.status_code == 404
    assert shopper_client.post("/admin/messages", json={}).status_code == 403


def test_conversation_list_includes_last_message(shopper_client, conversation):
    conversations = shopper_client.get("/messages").get_json()["conversations"]
    assert len(conversations) == 1
    assert conversations[0]["last_message"]["content"] == "Hello there"


def test_opening_conversation_marks_messages_seen(admin_client, shopper, shopper_client, conversation, db, emitted):
    conversation_id = conversation["conversation"]["id"]
    body = shopper_client.get(f"/messages/{conversation_id}").get_json()
    assert [message["content"] for message in body["messages"]] == ["Hello there"]

    stored = db.messages.find_one({})
    assert shopper["_id"] in stored["seen_by"]

    seen_events = [payload for user, event, payload in emitted if event == "message_seen"]
    assert seen_events == [
        {
            "conversation_id": conversation_id,
            "message_ids": [conversation["message"]["id"]],
            "seen_by": str(shopper["_id"]),
        }
    ]

    assert shopper_client.post(f"/messages/{conversation_id}/seen").get_json() == {"updated": 0}


def test_reply_notifies_other_participant(admin_client, shopper_client, conversation, db):
    conversation_id = conversation["conversation"]["id"]
    assert shopper_client.post(f"/messages/{conversation_id}/reply", json={"content": " "}).status_code == 400

    response = shopper_client.post(f"/messages/{conversation_id}/reply", json={"content": "Thanks!"})
    assert response.status_code == 201
    assert response.get_json()["message"]["to"]["username"] == "boss"

    admin_note = db.notifications.find_one({"user": admin_client.user["_id"], "title": "New message"})
    assert admin_note["body"] == "Thanks!"

    assert admin_client.post(f"/messages/{conversation_id}/seen").get_json() == {"updated": 1}


def test_non_participant_cannot_read_conversation(make_user, login, conversation):
    outsider = login(make_user())
    conversation_id = conversation["conversation"]["id"]
    assert outsider.get(f"/messages/{conversation_id}").status_code == 403
    assert outsider.get("/messages/not-an-id").status_code == 400
    assert outsider.get("/messages/5f0000000000000000000000").status_code == 404


def test_like_toggle_notifies_author(admin_client, shopper_client, conversation, db, emitted):
    message_id = conversation["message"]["id"]

    liked = shopper_client.post(f"/messages/message/{message_id}/like").get_json()["message"]
    assert len(liked["likes"]) == 1
    unliked = shopper_client.post(f"/messages/message/{message_id}/like").get_json()["message"]
    assert unliked["likes"] == []

    titles = [
        note["title"]
        for note in db.notifications.find({"user": admin_client.user["_id"], "type": "message_interaction"})
    ]
    assert sorted(titles) == ["Like removed", "Message liked"]
    assert any(event == "message_updated" for user, event, payload in emitted)
