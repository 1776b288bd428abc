import pytest

from storefront.contacts import validate_contact_payload


@pytest.fixture
def mail(monkeypatch):
    sent = {"inbound": [], "replies": []}

    def inbound(name, email, phone, message):
        sent["inbound"].append((name, email, phone, message))
        return True, None

    def reply(recipient, name, message=None):
        sent["replies"].append((recipient, name, message))
        return False, "Resend API key is not configured."

    monkeypatch.setattr("storefront.contacts.send_inbound_contact_email", inbound)
    monkeypatch.setattr("storefront.contacts.send_contact_auto_reply", reply)
    return sent


def test_validate_contact_payload_reports_each_field():
    errors = validate_contact_payload({"email": "nope"})
    assert [error["field"] for error in errors] == ["name", "email", "message"]
    assert validate_contact_payload({"name": "A", "email": "a@b.co", "message": "hi"}) == []


def test_guest_contact_is_saved_and_broadcast(client, db, mail, emitted):
    response = client.post(
        "/contacts",
        json={"name": " Ada ", "email": "ADA@px39.test", "phone": "123", "message": "Where is my parcel?"},
        headers={"X-Forwarded-For": "203.0.113.9"},
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["message"] == "Contact saved"
    assert body["data"]["email"] == "ada@px39.test"
    assert body["data"]["read"] is False

    stored = db.contacts.find_one({})
    assert stored["ip"] == "203.0.113.9"
    assert "user" not in stored
    assert mail["inbound"] == [("Ada", "ada@px39.test", "123", "Where is my parcel?")]
    assert emitted[0][:2] == (None, "contacts:new")


def test_logged_in_contact_records_user(make_user, login, db, mail):
    user = make_user()
    response = login(user).post(
        "/contacts", json={"name": "Ada", "email": user["email"], "message": "Hello"}
    )
    assert response.get_json()["data"]["user"]["email"] == user["email"]
    assert db.contacts.find_one({})["user"] == user["_id"]


def test_invalid_contact_returns_errors(client, mail):
    response = client.post("/contacts", json={"name": "", "email": "bad", "message": ""})
    assert response.status_code == 400
    assert len(response.get_json()["errors"]) == 3
    assert mail["inbound"] == []


def test_admin_manages_contacts(client, admin_client, db, mail, emitted):
    contact_id = client.post(
        "/contacts", json={"name": "Ada", "email": "ada@px39.test", "message": "Hello"}
    ).get_json()["data"]["id"]

    listing = admin_client.get("/contacts").get_json()
    assert [contact["id"] for contact in listing] == [contact_id]

    assert admin_client.patch(f"/contacts/{contact_id}/read").get_json()["read"] is True

    assert admin_client.post(f"/contacts/{contact_id}/reply", json={}).status_code == 400
    replied = admin_client.post(f"/contacts/{contact_id}/reply", json={"response": "On its way"}).get_json()
    assert replied["meta"]["last_reply"]["message"] == "On its way"
    assert mail["replies"] == [("ada@px39.test", "Ada", "On its way")]

    replied_event = next(payload for _, event, payload in emitted if event == "contacts:replied")
    assert replied_event["id"] == contact_id
    assert replied_event["read"] is True

    assert admin_client.delete(f"/contacts/{contact_id}").status_code == 200
    assert db.contacts.count_documents({}) == 0
    assert admin_client.patch(f"/contacts/{contact_id}/read").status_code == 404


def test_contact_admin_routes_need_admin(make_user, login):
    shopper = login(make_user())
    assert shopper.get("/contacts").status_code == 403


def test_contact_ip_ignores_client_supplied_forwarded_hops(client, db, mail):
    response = client.post(
        "/contacts",
        json={"name": "Eve", "email": "eve@px39.test", "message": "Hello"},
        headers={"X-Forwarded-For": "1.1.1.1, 203.0.113.9"},
    )
    assert response.status_code == 201
    assert db.contacts.find_one({})["ip"] == "203.0.113.9"
