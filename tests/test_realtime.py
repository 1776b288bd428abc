import pytest


@pytest.fixture
def socketio(app):
    return app.extensions["socketio"]


@pytest.fixture
def hub(app):
    return app.extensions["realtime"]


def test_register_uses_authenticated_identity(app, socketio, hub, admin_client):
    socket_client = socketio.test_client(app, flask_test_client=admin_client)
    socket_client.emit("register", "5f0000000000000000000000")

    admin_id = str(admin_client.user["_id"])
    assert hub.online_user_ids() == [admin_id]

    updates = [packet for packet in socket_client.get_received() if packet["name"] == "online:update"]
    assert updates[-1]["args"][0][0]["id"] == admin_id
    assert updates[-1]["args"][0][0]["sockets"] == 1

    ack = socket_client.emit("online:get", callback=True)
    assert ack["ok"] is True
    assert [user["id"] for user in ack["users"]] == [admin_id]

    socket_client.disconnect()
    assert hub.online_user_ids() == []


def test_online_list_is_admin_only(app, socketio, hub, make_user, login):
    user = make_user()
    socket_client = socketio.test_client(app, flask_test_client=login(user))
    socket_client.emit("register")
    assert hub.socket_count(str(user["_id"])) == 1

    assert socket_client.emit("online:get", callback=True) == {"error": "unauthorized"}
    socket_client.disconnect()


def test_guest_cannot_register_as_another_user(app, socketio, hub, admin_client):
    admin_id = str(admin_client.user["_id"])
    guest_socket = socketio.test_client(app)
    guest_socket.emit("register", admin_id)

    assert hub.online_user_ids() == []
    assert guest_socket.emit("online:get", callback=True) == {"error": "unauthorized"}

    hub.emit_to_user(admin_id, "notification", {"title": "Private"})
    assert [packet["name"] for packet in guest_socket.get_received()] == []
    guest_socket.disconnect()


def test_emit_to_user_reaches_only_that_room(app, socketio, hub, make_user, login):
    alice, bob = make_user(), make_user()
    alice_socket = socketio.test_client(app, flask_test_client=login(alice))
    bob_socket = socketio.test_client(app, flask_test_client=login(bob))
    alice_socket.emit("register")
    bob_socket.emit("register")
    alice_socket.get_received()
    bob_socket.get_received()

    hub.emit_to_user(alice["_id"], "notification", {"title": "Hi"})

    assert [packet["name"] for packet in alice_socket.get_received()] == ["notification"]
    assert bob_socket.get_received() == []


def test_presence_tracks_multiple_sockets(hub):
    hub.add_online("u1", "sid-a", {"role": "admin"})
    hub.add_online("u1", "sid-b")
    assert hub.socket_count("u1") == 2
    assert hub.socket_user("sid-a") == {"role": "admin"}

    assert hub.remove_online_by_socket("sid-a") == "u1"
    assert hub.online_user_ids() == ["u1"]
    assert hub.remove_online_by_socket("sid-b") == "u1"
    assert hub.online_user_ids() == []
    assert hub.remove_online_by_socket("sid-b") is None
