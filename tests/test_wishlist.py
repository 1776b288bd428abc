def test_wishlist_add_list_remove(make_user, login, make_product, db):
    user = make_user()
    user_client = login(user)
    first = make_product(name="First")
    second = make_product(name="Second")
    hidden = make_product(name="Hidden", hidden=True)

    for product in (second, first, hidden, first):
        response = user_client.post(f"/api/wishlist/{product['_id']}")
        assert response.get_json() == {"success": True}

    stored = db.users.find_one({"_id": user["_id"]})["wishlist"]
    assert stored == [second["_id"], first["_id"], hidden["_id"]]

    listing = user_client.get("/api/wishlist").get_json()
    assert [item["name"] for item in listing] == ["Second", "First"]

    user_client.delete(f"/api/wishlist/{second['_id']}")
    assert [item["name"] for item in user_client.get("/api/wishlist").get_json()] == ["First"]


def test_wishlist_rejects_invalid_ids(make_user, login):
    user_client = login(make_user())
    response = user_client.post("/api/wishlist/not-an-id")
    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid product id."
    assert user_client.delete("/api/wishlist/not-an-id").status_code == 400


def test_wishlist_requires_login(client):
    assert client.get("/api/wishlist").status_code == 401
