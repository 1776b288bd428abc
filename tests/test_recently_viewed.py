from bson import ObjectId


def view(user_client, product_id, **extra):
    product = {"id": str(product_id), "name": f"Item {product_id}", "price": 50, **extra}
    return user_client.post("/user/recently-viewed", json={"product": product})


def test_most_recent_view_comes_first_without_duplicates(make_user, login):
    user_client = login(make_user())
    first, second = ObjectId(), ObjectId()

    view(user_client, first)
    view(user_client, second)
    items = view(user_client, first).get_json()["items"]

    assert [item["product_id"] for item in items] == [str(first), str(second)]
    assert user_client.get("/user/recently-viewed").get_json()["items"] == items


def test_list_is_capped_by_limit(make_user, login):
    user_client = login(make_user())
    product_ids = [ObjectId() for _ in range(4)]
    for product_id in product_ids:
        user_client.post(
            "/user/recently-viewed",
            json={"product": {"id": str(product_id), "price": 10}, "limit": 3},
        )

    items = user_client.get("/user/recently-viewed").get_json()["items"]
    assert [item["product_id"] for item in items] == [str(pid) for pid in reversed(product_ids[1:])]


def test_discount_derived_from_sale_price(make_user, login):
    user_client = login(make_user())
    items = view(user_client, ObjectId(), salePrice=40, images=["a.jpg", "b.jpg"]).get_json()["items"]
    assert items[0]["discount"] == 20.0
    assert items[0]["image"] == "a.jpg"


def test_missing_product_is_rejected(make_user, login):
    user_client = login(make_user())
    response = user_client.post("/user/recently-viewed", json={"product": {"name": "no id"}})
    assert response.status_code == 400
    assert user_client.post("/user/recently-viewed", json={}).status_code == 400
