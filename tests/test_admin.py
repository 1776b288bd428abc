from datetime import datetime

from storefront.admin import build_monthly_totals
from storefront.helpers import utcnow

from .conftest import DEFAULT_PASSWORD


def test_dashboard_requires_admin(make_user, login, admin_client):
    assert login(make_user()).get("/admin/dashboard").status_code == 403
    body = admin_client.get("/admin/dashboard").get_json()
    assert body["user"]["role"] == "admin"


def test_stats_counts_and_distribution(admin_client, db, make_product, make_user):
    make_product()
    shopper = make_user()
    now = utcnow()
    db.orders.insert_many(
        [
            {"user": shopper["_id"], "status": "pending", "total_price": 10.5, "items": [], "created_at": now},
            {"user": shopper["_id"], "status": "pending", "total_price": 4.5, "items": [], "created_at": now},
            {"user": shopper["_id"], "status": "shipped", "total_price": 20, "items": [], "created_at": now},
        ]
    )

    stats = admin_client.get("/admin/stats").get_json()
    assert stats["total_users"] == 2
    assert stats["total_products"] == 1
    assert stats["total_orders"] == 3
    assert stats["total_carts"] == 0
    assert len(stats["recent_orders"]) == 3
    assert stats["status_distribution"] == [
        {"status": "pending", "count": 2},
        {"status": "shipped", "count": 1},
    ]
    assert stats["monthly"] == [{"month": now.strftime("%Y-%m"), "revenue": 35.0, "orders_count": 3}]


def test_monthly_totals_skip_old_orders(db):
    db.orders.insert_many(
        [
            {"total_price": 5, "created_at": datetime(2024, 1, 15)},
            {"total_price": 7, "created_at": datetime(2024, 5, 2)},
            {"total_price": 3, "created_at": datetime(2024, 5, 20)},
        ]
    )
    totals = build_monthly_totals(db, datetime(2024, 8, 10))
    assert totals == [{"month": "2024-05", "revenue": 10.0, "orders_count": 2}]


def test_block_and_unblock_restores_previous_status(admin_client, make_user, client, db):
    user = make_user(status="active")
    blocked = admin_client.patch(f"/admin/users/{user['_id']}/block").get_json()
    assert blocked["status"] == "banned"
    assert db.users.find_one({"_id": user["_id"]})["previous_status"] == "active"

    denied = client.post("/auth/login", json={"email": user["email"], "password": DEFAULT_PASSWORD})
    assert denied.status_code == 401

    restored = admin_client.patch(f"/admin/users/{user['_id']}/unblock").get_json()
    assert restored["status"] == "active"
    assert "previous_status" not in db.users.find_one({"_id": user["_id"]})


def test_admins_cannot_be_blocked_or_deleted(admin_client):
    admin_id = admin_client.user["_id"]
    assert admin_client.patch(f"/admin/users/{admin_id}/block").status_code == 403
    assert admin_client.delete(f"/admin/users/{admin_id}").status_code == 403


def test_list_and_delete_users(admin_client, make_user, db):
    user = make_user()
    listing = admin_client.get("/admin/users").get_json()
    assert {entry["email"] for entry in listing} == {user["email"], admin_client.user["email"]}
    assert all("password_hash" not in entry for entry in listing)

    assert admin_client.delete(f"/admin/users/{user['_id']}").get_json() == {"success": True}
    assert db.users.find_one({"_id": user["_id"]}) is None
    assert admin_client.delete(f"/admin/users/{user['_id']}").status_code == 404
