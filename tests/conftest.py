"""
Shared fixtures for the storefront API tests.

The application runs against an in-memory mongomock database; background
side effects run inline and socket emits are captured in a list.
"""

from typing import Dict, List, Optional

import bcrypt
import mongomock
import pytest

from storefront import create_app
from storefront.helpers import utcnow

DEFAULT_PASSWORD = "s3cret-pass"
ADMIN_EMAIL = "boss@px39.test"

VALID_SHIPPING = {
    "fullName": "Ada Lovelace",
    "phone": "+16502530000",
    "country": "US",
    "state": "CA",
    "city": "Mountain View",
    "postalCode": "94043",
    "addressLine1": "1600 Amphitheatre Pkwy",
}


@pytest.fixture
def db():
    return mongomock.MongoClient().px39_test


@pytest.fixture
def app(db):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "storefront-test-secret-key-0123456789",
            "JWT_COOKIE_SECURE": False,
            "JWT_COOKIE_SAMESITE": "Lax",
            "BCRYPT_ROUNDS": 4,
            "BACKGROUND_TASKS_SYNC": True,
            "SOCKETIO_ASYNC_MODE": "threading",
            "MONGO_TRANSACTIONS": False,
            "RESEND_API_KEY": "",
            "CONTACT_INBOX_EMAIL": "",
            "VAPID_PUBLIC_KEY": "",
            "VAPID_PRIVATE_KEY": "",
            "FRONTEND_URL": "http://frontend.test",
            "BACKEND_URL": "http://api.test",
            "ADMIN_EMAIL": ADMIN_EMAIL,
        },
        database=db,
    )
    yield app
    app.extensions["background_executor"].shutdown(wait=False)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def emitted(app, monkeypatch) -> List:
    """Record hub emits as ``(user_id or None, event, payload)`` tuples."""
    events: List = []
    hub = app.extensions["realtime"]
    monkeypatch.setattr(
        hub, "emit_to_user", lambda user_id, event, payload: events.append((str(user_id), event, payload))
    )
    monkeypatch.setattr(hub, "broadcast", lambda event, payload: events.append((None, event, payload)))
    return events


@pytest.fixture
def make_user(db):
    counter = {"value": 0}

    def _make(
        email: Optional[str] = None,
        password: str = DEFAULT_PASSWORD,
        role: str = "user",
        status: str = "active",
        verified: bool = True,
        **extra,
    ) -> Dict:
        counter["value"] += 1
        email = email or f"shopper{counter['value']}@px39.test"
        now = utcnow()
        document = {
            "username": extra.pop("username", email.split("@")[0]),
            "email": email,
            "password_hash": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4)),
            "role": role,
            "status": status,
            "email_verified": verified,
            "sessions": [],
            "wishlist": [],
            "created_at": now,
            "updated_at": now,
        }
        document.update(extra)
        document["_id"] = db.users.insert_one(document).inserted_id
        return document

    return _make


@pytest.fixture
def login(app):
    def _login(user: Dict, password: str = DEFAULT_PASSWORD):
        user_client = app.test_client()
        response = user_client.post("/auth/login", json={"email": user["email"], "password": password})
        assert response.status_code == 200, response.get_json()
        return user_client

    return _login


@pytest.fixture
def admin_client(make_user, login):
    admin = make_user(email=ADMIN_EMAIL, role="admin", username="boss")
    admin_client = login(admin)
    admin_client.user = admin
    return admin_client


@pytest.fixture
def make_product(db):
    def _make(
        name: str = "Trail Jacket",
        price: float = 100.0,
        variations: Optional[List[Dict]] = None,
        **extra,
    ) -> Dict:
        now = utcnow()
        document = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "category": "Clothes",
            "sizes": ["S", "M", "L"],
            "variations": variations
            if variations is not None
            else [{"color": "Red", "images": ["red.jpg"], "stock_by_size": {"S": 5, "M": 5, "L": 0}}],
            "tags": [],
            "hidden": False,
            "discount": 0,
            "discount_type": "percent",
            "discount_active": False,
            "discount_expires": None,
            "sale_price": price,
            "created_at": now,
            "updated_at": now,
        }
        document.update(extra)
        document["_id"] = db.products.insert_one(document).inserted_id
        return document

    return _make


def stock_of(db, product_id, size: str, variation_index: int = 0) -> int:
    product = db.products.find_one({"_id": product_id})
    return product["variations"][variation_index]["stock_by_size"].get(size)
