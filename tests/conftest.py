import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.pop("DATABASE_URL", None)

import mongomock  # noqa: E402
import pytest  # noqa: E402
from bson import ObjectId  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import carts  # noqa: E402
import orders  # noqa: E402
from auth import Actor, create_token  # noqa: E402
from database import create_document, ensure_indexes, get_db  # noqa: E402
from main import app, get_payment_gateway  # noqa: E402
from money import to_cents  # noqa: E402
from payments import FakeGateway, reset_gateway, set_gateway  # noqa: E402
from schemas import Product  # noqa: E402

ADDRESS = {"address": "1 Main St", "city": "Springfield", "postal_code": "12345", "country": "US"}


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database = client["storefront_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def gateway():
    fake = FakeGateway()
    set_gateway(fake)
    yield fake
    reset_gateway()


@pytest.fixture
def make_user(db):
    """Insert a user directly (no password hashing) and return its Actor."""

    def _make(name="Jane Shopper", email=None, role="user"):
        email = email or f"user-{ObjectId()}@example.com"
        user_id = create_document(db, "user", {"name": name, "email": email, "password_hash": "", "role": role})
        return Actor(user_id=ObjectId(user_id), role=role)

    return _make


@pytest.fixture
def shopper(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(name="Admin User", role="admin")


@pytest.fixture
def make_product(db):
    def _make(price="50.00", stock=10, **fields):
        data = {
            "name": "Test Product",
            "description": "A product used in tests",
            "category": "Electronics",
            **fields,
        }
        product_id = create_document(db, "product", Product(price_cents=to_cents(price), stock=stock, **data))
        return db["product"].find_one({"_id": ObjectId(product_id)})

    return _make


@pytest.fixture
def stock_of(db):
    def _stock(product):
        return db["product"].find_one({"_id": product["_id"]})["stock"]

    return _stock


@pytest.fixture
def place_order(db, gateway):
    """Fill the actor's cart with (product, quantity) pairs and check out."""

    def _place(actor, *lines):
        for product, quantity in lines:
            carts.add_item(db, actor, str(product["_id"]), quantity)
        return orders.checkout(db, gateway, actor, ADDRESS, "pm_card_visa")

    return _place


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(actor):
        return {"Authorization": f"Bearer {create_token(actor.user_id)}"}

    return _headers


@pytest.fixture
def shipping_address():
    return dict(ADDRESS)
