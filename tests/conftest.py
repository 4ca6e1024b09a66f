"""Shared fixtures: an in-memory MongoDB and a TestClient wired to it."""

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes
from main import app, create_access_token, get_db
from schemas import User


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Insert a user directly and return (user_id, auth headers)."""

    def _make_user(email="shopper@example.com", role="customer", addresses=None):
        doc = User(name="Test Shopper", email=email, password_hash="not-a-real-hash", role=role).model_dump(mode="json")
        doc["addresses"] = addresses or []
        user_id = db["user"].insert_one(doc).inserted_id
        token = create_access_token({"sub": str(user_id)})
        return user_id, {"Authorization": f"Bearer {token}"}

    return _make_user


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="admin")


@pytest.fixture
def address_payload():
    return {
        "street": " 12 Lake Road ",
        "city": "Dhaka",
        "state": "Dhaka Division",
        "zip_code": "1207",
        "country": "Bangladesh",
        "label": "home",
        "phone": "01700000000",
    }


@pytest.fixture
def product_payload():
    return {
        "product_id": "TSHIRT-001",
        "name": "Cotton T-Shirt",
        "description": "Plain crew neck",
        "price": 450.0,
        "original_price": 600.0,
        "category": "apparel",
        "images": ["https://img.example.com/tshirt-front.jpg", "https://img.example.com/tshirt-back.jpg"],
        "rating": 4.5,
        "reviews": 12,
        "in_stock": True,
        "features": ["100% cotton"],
    }
