import os

# Must be set before the app modules read their config
os.environ.setdefault("LOW_STOCK_INTERVAL_SECONDS", "0")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app

PASSWORD = "secret123"


@pytest.fixture
def db():
    return mongomock.MongoClient()["bookstore_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def signup(client, email, role="CUSTOMER", phone="9876543210", password=PASSWORD, headers=None):
    return client.post("/user/signup", headers=headers, json={
        "name": email.split("@")[0],
        "phone": phone,
        "email": email,
        "password": password,
        "role": role,
    })


def login_headers(client, email, password=PASSWORD):
    response = client.post("/user/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def admin_headers(client):
    signup(client, "admin@books.com", role="ADMIN")
    return login_headers(client, "admin@books.com")


@pytest.fixture
def customer_headers(client):
    signup(client, "reader@books.com")
    return login_headers(client, "reader@books.com")


@pytest.fixture
def make_book(client, admin_headers):
    def _make(title="Dune", author="Frank Herbert", price=10.0, stock=5, **extra):
        response = client.post("/books", headers=admin_headers, json={
            "title": title, "author": author, "price": price, "stock": stock, **extra,
        })
        assert response.status_code == 201, response.text
        return response.json()["book"]["id"]
    return _make
