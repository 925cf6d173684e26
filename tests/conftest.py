import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from main import app

PASSWORD = "secret123"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["kirana_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, mobile, role="buyer", name=None):
    res = client.post(
        "/api/auth/signup",
        json={"mobile": mobile, "password": PASSWORD, "name": name or f"User {mobile[-4:]}", "role": role},
    )
    assert res.status_code == 201, res.text
    data = res.json()
    return {"token": data["token"], "user": data["user"], "headers": auth_headers(data["token"])}


@pytest.fixture
def buyer(client):
    return register(client, "9000000001", role="buyer", name="Asha")


@pytest.fixture
def owner(client):
    return register(client, "9000000002", role="shopowner", name="Ravi")


@pytest.fixture
def other_owner(client):
    return register(client, "9000000003", role="shopowner", name="Meena")


SHOP_PAYLOAD = {
    "name": "Ravi General Store",
    "description": "Daily groceries and staples",
    "category": "grocery",
    "phone": "9123456789",
    "address": "12 Station Road",
    "city": "Kolkata",
    "state": "West Bengal",
    "pincode": "700084",
    "coordinates": {"lat": 22.4625, "lng": 88.3874},
}


def create_shop(client, owner, **overrides):
    res = client.post("/api/shops", json={**SHOP_PAYLOAD, **overrides}, headers=owner["headers"])
    assert res.status_code == 201, res.text
    return res.json()["shop"]


def create_product(client, owner, shop_id, **overrides):
    payload = {"shopId": shop_id, "name": "Basmati Rice", "category": "grains", "price": 50, "unit": "1 kg", "stock": 20}
    payload.update(overrides)
    res = client.post("/api/products", json=payload, headers=owner["headers"])
    assert res.status_code == 201, res.text
    return res.json()["product"]


@pytest.fixture
def shop(client, owner):
    return create_shop(client, owner)


@pytest.fixture
def product(client, owner, shop):
    return create_product(client, owner, shop["id"])
