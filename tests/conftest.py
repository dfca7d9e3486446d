from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from database import ensure_indexes, get_db, utcnow
from security import Session

PASSWORD = "secret123"


@pytest.fixture
def db():
    database = mongomock.MongoClient().fooddb
    ensure_indexes(database)
    return database


@pytest.fixture
def app(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield main.app
    main.app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, role, name, email):
    resp = client.post(f"/api/auth/register-{role}", json={
        "name": name,
        "email": email,
        "password": PASSWORD,
        "phone": "9876543210",
        "location": {"latitude": 12.97, "longitude": 77.59, "address": "MG Road"},
    })
    assert resp.status_code == 201, resp.text
    body = resp.json()
    body["headers"] = auth(body["token"])
    return body


@pytest.fixture
def restaurant(client):
    return register(client, "restaurant", "Spice Villa", "spice@example.com")


@pytest.fixture
def ngo(client):
    return register(client, "ngo", "Helping Hands", "hands@example.com")


def tomorrow_iso():
    return (utcnow() + timedelta(days=1)).replace(microsecond=0).isoformat() + "Z"


def rice_form(**overrides):
    form = {
        "foodType": "Rice",
        "quantity": "5kg",
        "expiryTime": tomorrow_iso(),
        "pickupLocation": "12 Main St, City",
        "preferredOption": "NGO Pickup",
    }
    form.update(overrides)
    return form


def make_user(db, role, name):
    _id = db["user"].insert_one({"name": name, "email": f"{name.lower()}@example.com", "role": role}).inserted_id
    return Session(
        user_id=_id,
        role=role,
        name=name,
        email=f"{name.lower()}@example.com",
        token_id=ObjectId().binary.hex(),
        expires_at=utcnow() + timedelta(days=1),
    )
