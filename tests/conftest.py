import os
import tempfile

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("IMAGES_DIR", tempfile.mkdtemp(prefix="photostudio-images-"))
os.environ["CALENDLY_API_KEY"] = ""
os.environ["CALENDLY_WEBHOOK_SIGNING_KEY"] = ""
os.environ["AWS_ACCESS_KEY_ID"] = ""
os.environ["AWS_SECRET_ACCESS_KEY"] = ""

from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import bookings
import catalog
import database
import main
import orders
import storage

DB_MODULES = (database, auth, catalog, orders, bookings, main)


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient().photostudio_test
    for module in DB_MODULES:
        monkeypatch.setattr(module, "db", mock_db)
    return mock_db


@pytest.fixture
def local_storage(tmp_path, monkeypatch):
    store = storage.LocalStorage(str(tmp_path / "images"))
    monkeypatch.setattr(storage, "_storage", store)
    return store


@pytest.fixture
def client(db, local_storage):
    return TestClient(main.app)


@pytest.fixture
def make_user(db):
    def _make(name="Ada", email=None, role="user", password="secret123", **extra):
        email = email or f"{name.lower()}-{role}-{db['user'].count_documents({})}@example.com"
        now = datetime.now(timezone.utc)
        doc = {
            "name": name,
            "email": email,
            "password_hash": auth.hash_password(password),
            "role": role,
            "is_photographer": False,
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        res = db["user"].insert_one(doc)
        return auth.get_user(str(res.inserted_id))

    return _make


@pytest.fixture
def headers():
    def _headers(user):
        return {"Authorization": f"Bearer {auth.create_access_token(user)}"}

    return _headers


@pytest.fixture
def make_product(db):
    def _make(name="Sunset Print", price=50.0, stock=5, **extra):
        fields = {"name": name, "price": price, "stock": stock, "category": "print", **extra}
        return catalog.create_product(fields)

    return _make
