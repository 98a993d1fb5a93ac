import mongomock
import pytest
from fastapi.testclient import TestClient

from securechat.auth import create_token
from securechat.db import get_db
from securechat.main import app

USERS = ["alice", "bob", "carol", "dave"]


@pytest.fixture
def db():
    """In-memory MongoDB seeded with a few registered users."""
    database = mongomock.MongoClient()["securechat_test"]
    for name in USERS:
        database.users.insert_one({"username": name, "password_hash": "unused"})
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    def _headers(username):
        return {"Authorization": f"Bearer {create_token(username)}"}
    return _headers
