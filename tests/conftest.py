import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import Principal, token_for
from database import ensure_indexes, get_db
from main import app
from stores import StoreService
from users import UserService

PASSWORD = "Secret@123"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["store_ratings_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    # Not used as a context manager: the lifespan would connect to a real server
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="user", name=None, email=None, address="221B Baker Street"):
        counter["n"] += 1
        n = counter["n"]
        return UserService(db).register_user(
            name or f"Test User {n}",
            email or f"user{n}@example.com",
            PASSWORD,
            address,
            role=role,
        )
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", name="Site Admin")


@pytest.fixture
def make_store(db, make_user):
    counter = {"n": 0}

    def _make(owner=None, name=None):
        counter["n"] += 1
        n = counter["n"]
        owner = owner or make_user()
        return StoreService(db).create_store(
            name or f"Store {n}", f"store{n}@example.com", f"{n} Market Street", owner["_id"]
        )
    return _make


def principal_of(user) -> Principal:
    return Principal(id=str(user["_id"]), role=user["role"])


def auth_header(user) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}
