"""
Test configuration and fixtures

The required environment is set before any application module is imported;
every test gets a fresh in-memory Mongo database.
"""
import os

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB", "academy_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from auth import create_access_token, hash_password
from cache import query_cache
from main import app
from schemas import User

ACADEMY = "A1"
PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def mongo(monkeypatch):
    fake = mongomock.MongoClient()[os.environ["MONGODB_DB"]]
    monkeypatch.setattr(database, "db", fake)
    query_cache.clear()
    yield fake
    query_cache.clear()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user():
    """Create a user and return (user_id, auth headers)."""

    def _make(role: str, academy_id: str = ACADEMY, username: str = None):
        username = username or f"{role}-{academy_id}-{os.urandom(3).hex()}"
        user_id = database.create_document(database.USERS, User(
            username=username,
            name=username.title(),
            email=f"{username}@sportsacademy.io",
            password_hash=hash_password(PASSWORD),
            role=role,
            academyId=academy_id,
        ))
        token = create_access_token({"sub": user_id, "role": role})
        return user_id, {"Authorization": f"Bearer {token}"}

    return _make
