"""
Shared fixtures: the app runs against an in-memory MongoDB (mongomock-motor)
and with AI analysis disabled unless a test overrides it.
"""
import asyncio
import os
import uuid

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "carecompass_test")

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import server

DEFAULT_PASSWORD = "secret123"


@pytest.fixture
def mock_db(monkeypatch):
    database = AsyncMongoMockClient()[f"carecompass_test_{uuid.uuid4().hex[:8]}"]
    monkeypatch.setattr(server, "db", database)
    return database


@pytest.fixture
def client(mock_db):
    server.app.dependency_overrides[server.get_text_generator] = lambda: None
    yield TestClient(server.app)
    server.app.dependency_overrides.clear()


@pytest.fixture
def register_user(client):
    def _register(role, email, name="Test User", password=DEFAULT_PASSWORD):
        return client.post("/api/register", json={
            "name": name,
            "email": email,
            "password": password,
            "confirmPassword": password,
            "role": role
        })
    return _register


@pytest.fixture
def login_headers(client, register_user):
    """Register (if needed) and log in, returning bearer headers."""
    def _login(role, email, name="Test User"):
        register_user(role, email, name=name)
        response = client.post("/api/login", json={
            "email": email,
            "password": DEFAULT_PASSWORD,
            "role": role
        })
        assert response.status_code == 200
        return {"Authorization": f"Bearer {response.json()['token']}"}
    return _login


@pytest.fixture
def caregiver_headers(login_headers):
    return login_headers("caregiver", "carol@example.com", name="Carol")


@pytest.fixture
def doctor_headers(login_headers):
    return login_headers("doctor", "dana@example.com", name="Dr Dana")


class StaleReadCollection:
    """Collection whose existence checks miss, as when another insert lands between read and write."""

    def __init__(self, collection):
        self._collection = collection

    async def find_one(self, *args, **kwargs):
        return None

    def __getattr__(self, name):
        return getattr(self._collection, name)


class StaleReadDatabase:
    def __init__(self, database, names):
        self._database = database
        self._names = set(names)

    def __getattr__(self, name):
        collection = getattr(self._database, name)
        return StaleReadCollection(collection) if name in self._names else collection


@pytest.fixture
def racing_inserts(monkeypatch, mock_db):
    """Create the unique indexes, then hide existing rows from find_one on the named collections."""
    def _race(*names):
        asyncio.run(server.ensure_indexes())
        monkeypatch.setattr(server, "db", StaleReadDatabase(mock_db, names))
    return _race
