import os

import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext

# config reads the signing key when it is first imported
os.environ.setdefault("SECRET_KEY", "test-signing-key-0123456789abcdef")

import auth
import main
from auth import Identity
from config import settings
from store import MemoryStore


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch, tmp_path):
    """No payment delay, cheap bcrypt and a private upload dir for every test."""
    monkeypatch.setattr(settings, "PAYMENT_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "RESTOCK_ON_CANCEL", False)
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(auth, "pwd_ctx", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    return MemoryStore()


@pytest.fixture
def client(store):
    main.app.state.store = store
    try:
        with TestClient(main.app) as c:
            yield c
    finally:
        main.app.state.store = None


@pytest.fixture
def api_http(store):
    """TestClient rooted at the API prefix, used as the transport of ApiClient."""
    main.app.state.store = store
    try:
        with TestClient(main.app, base_url="http://testserver" + settings.API_PREFIX) as c:
            yield c
    finally:
        main.app.state.store = None


@pytest.fixture
def seller():
    return Identity(user_id="seller-1", username="seller", role="user")


@pytest.fixture
def buyer():
    return Identity(user_id="buyer-1", username="buyer", role="user")


@pytest.fixture
def admin():
    return Identity(user_id="admin-1", username="root", role="admin")


def _register_and_login(client, username, password="pw123", email=None, phone=None, role=None, store=None):
    """Register through the API, optionally promote, and return auth headers + user."""
    resp = client.post("/api/register", json={
        "username": username,
        "password": password,
        "email": email or f"{username}@x.com",
        "phone": phone,
    })
    assert resp.status_code == 201, resp.text
    if role and store is not None:
        auth.set_role(store, resp.json()["userId"], role)
    resp = client.post("/api/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    return {"Authorization": f"Bearer {data['token']}"}, data["user"]


@pytest.fixture
def register_and_login():
    return _register_and_login
