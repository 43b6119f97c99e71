import os
import shutil
import tempfile

import pytest
from sqlalchemy import create_engine

# Point the app at a throwaway SQLite file before anything imports it
_TEMP_DIR = tempfile.mkdtemp(prefix="commission_tests_")
_DB_FILE = os.path.join(_TEMP_DIR, "test_commission.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_FILE}"
os.environ["UPLOAD_DIR"] = os.path.join(_TEMP_DIR, "uploads")
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("SUPABASE_ANON_KEY", None)


@pytest.fixture(scope="session", autouse=True)
def _cleanup_temp_dir():
    yield
    shutil.rmtree(_TEMP_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def _fresh_schema():
    """Every test starts from empty tables and empty in-memory caches."""
    from app import auth, main
    from app.models import Base

    sync_engine = create_engine(f"sqlite:///{_DB_FILE}")
    Base.metadata.drop_all(sync_engine)
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    auth._SESSION_CACHE.clear()
    main._LOGIN_ATTEMPTS.clear()
    yield


@pytest.fixture()
def client():
    from fastapi.testclient import TestClient
    from app.main import app

    with TestClient(app) as test_client:
        yield test_client


def register(client, username: str, password: str = "secret123", email: str | None = None):
    """Create a local account; the client is left logged in as that user."""
    resp = client.post("/register", json={
        "username": username,
        "email": email or f"{username}@dealer.test",
        "password": password,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["user"]


def login(client, username: str, password: str = "secret123"):
    resp = client.post("/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["user"]


@pytest.fixture()
def user(client):
    return register(client, "jane")
