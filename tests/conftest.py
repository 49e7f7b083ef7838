import os

# Cheap hashes for the seeded accounts; must be set before security is imported.
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from database import create_database, get_database
from main import app, database_provider
from models import Base

TEST_POSTGRES_URL = os.getenv("TEST_POSTGRES_URL")


@pytest.fixture(params=["sqlite", "postgresql"])
def db(request, tmp_path):
    if request.param == "sqlite":
        database = create_database(f"sqlite:///{tmp_path / 'ecommerce.db'}")
    else:
        if not TEST_POSTGRES_URL:
            pytest.skip("TEST_POSTGRES_URL not set")
        database = create_database(TEST_POSTGRES_URL)
        # Start every test from freshly seeded tables with ids from 1.
        Base.metadata.drop_all(database.engine)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_database] = lambda: db
    app.dependency_overrides[database_provider] = lambda: (lambda: db)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def auth_headers(client, email, password):
    res = client.post("/api/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['data']['token']}"}


@pytest.fixture
def admin_headers(client):
    return auth_headers(client, "admin@example.com", "admin123")


@pytest.fixture
def user_headers(client):
    return auth_headers(client, "john@example.com", "john123")


@pytest.fixture
def login(client):
    def _login(email, password):
        return auth_headers(client, email, password)
    return _login
