"""Shared fixtures: an in-memory SQLite database, a TestClient and account helpers."""

import os

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["MARKET_DATA_PROVIDERS"] = "mock"
os.environ["MOCK_PRICE_JITTER_PCT"] = "0"

import pytest
from fastapi.testclient import TestClient

from app.db import Base, SessionLocal, engine
from app.main import app
from app.models import User


@pytest.fixture(autouse=True)
def reset_database():
    """Fresh schema for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def register(client):
    """Register a password account and return its Authorization headers."""

    def _register(username: str, password: str = "password123", **extra) -> dict[str, str]:
        response = client.post("/auth/register", json={"username": username, "password": password, **extra})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    return _register


@pytest.fixture
def creator_headers(register):
    # The sandbox username is the default creator account.
    return register("whopcreator")


def whop_headers(whop_user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer whop-{whop_user_id}-1700000000000"}


def set_company(db, username: str, company_id: str) -> None:
    user = db.query(User).filter(User.username == username).one()
    user.company_id = company_id
    db.commit()
