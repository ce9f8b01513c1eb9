"""Pytest fixtures for SkillSwap.

MongoDB is replaced by an in-memory mongomock database. It must be assigned
to database.db before main and the workflow modules are imported, because
they bind `db` at import time.
"""
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import database

database.db = mongomock.MongoClient()["skillswap_test"]

from main import app  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    db = database.db
    for name in db.list_collection_names():
        db.drop_collection(name)
    database.ensure_indexes()
    yield db


@pytest.fixture
def db(clean_db):
    return clean_db


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _signup(client: TestClient, email: str, name: str, username: str = None, referral_code: str = None) -> dict:
    client.post("/auth/register", json={"email": email, "password": "secret123", "name": name})
    token = client.post("/auth/login", json={"email": email, "password": "secret123"}).json()["token"]
    headers = {"Authorization": f"Bearer {token}"}
    body = {"username": username or name, "skills_to_teach": ["Python"], "skills_to_learn": ["Guitar"]}
    if referral_code:
        body["referral_code"] = referral_code
    resp = client.post("/onboarding", json=body, headers=headers)
    assert resp.status_code == 200, resp.text
    return headers


@pytest.fixture
def signup(client):
    def _make(email, name, username=None, referral_code=None):
        return _signup(client, email, name, username, referral_code)
    return _make


@pytest.fixture
def teacher(signup) -> dict:
    return signup("tina@example.com", "Tina Teach", "tina")


@pytest.fixture
def learner(signup) -> dict:
    return signup("leo@example.com", "Leo Learn", "leo")


@pytest.fixture
def listing_id(client, teacher) -> str:
    resp = client.post("/listings", json={
        "title": "Python from scratch",
        "description": "Variables, loops and functions",
        "category": "technology",
        "level": "beginner",
        "credits_per_hour": 10,
        "tags": ["python", "programming"],
    }, headers=teacher)
    assert resp.status_code == 200, resp.text
    return resp.json()["listing_id"]


def future(days: int = 2) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).replace(microsecond=0).isoformat()


@pytest.fixture
def accepted_session(client, teacher, learner, listing_id) -> dict:
    """A scheduled 2h session (20 credits held from the learner)."""
    rid = client.post("/requests", json={
        "skill_listing_id": listing_id, "proposed_date": future(), "duration_hours": 2,
    }, headers=learner).json()["request_id"]
    resp = client.post(f"/requests/{rid}/accept", headers=teacher)
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture
def admin(signup, db) -> dict:
    headers = signup("admin@example.com", "Ada Admin", "ada")
    db["user"].update_one({"email": "admin@example.com"}, {"$set": {"role": "admin"}})
    return headers
