"""
FormForge - test configuration and fixtures
"""
import os
import sqlite3
import tempfile

import pytest

# Point the app at a throwaway database before anything imports db.database
_TEST_DIR = tempfile.mkdtemp(prefix="formforge-tests-")
TEST_DB_PATH = os.path.join(_TEST_DIR, "test.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["ENV"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret-for-testing-only"
os.environ["DEFAULT_ADMIN_EMAIL"] = "admin@example.com"
os.environ["DEFAULT_ADMIN_PASSWORD"] = "admin-password-123"
os.environ["CRM_API_KEY"] = ""
os.environ["MAILCHIMP_API_KEY"] = ""
os.environ["MAILCHIMP_LIST_ID"] = ""

from fastapi.testclient import TestClient

from main import app
from services.integrations_service import IntegrationService, get_integration_service
from utils.csrf import csrf_protection
from utils.limiter import limiter, rate_limiter

ADMIN_EMAIL = os.environ["DEFAULT_ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["DEFAULT_ADMIN_PASSWORD"]


def _clear_tables() -> None:
    if not os.path.exists(TEST_DB_PATH):
        return
    conn = sqlite3.connect(TEST_DB_PATH)
    try:
        conn.execute("DELETE FROM submissions")
        conn.execute("DELETE FROM forms")
        conn.execute("DELETE FROM sessions")
        conn.execute("DELETE FROM users WHERE role != 'admin'")
        conn.commit()
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def reset_security_state():
    """Every test starts with empty limit windows, no CSRF tokens and empty tables"""
    rate_limiter.reset()
    limiter.reset()
    csrf_protection.revoke_all()
    _clear_tables()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    # Integrations stay offline: no credentials means every call is skipped
    app.dependency_overrides[get_integration_service] = lambda: IntegrationService(
        crm_api_key="", mailchimp_api_key="", mailchimp_list_id=""
    )
    with TestClient(app) as c:
        yield c


def csrf_headers(client, **headers) -> dict:
    """Fetch a fresh single-use CSRF token for the client's current session"""
    resp = client.get("/api/csrf", headers=headers)
    assert resp.status_code == 200, resp.text
    return {**headers, "x-csrf-token": resp.json()["token"]}


def login(client, email: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD, **headers):
    return client.post(
        "/api/auth/login",
        json={"email": email, "password": password},
        headers=csrf_headers(client, **headers),
    )


@pytest.fixture
def auth_client(client):
    """Client logged in as the seeded admin"""
    resp = login(client)
    assert resp.status_code == 200, resp.text
    return client


SAMPLE_FIELDS = [
    {"id": "name", "type": "text", "label": "Full name", "required": True},
    {"id": "email", "type": "email", "label": "Email", "required": True},
    {"id": "cep", "type": "cep", "label": "CEP", "required": False},
    {"id": "plan", "type": "select", "label": "Plan", "required": False, "options": ["Basic", "Pro"]},
]


def create_form(client, status: str = "active", title: str = "Contact Us", fields=None):
    resp = client.post(
        "/api/forms",
        json={
            "title": title,
            "description": "Get in touch",
            "fields": fields or SAMPLE_FIELDS,
            "status": status,
        },
        headers=csrf_headers(client),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()
