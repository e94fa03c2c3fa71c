from conftest import ADMIN_EMAIL, csrf_headers, login


def register(client, **body):
    payload = {"email": "new.user@example.com", "password": "s3cret-pass", "name": "New User"}
    payload.update(body)
    return client.post("/api/auth/register", json=payload, headers=csrf_headers(client))


def test_register_creates_user(client):
    resp = register(client, email="New.User@Example.com")
    assert resp.status_code == 201
    user = resp.json()["user"]
    assert user["email"] == "new.user@example.com"
    assert user["name"] == "New User"
    assert user["role"] == "user"
    assert "password_hash" not in user


def test_register_duplicate_email(client):
    assert register(client).status_code == 201
    resp = register(client)
    assert resp.status_code == 400
    assert resp.json() == {"error": "User already exists"}


def test_register_validation(client):
    resp = register(client, email="not-an-email", password="short")
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Validation failed"
    assert {tuple(d["loc"]) for d in body["details"]} == {("email",), ("password",)}


def test_login_sets_cookie(client):
    resp = login(client)
    assert resp.status_code == 200
    assert resp.json()["user"]["email"] == ADMIN_EMAIL
    assert resp.json()["user"]["role"] == "admin"
    set_cookie = resp.headers["set-cookie"]
    assert set_cookie.startswith("auth-token=")
    assert "HttpOnly" in set_cookie
    assert "SameSite=strict" in set_cookie


def test_login_wrong_password(client):
    resp = login(client, password="wrong-password")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid credentials"}
    assert "auth-token" not in client.cookies


def test_login_unknown_user(client):
    resp = login(client, email="ghost@example.com")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid credentials"}


def test_login_rate_limited_after_three_attempts(client):
    headers = {"x-forwarded-for": "198.51.100.40"}
    for _ in range(3):
        assert login(client, password="wrong-password", **headers).status_code == 401
    resp = login(client, password="wrong-password", **headers)
    assert resp.status_code == 429
    assert "retry-after" in resp.headers


def test_me_returns_current_user(auth_client):
    resp = auth_client.get("/api/auth/me")
    assert resp.status_code == 200
    assert resp.json()["user"]["email"] == ADMIN_EMAIL


def test_me_without_cookie(client):
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.json() == {"error": "No token provided"}


def test_me_with_garbage_token(client):
    client.cookies.set("auth-token", "not-a-jwt")
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid token"}


def test_logout_revokes_session(auth_client):
    token = auth_client.cookies.get("auth-token")
    resp = auth_client.post("/api/auth/logout")
    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    assert auth_client.get("/api/auth/me").status_code == 401

    # the old token no longer maps to a live session
    auth_client.cookies.set("auth-token", token)
    resp = auth_client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Session expired or revoked"}
    assert auth_client.get("/api/forms").status_code == 401


def test_protected_routes_require_auth(client):
    for path in ("/api/forms", "/api/submissions", "/api/dashboard/stats", "/api/export/submissions"):
        resp = client.get(path)
        assert resp.status_code == 401, path
        assert resp.json() == {"error": "Authentication required"}
