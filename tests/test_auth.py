from datetime import timedelta

import jwt
import pytest

from auth import ALGORITHM, check_password, hash_password
from database import utcnow
from errors import AuthenticationError

USER_BODY = {"name": "Nia Grower", "email": "Nia@Example.com", "password": "secret123"}


def test_register_returns_user_without_hash_and_token(client):
    res = client.post("/api/auth/register", json=USER_BODY)

    assert res.status_code == 201
    data = res.json()["data"]
    assert data["user"]["email"] == "nia@example.com"
    assert data["user"]["role"] == "field"
    assert "password_hash" not in data["user"]
    assert "password" not in data["user"]
    assert data["token"]

    res = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {data['token']}"})
    assert res.json()["data"]["name"] == "Nia Grower"


@pytest.mark.parametrize("body", [
    {"email": "a@b.com", "password": "secret123"},
    {**USER_BODY, "email": "not-an-email"},
    {**USER_BODY, "password": "123"},
    {**USER_BODY, "role": "owner"},
])
def test_register_rejects_invalid_body(client, body):
    res = client.post("/api/auth/register", json=body)

    assert res.status_code == 400
    assert res.json()["errors"]


def test_register_duplicate_email_conflicts(client):
    client.post("/api/auth/register", json=USER_BODY)

    res = client.post("/api/auth/register", json={**USER_BODY, "email": "nia@example.com"})

    assert res.status_code == 409
    assert res.json()["message"] == "Email is already registered"


def test_login(client):
    client.post("/api/auth/register", json=USER_BODY)

    res = client.post("/api/auth/login", json={"email": "NIA@example.com", "password": "secret123"})
    assert res.status_code == 200
    assert res.json()["data"]["user"]["last_login"] is not None

    res = client.post("/api/auth/login", json={"email": "nia@example.com", "password": "wrong-one"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid credentials"

    res = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "secret123"})
    assert res.status_code == 401


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Basic dXNlcjpwYXNz"}])
def test_missing_token(client, headers):
    res = client.get("/api/lots", headers=headers)

    assert res.status_code == 401
    assert res.json() == {"success": False, "message": "Access denied. No token provided."}


def test_garbage_token(client):
    res = client.get("/api/lots", headers={"Authorization": "Bearer not.a.jwt"})

    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token."


def test_token_signed_with_other_secret(client, manager):
    token = jwt.encode({"sub": manager.id, "role": "manager", "type": "access"}, "other", algorithm=ALGORITHM)

    res = client.get("/api/lots", headers={"Authorization": f"Bearer {token}"})

    assert res.json()["message"] == "Invalid token."


def test_expired_token(client, settings, manager):
    issued = utcnow() - timedelta(hours=2)
    token = jwt.encode({"sub": manager.id, "role": "manager", "type": "access",
                        "iat": issued, "exp": issued + timedelta(hours=1)},
                       settings.jwt_secret, algorithm=ALGORITHM)

    res = client.get("/api/lots", headers={"Authorization": f"Bearer {token}"})

    assert res.status_code == 401
    assert res.json()["message"] == "Token expired."


def test_inactive_user_token_is_rejected(client, db, accounts, auth_headers):
    db["user"].update_one({"email": "field@test.com"}, {"$set": {"is_active": False}})

    res = client.get("/api/lots", headers=auth_headers("field"))

    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token. User not found or inactive."


def test_authenticate_resolves_actor(app, accounts):
    actor, token = accounts["analyst"]

    assert app.state.users.authenticate(token) == actor
    with pytest.raises(AuthenticationError):
        app.state.users.authenticate(token + "x")


def test_role_guard_message(client, species, auth_headers):
    res = client.delete(f"/api/species/{species['_id']}", headers=auth_headers("analyst"))

    assert res.status_code == 403
    assert res.json()["message"] == "Access denied. Role 'analyst' is not authorized to access this resource."


def test_update_profile(client, accounts, auth_headers):
    res = client.put("/api/auth/profile", json={"name": "Renamed"}, headers=auth_headers("field"))
    assert res.json()["data"]["name"] == "Renamed"

    res = client.put("/api/auth/profile", json={"email": "manager@test.com"}, headers=auth_headers("field"))
    assert res.status_code == 409


def test_change_password(client, auth_headers):
    res = client.put("/api/auth/change-password",
                     json={"current_password": "nope-nope", "new_password": "brandnew1"},
                     headers=auth_headers("field"))
    assert res.status_code == 400
    assert res.json()["message"] == "Current password is incorrect"

    res = client.put("/api/auth/change-password",
                     json={"current_password": "password123", "new_password": "brandnew1"},
                     headers=auth_headers("field"))
    assert res.status_code == 200

    old = client.post("/api/auth/login", json={"email": "field@test.com", "password": "password123"})
    new = client.post("/api/auth/login", json={"email": "field@test.com", "password": "brandnew1"})
    assert (old.status_code, new.status_code) == (401, 200)


def test_password_hashing():
    hashed = hash_password("hunter22", rounds=4)

    assert hashed != "hunter22"
    assert check_password("hunter22", hashed)
    assert not check_password("hunter23", hashed)
    assert not check_password("hunter22", "not-a-bcrypt-hash")
