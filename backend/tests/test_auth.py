from datetime import timedelta

import pytest

from serial_ledger.auth_routes import (
    create_access_token,
    ensure_admin,
    get_current_user,
    hash_password,
    read_token_subject,
    verify_password,
)
from serial_ledger.main import app
from serial_ledger.models import User, utcnow

ADMIN_EMAIL = "owner@saddlery.co"
ADMIN_PASSWORD = "s3cret-saddle"


@pytest.fixture
async def api(client, session):
    """API client with real token auth and one admin account."""
    app.dependency_overrides.pop(get_current_user, None)
    await ensure_admin(session, ADMIN_EMAIL, ADMIN_PASSWORD, name="Owner")
    return client


async def _login(client, email, password):
    r = await client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def test_password_hashing():
    hashed = hash_password("hunter22")
    assert hashed != "hunter22"
    assert verify_password("hunter22", hashed)
    assert not verify_password("wrong", hashed)


def test_token_subject():
    user = User(id="u-1", role="staff")
    token = create_access_token(user)

    assert read_token_subject(token) == "u-1"
    assert read_token_subject(token + "x") is None

    expired = create_access_token(user, now=utcnow() - timedelta(days=2))
    assert read_token_subject(expired) is None


async def test_ensure_admin_runs_once(session):
    assert await ensure_admin(session, "Owner@Saddlery.co", ADMIN_PASSWORD) is True
    assert await ensure_admin(session, "second@saddlery.co", "another-pass") is False


async def test_login_me_and_read_api(api):
    headers = await _login(api, "OWNER@saddlery.co", ADMIN_PASSWORD)

    r = await api.get("/api/auth/me", headers=headers)
    assert r.json()["email"] == ADMIN_EMAIL
    assert r.json()["role"] == "admin"

    r = await api.get("/api/orders", headers=headers)
    assert r.status_code == 200
    assert r.json()["orders"] == []


async def test_bad_credentials(api):
    r = await api.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "nope"})
    assert r.status_code == 401

    r = await api.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


async def test_admin_manages_staff(api):
    admin = await _login(api, ADMIN_EMAIL, ADMIN_PASSWORD)

    r = await api.post("/api/staff", headers=admin, json={"email": "packer@saddlery.co", "password": "pack-1t-up", "name": "Packer"})
    assert r.status_code == 201
    packer_id = r.json()["id"]
    assert r.json()["role"] == "staff"

    r = await api.post("/api/staff", headers=admin, json={"email": "Packer@saddlery.co", "password": "pack-1t-up"})
    assert r.status_code == 409

    r = await api.post("/api/staff", headers=admin, json={"email": "short@saddlery.co", "password": "short"})
    assert r.status_code == 422

    packer = await _login(api, "packer@saddlery.co", "pack-1t-up")
    assert (await api.get("/api/serials/export.csv", headers=packer)).status_code == 200
    assert (await api.get("/api/staff", headers=packer)).status_code == 403
    r = await api.patch("/api/serials/1", headers=packer, json={"serial": "AB-12345"})
    assert r.status_code == 403

    r = await api.get("/api/staff", headers=admin)
    assert [s["email"] for s in r.json()["staff"]] == [ADMIN_EMAIL, "packer@saddlery.co"]

    r = await api.patch(f"/api/staff/{packer_id}", headers=admin, json={"is_active": False})
    assert r.json()["isActive"] is False
    assert (await api.get("/api/auth/me", headers=packer)).status_code == 401
    r = await api.post("/api/auth/login", json={"email": "packer@saddlery.co", "password": "pack-1t-up"})
    assert r.status_code == 401


async def test_admin_cannot_demote_self(api):
    admin = await _login(api, ADMIN_EMAIL, ADMIN_PASSWORD)
    me = (await api.get("/api/auth/me", headers=admin)).json()

    r = await api.patch(f"/api/staff/{me['id']}", headers=admin, json={"role": "staff"})
    assert r.status_code == 400

    r = await api.patch("/api/staff/missing", headers=admin, json={"name": "x"})
    assert r.status_code == 404


async def test_no_self_sign_up(client):
    app.dependency_overrides.pop(get_current_user, None)
    r = await client.post("/api/staff", json={"email": "walk-in@saddlery.co", "password": "let-me-in"})
    assert r.status_code == 401
