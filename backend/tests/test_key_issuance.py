"""Key issuance endpoint tests: /api/auth/generate-key, /logout, /status."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from jose import jwt

from app.config import get_settings
from app.dependencies import build_client_encryption_engine, build_encryption_engine
from app.key_cache import KeyCache
from app.main import app as fastapi_app
from app.routers.keys import JWT_ALGORITHM, create_access_token
from app.services.keys import KeyType, derive_user_key

TEST_USER = "user-a"


def _generate(client, headers, user_id=TEST_USER, key_type="primary"):
    return client.post(
        "/api/auth/generate-key",
        json={"userId": user_id, "keyType": key_type},
        headers=headers,
    )


class TestGenerateKey:
    def test_issues_own_key(self, client, auth_headers, key_material):
        resp = _generate(client, auth_headers)
        assert resp.status_code == 200
        key = bytes.fromhex(resp.json()["encryptionKey"])
        assert key == derive_user_key(key_material, TEST_USER)

    def test_key_type_defaults_to_primary(self, client, auth_headers, key_material):
        resp = client.post("/api/auth/generate-key", json={"userId": TEST_USER}, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["encryptionKey"] == derive_user_key(key_material, TEST_USER).hex()

    def test_fallback_key(self, client, auth_headers, key_material):
        resp = _generate(client, auth_headers, key_type="fallback")
        assert resp.status_code == 200
        assert resp.json()["encryptionKey"] == derive_user_key(
            key_material, TEST_USER, KeyType.FALLBACK
        ).hex()

    def test_missing_token(self, client):
        resp = _generate(client, {})
        assert resp.status_code == 401

    def test_garbage_token(self, client):
        resp = _generate(client, {"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    def test_expired_token(self, client):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": TEST_USER, "type": "access", "iat": now - timedelta(hours=2), "exp": now - timedelta(hours=1)},
            get_settings().jwt_secret,
            algorithm=JWT_ALGORITHM,
        )
        resp = _generate(client, {"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_wrong_token_type(self, client):
        token = jwt.encode(
            {"sub": TEST_USER, "type": "refresh"}, get_settings().jwt_secret, algorithm=JWT_ALGORITHM
        )
        resp = _generate(client, {"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_other_users_key_forbidden(self, client, auth_headers):
        resp = _generate(client, auth_headers, user_id="user-b")
        assert resp.status_code == 403
        assert resp.json()["detail"] == "User ID mismatch"

    def test_invalid_key_type(self, client, auth_headers):
        resp = _generate(client, auth_headers, key_type="master")
        assert resp.status_code == 400

    def test_legacy_disabled(self, client, auth_headers):
        resp = _generate(client, auth_headers, key_type="legacy")
        assert resp.status_code == 400
        assert "disabled" in resp.json()["detail"]

    def test_legacy_enabled(self, client, auth_headers, monkeypatch):
        monkeypatch.setattr(get_settings(), "legacy_key_enabled", True)
        resp = _generate(client, auth_headers, key_type="legacy")
        assert resp.status_code == 200
        assert resp.json()["encryptionKey"] == derive_user_key("", TEST_USER, KeyType.LEGACY).hex()

    @pytest.mark.parametrize("material", ["", "too-short"])
    def test_key_material_misconfigured(self, client, auth_headers, monkeypatch, material):
        monkeypatch.setattr(get_settings(), "key_material", material)
        resp = _generate(client, auth_headers)
        assert resp.status_code == 500
        assert resp.json()["detail"] == (
            "Server configuration error: KEY_MATERIAL not configured or too short"
        )

    def test_empty_user_id_rejected(self, client, auth_headers):
        resp = _generate(client, auth_headers, user_id="")
        assert resp.status_code == 422


class TestSessionEndpoints:
    def test_status_and_logout(self, client, auth_headers):
        cache = fastapi_app.state.key_cache
        cache.put(TEST_USER, "primary", b"\x01" * 32)

        resp = client.get("/api/auth/status", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json() == {"authenticated": True, "user_id": TEST_USER, "keys_cached": True}

        resp = client.post("/api/auth/logout", headers=auth_headers)
        assert resp.status_code == 200
        assert not cache.has(TEST_USER)
        assert client.get("/api/auth/status", headers=auth_headers).json()["keys_cached"] is False

    def test_logout_requires_auth(self, client):
        assert client.post("/api/auth/logout").status_code == 401


class TestClientContext:
    """Untrusted context: keys come over HTTP from the issuance endpoint."""

    def test_client_and_server_interoperate(self, client, engine, key_material):
        settings = get_settings()
        token = create_access_token(TEST_USER)

        def forward(request: httpx.Request) -> httpx.Response:
            resp = client.post(
                request.url.path,
                content=request.read(),
                headers={
                    "Authorization": request.headers["Authorization"],
                    "Content-Type": "application/json",
                },
            )
            return httpx.Response(resp.status_code, json=resp.json())

        client_side = build_client_encryption_engine(
            settings, token, KeyCache(), transport=httpx.MockTransport(forward)
        )
        stored = client_side.encrypt("drafted in the browser", TEST_USER).stored
        assert stored.startswith("fallback-v1:")

        server_side = build_encryption_engine(settings, engine, KeyCache())
        assert server_side.decrypt(stored, TEST_USER) == "drafted in the browser"
        assert client_side.decrypt(stored, TEST_USER) == "drafted in the browser"

