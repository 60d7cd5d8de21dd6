"""
Tests for the authentication endpoints.

Requests go through the full application: rate limiting, body validation,
the session cookie and the error handlers.
"""

import httpx
import pytest

from anchorpipe.core.models import AuditLog, User, VerificationToken
from tests.shared import TEST_PASSWORD, login_as


@pytest.mark.api
@pytest.mark.asyncio
class TestRegisterEndpoint:
    """Test POST /api/auth/register."""

    async def test_register_sets_session(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/auth/register",
            json={"email": " New@Example.com ", "password": TEST_PASSWORD},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["ok"] is True
        assert "verificationToken" not in body
        assert "ap_session" in response.cookies
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

        me = await client.get("/api/auth/me")
        assert me.json()["user"]["email"] == "new@example.com"

    async def test_duplicate_email(
        self, client: httpx.AsyncClient, user: User
    ) -> None:
        response = await client.post(
            "/api/auth/register",
            json={"email": "user@example.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 409
        assert response.json() == {
            "detail": "User with this email already exists",
            "path": "/api/auth/register",
        }

    async def test_weak_password(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/auth/register", json={"email": "weak@example.com", "password": "abc"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["detail"] == "Invalid request"
        assert body["details"][0]["path"] == "password"
        assert not await User.exists(email="weak@example.com")

    async def test_invalid_json(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/auth/register",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON payload"

    async def test_rate_limited(self, client: httpx.AsyncClient) -> None:
        """Test that the sixth registration from one client is refused."""
        for i in range(5):
            await client.post(
                "/api/auth/register",
                json={"email": f"u{i}@example.com", "password": "abc"},
            )

        response = await client.post(
            "/api/auth/register",
            json={"email": "u5@example.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert await AuditLog.exists(description="Rate limit violation")


@pytest.mark.api
@pytest.mark.asyncio
class TestLoginEndpoint:
    """Test POST /api/auth/login and logout."""

    async def test_login(self, client: httpx.AsyncClient, user: User) -> None:
        response = await client.post(
            "/api/auth/login",
            json={"email": "USER@example.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        set_cookie = response.headers["set-cookie"]
        assert "ap_session=" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "samesite=lax" in set_cookie.lower()

    async def test_invalid_credentials(
        self, client: httpx.AsyncClient, user: User
    ) -> None:
        response = await client.post(
            "/api/auth/login",
            json={"email": "user@example.com", "password": "Wrong-passw0rd"},
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"

    async def test_lockout(self, client: httpx.AsyncClient, user: User) -> None:
        for _ in range(4):
            await client.post(
                "/api/auth/login",
                json={"email": "user@example.com", "password": "Wrong-passw0rd"},
            )

        response = await client.post(
            "/api/auth/login",
            json={"email": "user@example.com", "password": "Wrong-passw0rd"},
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"

    async def test_lockout_refuses_correct_password(
        self, client: httpx.AsyncClient, user: User
    ) -> None:
        """Test that a locked key is refused before the password is checked."""
        for _ in range(5):
            await client.post(
                "/api/auth/login",
                json={"email": "user@example.com", "password": "Wrong-passw0rd"},
            )

        response = await client.post(
            "/api/auth/login",
            json={"email": "user@example.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        assert "ap_session" not in response.cookies

    async def test_logout(self, client: httpx.AsyncClient, user: User) -> None:
        await login_as(client, user)

        response = await client.post("/api/auth/logout")

        assert response.status_code == 200
        assert 'ap_session=""' in response.headers["set-cookie"]
        client.cookies.clear()
        me = await client.get("/api/auth/me")
        assert me.status_code == 401

    async def test_logout_revokes_token(
        self, client: httpx.AsyncClient, user: User
    ) -> None:
        """Test that a logged out token cannot be replayed."""
        token = await login_as(client, user)
        await client.post("/api/auth/logout")

        client.cookies.set("ap_session", token)
        me = await client.get("/api/auth/me")

        assert me.status_code == 401


@pytest.mark.api
@pytest.mark.asyncio
class TestSessionEndpoints:
    """Test GET /api/auth/me and POST /api/auth/verify-email."""

    async def test_me_anonymous(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json() == {"authenticated": False}
        assert response.headers["X-Request-ID"]

    async def test_me(self, client: httpx.AsyncClient, user: User) -> None:
        await login_as(client, user)

        response = await client.get("/api/auth/me")

        assert response.json() == {
            "authenticated": True,
            "user": {"id": str(user.id), "email": "user@example.com", "name": None},
        }

    async def test_verify_email(self, client: httpx.AsyncClient) -> None:
        await client.post(
            "/api/auth/register",
            json={"email": "verify@example.com", "password": TEST_PASSWORD},
        )
        token = await VerificationToken.get(identifier="verify@example.com")

        response = await client.post(
            "/api/auth/verify-email", json={"token": token.token}
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Email verified successfully"
        verified = await User.get(email="verify@example.com")
        assert verified.preferences["emailVerified"] is True

    async def test_verify_unknown_token(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/auth/verify-email", json={"token": "nope"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid verification token"

    async def test_request_id_is_echoed(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            "/api/auth/me", headers={"X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"
