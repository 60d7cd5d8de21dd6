"""
Tests for the data subject request endpoints.
"""

import httpx
import pytest

from anchorpipe.core.models import Repo, RepoRole, User
from tests.shared import create_user, grant_role, login_as


@pytest.mark.api
@pytest.mark.asyncio
class TestDataExportEndpoints:
    """Test export requests and downloads."""

    async def test_export_flow(
        self, client: httpx.AsyncClient, user: User, repo: Repo
    ) -> None:
        await grant_role(user, repo, RepoRole.MEMBER)
        await login_as(client, user)

        requested = await client.post("/api/dsr/export")

        assert requested.status_code == 200
        summary = requested.json()
        assert summary["status"] == "completed"
        assert set(summary) == {
            "requestId",
            "status",
            "requestedAt",
            "processedAt",
            "dueAt",
        }

        download = await client.get(f"/api/dsr/export/{summary['requestId']}")
        assert download.headers["content-type"] == "application/json"
        assert download.headers["content-disposition"] == (
            f'attachment; filename="anchorpipe-export-{summary["requestId"]}.json"'
        )
        assert download.json()["user"]["email"] == "user@example.com"

        as_csv = await client.get(
            f"/api/dsr/export/{summary['requestId']}", params={"format": "csv"}
        )
        assert as_csv.headers["content-type"].startswith("text/csv")
        assert as_csv.text.startswith("Section,Field,Value")

    async def test_unsupported_format(
        self, client: httpx.AsyncClient, user: User
    ) -> None:
        await login_as(client, user)
        requested = await client.post("/api/dsr/export")

        response = await client.get(
            f"/api/dsr/export/{requested.json()['requestId']}", params={"format": "xml"}
        )

        assert response.status_code == 422

    async def test_other_users_export(
        self, client: httpx.AsyncClient, user: User
    ) -> None:
        await login_as(client, user)
        requested = await client.post("/api/dsr/export")

        other = await create_user(email="other@example.com")
        await login_as(client, other)
        response = await client.get(f"/api/dsr/export/{requested.json()['requestId']}")

        assert response.status_code == 404
        assert response.json()["detail"] == "Request not found"

    async def test_list_requests(self, client: httpx.AsyncClient, user: User) -> None:
        await login_as(client, user)
        await client.post("/api/dsr/export")

        response = await client.get("/api/dsr")

        assert response.status_code == 200
        assert [r["type"] for r in response.json()] == ["export"]

    async def test_requires_session(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/dsr/export")
        assert response.status_code == 401


@pytest.mark.api
@pytest.mark.asyncio
class TestDataDeletionEndpoint:
    """Test POST /api/dsr/deletion."""

    async def test_deletion(
        self, client: httpx.AsyncClient, user: User, repo: Repo
    ) -> None:
        await grant_role(user, repo, RepoRole.MEMBER)
        await login_as(client, user)

        response = await client.post("/api/dsr/deletion", json={"reason": " bye "})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["metadata"]["requestedReason"] == "bye"
        assert body["metadata"]["rolesRemoved"] == 1
        assert 'ap_session=""' in response.headers["set-cookie"]

        await user.refresh_from_db()
        assert user.email is None

    async def test_deletion_without_body(
        self, client: httpx.AsyncClient, user: User
    ) -> None:
        await login_as(client, user)

        response = await client.post("/api/dsr/deletion")

        assert response.status_code == 200
        assert "requestedReason" not in response.json()["metadata"]

    async def test_session_is_revoked(
        self, client: httpx.AsyncClient, user: User
    ) -> None:
        token = await login_as(client, user)
        await client.post("/api/dsr/deletion")

        client.cookies.set("ap_session", token)
        response = await client.get("/api/auth/me")

        assert response.status_code == 401
