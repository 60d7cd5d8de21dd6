"""
Tests for the SIEM forwarding administration endpoints.
"""

from typing import List, Sequence
from unittest.mock import patch

import httpx
import pytest

from anchorpipe.core.config import SIEMConfig
from anchorpipe.core.models import AuditLog, Repo, RepoRole, User
from anchorpipe.core.siem import SiemForwarder
from anchorpipe.core.siem.adapter import BaseSiemAdapter, ForwardOutcome, SiemLogEntry
from tests.shared import grant_role, login_as


class CollectingAdapter(BaseSiemAdapter):
    name = "collecting"

    def __init__(self) -> None:
        self.entries: List[SiemLogEntry] = []

    async def forward_log(self, entry: SiemLogEntry) -> ForwardOutcome:
        self.entries.append(entry)
        return ForwardOutcome(True)


def forwarder_with(adapter: BaseSiemAdapter) -> SiemForwarder:
    return SiemForwarder(SIEMConfig(enabled=True, retry_delay=0), adapter)


@pytest.mark.api
@pytest.mark.asyncio
class TestSiemEndpoints:
    """Test POST /api/admin/siem/forward and GET /api/admin/siem/test."""

    async def test_forward(
        self, client: httpx.AsyncClient, admin_user: User, repo: Repo
    ) -> None:
        await AuditLog.create(action="login_success", subject="user", description="a")
        await AuditLog.create(action="login_failure", subject="user", description="b")
        adapter = CollectingAdapter()
        await login_as(client, admin_user)

        with patch(
            "anchorpipe.api.routes.siem.get_siem_forwarder",
            return_value=forwarder_with(adapter),
        ):
            response = await client.post("/api/admin/siem/forward")

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "processed": 2,
            "failed": 0,
            "errors": [],
        }
        assert sorted(e.severity for e in adapter.entries) == ["error", "info"]

    async def test_forward_when_disabled(
        self, client: httpx.AsyncClient, admin_user: User, repo: Repo
    ) -> None:
        await login_as(client, admin_user)

        response = await client.post(
            "/api/admin/siem/forward", params={"batchSize": 10}
        )

        assert response.json()["processed"] == 0

    async def test_invalid_batch_size(
        self, client: httpx.AsyncClient, admin_user: User, repo: Repo
    ) -> None:
        await login_as(client, admin_user)

        response = await client.post("/api/admin/siem/forward", params={"batchSize": 0})

        assert response.status_code == 422

    async def test_connection_not_configured(
        self, client: httpx.AsyncClient, admin_user: User, repo: Repo
    ) -> None:
        await login_as(client, admin_user)

        response = await client.get("/api/admin/siem/test")

        assert response.json() == {
            "success": False,
            "error": "SIEM adapter not initialized",
        }

    async def test_non_admin_forbidden(
        self, client: httpx.AsyncClient, user: User, repo: Repo
    ) -> None:
        await grant_role(user, repo, RepoRole.MEMBER)
        await login_as(client, user)

        response = await client.post("/api/admin/siem/forward")

        assert response.status_code == 403
