"""
Tests for the security alert administration endpoint.
"""

from unittest.mock import patch

import httpx
import pytest

from anchorpipe.core.config import SecurityAlertConfig, set_config
from anchorpipe.core.models import Repo, RepoRole, User
from tests.shared import grant_role, login_as, make_config

CHECK_URL = "/api/admin/security-alerts/check"


@pytest.mark.api
@pytest.mark.asyncio
class TestSecurityAlertEndpoints:
    """Test POST /api/admin/security-alerts/check."""

    async def test_requires_session(self, client: httpx.AsyncClient) -> None:
        response = await client.post(CHECK_URL)

        assert response.status_code == 401

    async def test_non_admin_forbidden(
        self, client: httpx.AsyncClient, user: User, repo: Repo
    ) -> None:
        await grant_role(user, repo, RepoRole.MEMBER)
        await login_as(client, user)

        with patch(
            "anchorpipe.api.routes.security_alerts.security_alert_service"
        ) as service:
            response = await client.post(CHECK_URL)

        assert response.status_code == 403
        service.check_and_alert.assert_not_called()

    async def test_disabled_by_default(
        self, client: httpx.AsyncClient, admin_user: User, repo: Repo
    ) -> None:
        await login_as(client, admin_user)

        response = await client.post(CHECK_URL)

        assert response.status_code == 200
        assert response.json() == {
            "message": "Security pattern detection completed",
            "patternsDetected": 0,
            "alertsSent": 0,
            "errors": [],
            "patterns": [],
        }

    async def test_detects_failed_logins(
        self, client: httpx.AsyncClient, admin_user: User, repo: Repo
    ) -> None:
        set_config(
            make_config(
                alerts=SecurityAlertConfig(enabled=True, failed_login_threshold=3)
            )
        )
        for _ in range(3):
            await client.post(
                "/api/auth/login",
                json={"email": "admin@example.com", "password": "Wrong-passw0rd"},
            )
        await login_as(client, admin_user)

        response = await client.post(CHECK_URL)

        assert response.status_code == 200
        body = response.json()
        assert body["patternsDetected"] == 1
        assert body["alertsSent"] == 1
        assert body["patterns"] == [
            {"type": "multiple_failed_logins", "severity": "medium", "count": 3}
        ]
