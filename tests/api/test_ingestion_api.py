"""
Tests for POST /api/ingestion.

Reports are signed with a repository HMAC secret over the exact body bytes.
No broker is configured, so accepted reports are not published.
"""

import json
import uuid
from typing import Any, Dict, Optional

import httpx
import pytest

from anchorpipe.core.config import IngestionConfig, set_config
from anchorpipe.core.models import AuditLog, IdempotencyKey, Repo
from anchorpipe.core.security.hmac import compute_hmac
from anchorpipe.core.services import hmac_secret_service
from tests.shared import make_config

SHA = "c" * 40


def report(repo_id: str, **overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "repo_id": repo_id,
        "commit_sha": SHA,
        "run_id": "ci-100",
        "framework": "jest",
        "branch": "main",
        "tests": [
            {"path": "src/app.test.ts", "name": "renders", "status": "pass"},
            {"path": "src/app.test.ts", "name": "saves", "status": "fail"},
        ],
    }
    data.update(overrides)
    return data


async def submit(
    client: httpx.AsyncClient,
    repo_id: str,
    secret: str,
    data: Optional[Dict[str, Any]] = None,
    body: Optional[bytes] = None,
) -> httpx.Response:
    if body is None:
        body = json.dumps(data or report(repo_id)).encode("utf-8")
    return await client.post(
        "/api/ingestion",
        content=body,
        headers={
            "content-type": "application/json",
            "authorization": f"Bearer {repo_id}",
            "x-fr-sig": compute_hmac(secret, body),
        },
    )


@pytest.fixture
async def secret(repo: Repo) -> str:
    created = await hmac_secret_service.create_hmac_secret(repo.id, "CI")
    return created.secret


@pytest.mark.api
@pytest.mark.asyncio
class TestIngestionEndpoint:
    """Test signed report submission."""

    async def test_accepts_signed_report(
        self, client: httpx.AsyncClient, repo: Repo, secret: str
    ) -> None:
        response = await submit(client, str(repo.id), secret)

        assert response.status_code == 200
        assert response.json() == {
            "runId": "ci-100",
            "message": "Test report received",
            "summary": {"tests_parsed": 2, "flaky_candidates": 0},
        }
        assert response.headers["X-RateLimit-Limit"] == "500"
        assert await IdempotencyKey.exists(key=f"{repo.id}:{SHA}:ci-100:jest")
        audit = await AuditLog.get(description="Test report ingested: ci-100")
        assert audit.metadata["published"] is False

    async def test_duplicate_report(
        self, client: httpx.AsyncClient, repo: Repo, secret: str
    ) -> None:
        await submit(client, str(repo.id), secret)

        response = await submit(client, str(repo.id), secret)

        assert response.status_code == 200
        assert response.json()["message"] == "Test report received (duplicate)"

    async def test_missing_token(self, client: httpx.AsyncClient, db: None) -> None:
        response = await client.post("/api/ingestion", content=b'{"run_id": "x"}')

        assert response.status_code == 401
        assert response.json() == {
            "detail": "Missing Authorization header with Bearer token",
            "path": "/api/ingestion",
        }

    async def test_invalid_signature(
        self, client: httpx.AsyncClient, repo: Repo, secret: str
    ) -> None:
        response = await submit(client, str(repo.id), "not-the-secret")

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid HMAC signature"

    async def test_body_changed_after_signing(
        self, client: httpx.AsyncClient, repo: Repo, secret: str
    ) -> None:
        body = json.dumps(report(str(repo.id))).encode("utf-8")
        response = await client.post(
            "/api/ingestion",
            content=body + b" ",
            headers={
                "authorization": f"Bearer {repo.id}",
                "x-fr-sig": compute_hmac(secret, body),
            },
        )

        assert response.status_code == 401

    async def test_repo_mismatch(
        self, client: httpx.AsyncClient, repo: Repo, secret: str
    ) -> None:
        data = report(str(uuid.uuid4()))

        response = await submit(client, str(repo.id), secret, data)

        assert response.status_code == 403
        assert response.json()["detail"] == "Repository ID mismatch"

    async def test_invalid_payload(
        self, client: httpx.AsyncClient, repo: Repo, secret: str
    ) -> None:
        data = report(str(repo.id), commit_sha="abc", tests=[])

        response = await submit(client, str(repo.id), secret, data)

        assert response.status_code == 400
        body = response.json()
        assert body["detail"] == "Invalid payload"
        assert {d["path"] for d in body["details"]} == {"commit_sha", "tests"}

    async def test_invalid_json(
        self, client: httpx.AsyncClient, repo: Repo, secret: str
    ) -> None:
        response = await submit(client, str(repo.id), secret, body=b"{not json")

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON payload"

    async def test_empty_body(self, client: httpx.AsyncClient, db: None) -> None:
        response = await client.post("/api/ingestion", content=b"")

        assert response.status_code == 400
        assert response.json()["detail"] == "Request body is required"

    async def test_payload_too_large(
        self, client: httpx.AsyncClient, repo: Repo, secret: str
    ) -> None:
        set_config(make_config(ingestion=IngestionConfig(max_body_bytes=64)))

        response = await submit(client, str(repo.id), secret)

        assert response.status_code == 413
        assert response.json()["detail"] == (
            "Payload too large. Maximum size is 64 bytes"
        )
