"""
Unit tests for HMAC secret management and request authentication.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest

from anchorpipe.core.errors import NotFoundError
from anchorpipe.core.models import AuditLog, HmacSecret, Repo, User
from anchorpipe.core.security.crypto import decrypt_string, parse_encrypted
from anchorpipe.core.security.hmac import compute_hmac, hash_secret
from anchorpipe.core.services.hmac_auth import HmacAuthenticator
from anchorpipe.core.services.hmac_secret_service import HmacSecretService

BODY = b'{"run_id": "ci-1"}'


@pytest.fixture
def secrets() -> HmacSecretService:
    return HmacSecretService()


@pytest.fixture
def authenticator(secrets: HmacSecretService) -> HmacAuthenticator:
    return HmacAuthenticator(secrets=secrets)


def signed_headers(repo_id: str, secret: str, body: bytes = BODY) -> Dict[str, str]:
    return {
        "authorization": f"Bearer {repo_id}",
        "x-fr-sig": compute_hmac(secret, body),
    }


@pytest.mark.unit
@pytest.mark.asyncio
class TestHmacSecretService:
    """Test secret storage, rotation and revocation."""

    async def test_create(
        self, secrets: HmacSecretService, repo: Repo, admin_user: User
    ) -> None:
        created = await secrets.create_hmac_secret(
            repo.id, "CI", created_by=admin_user.id
        )

        record = await HmacSecret.get(id=created.id)
        assert record.secret_hash == hash_secret(created.secret)
        assert created.secret not in record.secret_value
        assert decrypt_string(parse_encrypted(record.secret_value)) == created.secret
        assert record.created_by_id == admin_user.id
        assert set(created.to_dict()) == {"id", "name", "secret", "createdAt"}

    async def test_explicit_secret(
        self, secrets: HmacSecretService, repo: Repo
    ) -> None:
        created = await secrets.create_hmac_secret(repo.id, "CI", secret="s3cret-value")
        assert created.secret == "s3cret-value"

    async def test_list_hides_secret(
        self, secrets: HmacSecretService, repo: Repo
    ) -> None:
        await secrets.create_hmac_secret(repo.id, "CI")

        listed = await secrets.list_hmac_secrets(repo.id)

        assert len(listed) == 1
        assert listed[0]["name"] == "CI"
        assert listed[0]["active"] is True
        assert "secret" not in listed[0]
        assert "secretValue" not in listed[0]

    async def test_revoke(self, secrets: HmacSecretService, repo: Repo) -> None:
        created = await secrets.create_hmac_secret(repo.id, "CI")

        await secrets.revoke_hmac_secret(created.id)

        metadata = await secrets.get_hmac_secret_by_id(created.id)
        assert metadata["active"] is False
        assert metadata["revoked"] is True
        assert await secrets.find_active_secrets_for_repo(repo.id) == []

    async def test_revoke_unknown(self, secrets: HmacSecretService, db: None) -> None:
        with pytest.raises(NotFoundError, match="Secret not found"):
            await secrets.revoke_hmac_secret(uuid.uuid4())

    async def test_rotate(self, secrets: HmacSecretService, repo: Repo) -> None:
        old = await secrets.create_hmac_secret(repo.id, "CI")

        new = await secrets.rotate_hmac_secret(old.id, repo.id, "CI v2")

        assert new.secret != old.secret
        active = await secrets.find_active_secrets_for_repo(repo.id)
        assert [str(s.id) for s in active] == [new.id]
        metadata = await secrets.get_hmac_secret_by_id(new.id)
        assert metadata["rotatedFrom"] == old.id

    async def test_rotate_wrong_repo(
        self, secrets: HmacSecretService, repo: Repo
    ) -> None:
        old = await secrets.create_hmac_secret(repo.id, "CI")

        with pytest.raises(NotFoundError):
            await secrets.rotate_hmac_secret(old.id, uuid.uuid4(), "CI v2")

    async def test_expired_secret_is_inactive(
        self, secrets: HmacSecretService, repo: Repo
    ) -> None:
        await secrets.create_hmac_secret(
            repo.id, "old", expires_at=datetime.now(timezone.utc) - timedelta(days=1)
        )
        assert await secrets.find_active_secrets_for_repo(repo.id) == []

    async def test_get_unknown(self, secrets: HmacSecretService, db: None) -> None:
        assert await secrets.get_hmac_secret_by_id(uuid.uuid4()) is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestHmacAuthenticator:
    """Test request authentication outcomes."""

    async def test_success(
        self, authenticator: HmacAuthenticator, secrets: HmacSecretService, repo: Repo
    ) -> None:
        created = await secrets.create_hmac_secret(repo.id, "CI")

        result = await authenticator.authenticate(
            signed_headers(str(repo.id), created.secret), BODY
        )

        assert result.success
        assert result.repo_id == str(repo.id)
        assert result.secret_id == created.id
        record = await HmacSecret.get(id=created.id)
        assert record.last_used_at is not None
        assert await AuditLog.exists(action="hmac_auth_success")

    async def test_any_active_secret_matches(
        self, authenticator: HmacAuthenticator, secrets: HmacSecretService, repo: Repo
    ) -> None:
        """Test that both secrets work during a rotation overlap."""
        first = await secrets.create_hmac_secret(repo.id, "first")
        await secrets.create_hmac_secret(repo.id, "second")

        result = await authenticator.authenticate(
            signed_headers(str(repo.id), first.secret), BODY
        )

        assert result.success
        assert result.secret_id == first.id

    async def test_missing_token(
        self, authenticator: HmacAuthenticator, db: None
    ) -> None:
        result = await authenticator.authenticate({"x-fr-sig": "abc"}, BODY)

        assert not result.success
        assert result.reason == "missing_token"
        assert result.error == "Missing Authorization header with Bearer token"
        failure = await AuditLog.get(action="hmac_auth_failure")
        assert failure.metadata == {"reason": "missing_token"}

    async def test_missing_signature(
        self, authenticator: HmacAuthenticator, repo: Repo
    ) -> None:
        result = await authenticator.authenticate(
            {"authorization": f"Bearer {repo.id}"}, BODY
        )

        assert result.reason == "missing_signature"
        assert result.error == "Missing X-FR-Sig header"

    async def test_not_a_uuid(self, authenticator: HmacAuthenticator, db: None) -> None:
        result = await authenticator.authenticate(
            signed_headers("not-a-repo", "secret"), BODY
        )
        assert result.reason == "no_secrets"

    async def test_no_secrets(
        self, authenticator: HmacAuthenticator, repo: Repo
    ) -> None:
        result = await authenticator.authenticate(
            signed_headers(str(repo.id), "secret"), BODY
        )

        assert result.reason == "no_secrets"
        assert result.error == "No active HMAC secrets found for repository"

    async def test_invalid_signature(
        self, authenticator: HmacAuthenticator, secrets: HmacSecretService, repo: Repo
    ) -> None:
        created = await secrets.create_hmac_secret(repo.id, "CI")

        result = await authenticator.authenticate(
            signed_headers(str(repo.id), created.secret, b"other body"), BODY
        )

        assert result.reason == "invalid_signature"
        failure = await AuditLog.get(action="hmac_auth_failure")
        assert failure.metadata["secretsTried"] == 1

    async def test_revoked_secret_rejected(
        self, authenticator: HmacAuthenticator, secrets: HmacSecretService, repo: Repo
    ) -> None:
        created = await secrets.create_hmac_secret(repo.id, "CI")
        await secrets.revoke_hmac_secret(created.id)

        result = await authenticator.authenticate(
            signed_headers(str(repo.id), created.secret), BODY
        )

        assert result.reason == "no_secrets"
