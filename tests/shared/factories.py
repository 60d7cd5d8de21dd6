"""
Test configuration and model factories.
"""

import base64
from typing import Any, Dict, Optional

import httpx

from anchorpipe.core.auth.password import hash_password
from anchorpipe.core.auth.session import create_session_token
from anchorpipe.core.config import (
    AnchorpipeConfig,
    DatabaseConfig,
    KafkaConfig,
    LoggingConfig,
    RedisConfig,
    SecurityConfig,
)
from anchorpipe.core.models import Repo, RepoRole, User, UserRepoRole

TEST_AUTH_SECRET = "anchorpipe-test-auth-secret-0123456789"
TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
TEST_CRON_SECRET = "cron-test-secret"
TEST_PASSWORD = "Sup3r-secret!"


def make_config(**overrides: Any) -> AnchorpipeConfig:
    """Build a testing configuration; keyword arguments replace whole sections."""
    sections: Dict[str, Any] = {
        "logging": LoggingConfig(level="WARNING", json_output=False),
        "database": DatabaseConfig(url="sqlite://:memory:", generate_schemas=True),
        "security": SecurityConfig(
            auth_secret=TEST_AUTH_SECRET,
            cron_secret=TEST_CRON_SECRET,
            encryption_key_base64=TEST_ENCRYPTION_KEY,
        ),
        "redis": RedisConfig(url=None),
        "kafka": KafkaConfig(bootstrap_servers=None),
    }
    sections.update(overrides)
    return AnchorpipeConfig(environment="testing", **sections)


async def create_user(
    email: Optional[str] = "user@example.com",
    password: Optional[str] = TEST_PASSWORD,
    name: Optional[str] = None,
) -> User:
    """Create a user, with a bcrypt password hash unless password is None."""
    preferences: Dict[str, Any] = {"emailVerified": False}
    if password is not None:
        preferences["passwordHash"] = hash_password(password)
    return await User.create(email=email, name=name, preferences=preferences)


async def grant_role(user: User, repo: Repo, role: RepoRole) -> UserRepoRole:
    return await UserRepoRole.create(user=user, repo=repo, role=role)


async def create_repo(
    admin: Optional[User] = None, name: str = "widgets", owner: str = "acme"
) -> Repo:
    """Create a repository, optionally with an admin."""
    repo = await Repo.create(name=name, owner=owner)
    if admin is not None:
        await grant_role(admin, repo, RepoRole.ADMIN)
    return repo


async def login_as(client: httpx.AsyncClient, user: User) -> str:
    """Issue a session for the user and store it in the client's cookie jar."""
    token = await create_session_token(user)
    client.cookies.set("ap_session", token)
    return token
