"""
Pytest configuration and fixtures for Anchorpipe tests.

Every test runs against an explicit testing configuration without Redis or
Kafka. Database fixtures create a fresh in-memory SQLite schema per test.
"""

from typing import AsyncGenerator

import httpx
import pytest

from anchorpipe.api import create_app
from anchorpipe.core.config import AnchorpipeConfig, set_config
from anchorpipe.core.database import close_tortoise, init_tortoise
from anchorpipe.core.models import Repo, User
from anchorpipe.core.security.brute_force import reset_brute_force_protector
from anchorpipe.core.security.rate_limit import reset_rate_limiter
from anchorpipe.core.siem import reset_siem_forwarder
from tests.shared import create_repo, create_user, make_config


@pytest.fixture(autouse=True)
async def test_config() -> AsyncGenerator[AnchorpipeConfig, None]:
    """Install the testing configuration and reset process-wide state."""
    config = make_config()
    set_config(config)
    reset_rate_limiter()
    reset_brute_force_protector()
    yield config
    await reset_siem_forwarder()
    reset_rate_limiter()
    reset_brute_force_protector()


@pytest.fixture
async def db() -> AsyncGenerator[None, None]:
    """Fresh in-memory SQLite database with all tables."""
    await init_tortoise("sqlite://:memory:", generate_schemas=True)
    yield
    await close_tortoise()


@pytest.fixture
async def client(db: None) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the app; the db fixture stands in for the lifespan."""
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as http_client:
        yield http_client


@pytest.fixture
async def user(db: None) -> User:
    return await create_user()


@pytest.fixture
async def admin_user(db: None) -> User:
    return await create_user(email="admin@example.com")


@pytest.fixture
async def repo(admin_user: User) -> Repo:
    """Repository administered by admin_user."""
    return await create_repo(admin_user)
