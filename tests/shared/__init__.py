"""
Shared testing utilities for Anchorpipe.

Factories and configuration helpers used by the unit and API tests.
"""

from .factories import (
    TEST_AUTH_SECRET,
    TEST_CRON_SECRET,
    TEST_ENCRYPTION_KEY,
    TEST_PASSWORD,
    create_repo,
    create_user,
    grant_role,
    login_as,
    make_config,
)

__all__ = [
    "TEST_AUTH_SECRET",
    "TEST_CRON_SECRET",
    "TEST_ENCRYPTION_KEY",
    "TEST_PASSWORD",
    "create_repo",
    "create_user",
    "grant_role",
    "login_as",
    "make_config",
]
